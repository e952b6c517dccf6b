import io
import time

from advisorydb import progress
from advisorydb.progress import ProgressBar, Spinner, new_spinner, start_progress


def test_spinner_writes_suffix():
    buf = io.StringIO()
    spinner = Spinner(" building", stream=buf, interval=0.01)
    spinner.start()
    time.sleep(0.05)
    spinner.stop()
    assert " building" in buf.getvalue()


def test_spinner_context_manager_writes():
    buf = io.StringIO()
    with Spinner(" loading", stream=buf, interval=0.01):
        pass
    assert " loading" in buf.getvalue()


def test_spinner_stop_without_start_writes_nothing():
    buf = io.StringIO()
    Spinner("x", stream=buf).stop()
    assert buf.getvalue() == ""


def test_disabled_spinner_writes_nothing():
    buf = io.StringIO()
    spinner = Spinner("x", stream=buf, enabled=False, interval=0.01)
    spinner.start()
    spinner.stop()
    assert buf.getvalue() == ""


def test_new_spinner_quiet(monkeypatch, capsys):
    monkeypatch.setattr(progress, "quiet", True)
    spinner = new_spinner(" quiet")
    spinner.start()
    spinner.stop()
    assert capsys.readouterr().err == ""


def test_progress_bar_counts(capsys):
    bar = start_progress(3)
    for _ in range(3):
        bar.increment()
    bar.finish()
    assert "3/3" in capsys.readouterr().err


def test_progress_bar_quiet(monkeypatch, capsys):
    monkeypatch.setattr(progress, "quiet", True)
    bar = start_progress(2)
    bar.increment()
    bar.finish()
    assert capsys.readouterr().err == ""


def test_disabled_progress_bar(capsys):
    with ProgressBar(5, enabled=False) as bar:
        bar.increment()
    assert capsys.readouterr().err == ""