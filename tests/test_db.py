import json
import os

import pytest

from advisorydb import db
from advisorydb.types import (
    Advisory,
    DataSource,
    Severity,
    Vulnerability,
    VulnerabilityDetail,
)


def _j(value):
    return json.dumps(value).encode()


def _fill(bucket, content):
    for key, value in content.items():
        if isinstance(value, dict):
            _fill(bucket.create_bucket_if_not_exists(key), value)
        else:
            bucket.put(key, value)


def _load_fixture(cache_dir, tree):
    path = db.db_path(cache_dir)
    os.makedirs(os.path.dirname(path), exist_ok=True)
    database = db.Database(path)
    with database.transaction(writable=True) as tx:
        for name, content in tree.items():
            _fill(tx.create_bucket_if_not_exists(name), content)
    database.close()
    db.init(cache_dir)


def _read(cache_dir, keys):
    db.close()
    database = db.Database(db.db_path(cache_dir))
    try:
        with database.transaction() as tx:
            bkt = tx.bucket(keys[0])
            for name in keys[1:-1]:
                assert bkt is not None, f"missing bucket in {keys}"
                bkt = bkt.bucket(name)
            assert bkt is not None, f"missing bucket in {keys}"
            value = bkt.get(keys[-1])
    finally:
        database.close()
    return None if value is None else json.loads(value)


def _top_buckets(cache_dir):
    db.close()
    database = db.Database(db.db_path(cache_dir))
    try:
        with database.transaction() as tx:
            return tx.bucket_names()
    finally:
        database.close()


@pytest.fixture
def cache(tmp_path):
    yield tmp_path
    db.close()


ADVISORY_DETAIL = {
    "advisory-detail": {
        "CVE-2019-14904": {
            "alpine 3.14": {"ansible": _j({"FixedVersion": "2.9.3-r0"})},
            "debian 10": {"ansible": _j({"FixedVersion": "2.3.4"})},
            "Red Hat": {
                "cpe:/o:redhat:enterprise_linux:6::server": {
                    "ansible": _j({"FixedVersion": "3.4.5"})
                }
            },
        }
    }
}

SINGLE_BUCKET = {
    "GitHub Security Advisory Composer": {
        "symfony/symfony": {
            "CVE-2019-10909": _j(
                {
                    "PatchedVersions": ["4.2.7", "3.4.26"],
                    "VulnerableVersions": [">= 4.2.0, < 4.2.7", ">= 3.0.0, < 3.4.26"],
                }
            ),
            "CVE-2019-18889": _j(
                {
                    "PatchedVersions": ["4.3.8", "3.4.35"],
                    "VulnerableVersions": [">= 4.3.0, < 4.3.8", ">= 3.1.0, < 3.4.35"],
                }
            ),
        }
    }
}

MULTIPLE_BUCKETS = {
    "composer::GitHub Security Advisory Composer": {
        "symfony/symfony": {
            "CVE-2019-10909": _j(
                {"PatchedVersions": ["4.2.7"], "VulnerableVersions": [">= 4.2.0, < 4.2.7"]}
            )
        }
    },
    "composer::php-security-advisories": {
        "symfony/symfony": {"CVE-2020-5275": _j({"VulnerableVersions": [">= 4.4.0, < 4.4.7"]})}
    },
    "pip::GitHub Security Advisory pip": {
        "symfony/symfony": {"CVE-2000-0001": _j({"FixedVersion": "1.0"})}
    },
}

OSPKG = {
    "Red Hat Enterprise Linux 8": {
        "bind": {
            "CVE-2018-5745": _j({"FixedVersion": "32:9.11.4-26.P2.el8"}),
            "CVE-2020-8617": _j({"FixedVersion": "32:9.11.13-5.el8_2"}),
        }
    }
}

REDHAT_CPE = {
    "Red Hat CPE": {
        "repository": {
            "rhel-lb-for-rhel-6-server-eus-debug-rpms": _j([1, 2]),
            "broken": b"broken",
        }
    }
}


def test_save_advisory_details_happy_path(cache):
    _load_fixture(cache, ADVISORY_DETAIL)
    dbc = db.Config()
    dbc.batch_update(lambda tx: dbc.save_advisory_details(tx, "CVE-2019-14904"))

    expected = [
        (["alpine 3.14", "ansible", "CVE-2019-14904"], Advisory(fixed_version="2.9.3-r0")),
        (["debian 10", "ansible", "CVE-2019-14904"], Advisory(fixed_version="2.3.4")),
        (
            ["Red Hat", "cpe:/o:redhat:enterprise_linux:6::server", "ansible", "CVE-2019-14904"],
            Advisory(fixed_version="3.4.5"),
        ),
    ]
    for keys, want in expected:
        assert _read(cache, keys) == want.to_dict()


def test_save_advisory_details_missing_id(cache):
    _load_fixture(cache, ADVISORY_DETAIL)
    dbc = db.Config()
    dbc.batch_update(lambda tx: dbc.save_advisory_details(tx, "CVE-2019-9999"))
    assert _top_buckets(cache) == ["advisory-detail"]


def test_save_advisory_details_broken_value(cache):
    _load_fixture(cache, {"advisory-detail": {"CVE-1": {"debian 10": {"pkg": b"{broken"}}}})
    dbc = db.Config()
    with pytest.raises(db.DBError, match="failed to unmarshall the advisory detail"):
        dbc.batch_update(lambda tx: dbc.save_advisory_details(tx, "CVE-1"))


def _decoded(values):
    return {k: Advisory.from_dict(json.loads(v.content)) for k, v in values.items()}


@pytest.mark.parametrize(
    "source, pkg_name, fixture, want",
    [
        (
            "GitHub Security Advisory Composer",
            "symfony/symfony",
            SINGLE_BUCKET,
            {
                "CVE-2019-10909": Advisory(
                    patched_versions=["4.2.7", "3.4.26"],
                    vulnerable_versions=[">= 4.2.0, < 4.2.7", ">= 3.0.0, < 3.4.26"],
                ),
                "CVE-2019-18889": Advisory(
                    patched_versions=["4.3.8", "3.4.35"],
                    vulnerable_versions=[">= 4.3.0, < 4.3.8", ">= 3.1.0, < 3.4.35"],
                ),
            },
        ),
        (
            "composer::",
            "symfony/symfony",
            MULTIPLE_BUCKETS,
            {
                "CVE-2019-10909": Advisory(
                    patched_versions=["4.2.7"], vulnerable_versions=[">= 4.2.0, < 4.2.7"]
                ),
                "CVE-2020-5275": Advisory(vulnerable_versions=[">= 4.4.0, < 4.4.7"]),
            },
        ),
        ("non-existent", "symfony/symfony", SINGLE_BUCKET, {}),
        ("GitHub Security Advisory Composer", "non-existent", SINGLE_BUCKET, {}),
    ],
    ids=["single bucket", "prefix scan", "non-existent bucket", "non-existent package"],
)
def test_for_each_advisory(cache, source, pkg_name, fixture, want):
    _load_fixture(cache, fixture)
    got = db.Config().for_each_advisory([source], pkg_name)
    assert _decoded(got) == want


@pytest.mark.parametrize(
    "source, pkg_name, fixture, want",
    [
        (
            "Red Hat Enterprise Linux 8",
            "bind",
            OSPKG,
            [
                Advisory(vulnerability_id="CVE-2018-5745", fixed_version="32:9.11.4-26.P2.el8"),
                Advisory(vulnerability_id="CVE-2020-8617", fixed_version="32:9.11.13-5.el8_2"),
            ],
        ),
        (
            "GitHub Security Advisory Composer",
            "symfony/symfony",
            SINGLE_BUCKET,
            [
                Advisory(
                    vulnerability_id="CVE-2019-10909",
                    patched_versions=["4.2.7", "3.4.26"],
                    vulnerable_versions=[">= 4.2.0, < 4.2.7", ">= 3.0.0, < 3.4.26"],
                ),
                Advisory(
                    vulnerability_id="CVE-2019-18889",
                    patched_versions=["4.3.8", "3.4.35"],
                    vulnerable_versions=[">= 4.3.0, < 4.3.8", ">= 3.1.0, < 3.4.35"],
                ),
            ],
        ),
        (
            "composer::",
            "symfony/symfony",
            MULTIPLE_BUCKETS,
            [
                Advisory(
                    vulnerability_id="CVE-2019-10909",
                    patched_versions=["4.2.7"],
                    vulnerable_versions=[">= 4.2.0, < 4.2.7"],
                ),
                Advisory(
                    vulnerability_id="CVE-2020-5275",
                    vulnerable_versions=[">= 4.4.0, < 4.4.7"],
                ),
            ],
        ),
        ("non-existent", "symfony/symfony", SINGLE_BUCKET, []),
        ("GitHub Security Advisory Composer", "non-existent", SINGLE_BUCKET, []),
    ],
    ids=[
        "os package advisories",
        "library advisories",
        "prefix scan",
        "non-existent bucket",
        "non-existent package",
    ],
)
def test_get_advisories(cache, source, pkg_name, fixture, want):
    _load_fixture(cache, fixture)
    got = db.Config().get_advisories(source, pkg_name)
    assert sorted(got, key=lambda a: a.vulnerability_id) == want


def test_get_advisories_fills_data_source(cache):
    source = {"ID": "ghsa", "Name": "GitHub Security Advisory Composer", "URL": "https://example.com/ghsa"}
    _load_fixture(
        cache,
        {**SINGLE_BUCKET, "data-source": {"GitHub Security Advisory Composer": _j(source)}},
    )
    got = db.Config().get_advisories("GitHub Security Advisory Composer", "symfony/symfony")
    assert [a.data_source for a in got] == [DataSource.from_dict(source)] * 2


def test_get_advisories_broken_json(cache):
    _load_fixture(cache, {"alpine 3.12": {"curl": {"CVE-1": b"[broken"}}})
    with pytest.raises(db.DBError, match="failed to unmarshal advisory JSON"):
        db.Config().get_advisories("alpine 3.12", "curl")


def test_for_each_requires_nested_buckets(cache):
    _load_fixture(cache, {})
    with pytest.raises(db.DBError, match="bucket must be nested"):
        db.Config().for_each_advisory([], "pkg")


def test_init_normal_db(cache):
    path = db.db_path(cache)
    os.makedirs(os.path.dirname(path))
    database = db.Database(path)
    with database.transaction(writable=True) as tx:
        tx.create_bucket_if_not_exists("vulnerability").put("CVE-1", _j({"Title": "title"}))
    database.close()

    db.init(cache)
    assert db.Config().get_vulnerability("CVE-1") == Vulnerability(title="title")


def test_init_broken_db(cache):
    path = db.db_path(cache)
    os.makedirs(os.path.dirname(path))
    with open(path, "wb") as f:
        f.write(b"\x00\x01 not a database")

    db.init(cache)
    with db.Config().connection().transaction() as tx:
        assert tx.bucket_names() == []


def test_init_no_db(cache):
    db.init(cache)
    assert os.path.isfile(db.db_path(cache))
    with db.Config().connection().transaction() as tx:
        assert tx.bucket_names() == []


def test_paths(tmp_path):
    assert db.db_dir(tmp_path) == os.path.join(str(tmp_path), "db")
    assert db.db_path(tmp_path) == os.path.join(str(tmp_path), "db", "trivy.db")


@pytest.mark.parametrize(
    "repository, want",
    [("rhel-lb-for-rhel-6-server-eus-debug-rpms", [1, 2]), ("unknown", [])],
    ids=["happy path", "unknown cpe"],
)
def test_red_hat_repo_to_cpes(cache, repository, want):
    _load_fixture(cache, REDHAT_CPE)
    assert db.Config().red_hat_repo_to_cpes(repository) == want


def test_red_hat_repo_to_cpes_broken_value(cache):
    _load_fixture(cache, REDHAT_CPE)
    with pytest.raises(db.DBError, match="JSON unmarshal error"):
        db.Config().red_hat_repo_to_cpes("broken")


def test_red_hat_round_trip(cache):
    db.init(cache)
    dbc = db.Config()

    def fill(tx):
        dbc.put_red_hat_repositories(tx, "repo-a", [3, 4])
        dbc.put_red_hat_nvrs(tx, "bash-5.0-1.el8", [4])
        dbc.put_red_hat_cpes(tx, 4, "cpe:/o:redhat:enterprise_linux:8::baseos")

    dbc.batch_update(fill)
    assert dbc.red_hat_repo_to_cpes("repo-a") == [3, 4]
    assert dbc.red_hat_nvr_to_cpes("bash-5.0-1.el8") == [4]
    assert _read(cache, ["Red Hat CPE", "cpe", "4"]) == "cpe:/o:redhat:enterprise_linux:8::baseos"


def test_vulnerability_round_trip(cache):
    db.init(cache)
    dbc = db.Config()
    vuln = Vulnerability(
        title="title",
        severity="HIGH",
        vendor_severity={"nvd": Severity.HIGH},
        references=["https://example.com/ref"],
    )
    dbc.batch_update(lambda tx: dbc.put_vulnerability(tx, "CVE-2019-10906", vuln))
    assert dbc.get_vulnerability("CVE-2019-10906") == vuln


def test_get_vulnerability_missing(cache):
    db.init(cache)
    dbc = db.Config()
    dbc.batch_update(lambda tx: dbc.put_vulnerability(tx, "CVE-1", Vulnerability(title="t")))
    with pytest.raises(db.DBError, match="no vulnerability details for CVE-2"):
        dbc.get_vulnerability("CVE-2")


def test_vulnerability_detail_round_trip(cache):
    db.init(cache)
    dbc = db.Config()
    nvd = VulnerabilityDetail(severity=Severity.HIGH, title="nvd title")
    redhat = VulnerabilityDetail(severity=Severity.CRITICAL, references=["https://example.com/a"])

    def fill(tx):
        dbc.put_vulnerability_detail(tx, "CVE-1", "nvd", nvd)
        dbc.put_vulnerability_detail(tx, "CVE-1", "redhat", redhat)

    dbc.batch_update(fill)
    assert dbc.get_vulnerability_detail("CVE-1") == {"nvd": nvd, "redhat": redhat}
    assert dbc.get_vulnerability_detail("CVE-2") == {}


def test_for_each_vulnerability_id(cache):
    db.init(cache)
    dbc = db.Config()

    def fill(tx):
        for vuln_id in ("CVE-2", "CVE-1", "DSA-1"):
            dbc.put_vulnerability_id(tx, vuln_id)

    dbc.batch_update(fill)
    seen = []
    dbc.for_each_vulnerability_id(lambda tx, vuln_id: seen.append(vuln_id))
    assert seen == ["CVE-1", "CVE-2", "DSA-1"]
    assert _read(cache, ["vulnerability-id", "CVE-1"]) == {}


def test_for_each_vulnerability_id_missing_bucket(cache):
    db.init(cache)
    with pytest.raises(db.DBError, match="no such bucket: vulnerability-id"):
        db.Config().for_each_vulnerability_id(lambda tx, vuln_id: None)


def test_for_each_vulnerability_id_wraps_errors(cache):
    db.init(cache)
    dbc = db.Config()
    dbc.batch_update(lambda tx: dbc.put_vulnerability_id(tx, "CVE-1"))

    def fail(tx, vuln_id):
        raise ValueError("boom")

    with pytest.raises(db.DBError, match="something wrong: boom"):
        dbc.for_each_vulnerability_id(fail)


def test_delete_buckets(cache):
    db.init(cache)
    dbc = db.Config()

    def fill(tx):
        dbc.put_vulnerability_id(tx, "CVE-1")
        dbc.put_vulnerability_detail(tx, "CVE-1", "nvd", VulnerabilityDetail(title="t"))
        dbc.put_advisory_detail(tx, "CVE-1", "pkg", ["debian 10"], Advisory(fixed_version="1"))

    dbc.batch_update(fill)
    dbc.delete_vulnerability_id_bucket()
    dbc.delete_vulnerability_detail_bucket()
    dbc.delete_advisory_detail_bucket()
    assert _top_buckets(cache) == []


def test_delete_missing_bucket(cache):
    db.init(cache)
    with pytest.raises(db.DBError, match="failed to delete bucket"):
        db.Config().delete_advisory_detail_bucket()


def test_put_advisory_detail_layout(cache):
    db.init(cache)
    dbc = db.Config()
    dbc.batch_update(
        lambda tx: dbc.put_advisory_detail(
            tx, "CVE-1", "bash", ["debian 10"], Advisory(fixed_version="5.0-4")
        )
    )
    assert _read(cache, ["advisory-detail", "CVE-1", "debian 10", "bash"]) == {"FixedVersion": "5.0-4"}


def test_put_data_source_layout(cache):
    db.init(cache)
    dbc = db.Config()
    source = DataSource(id="alpine", name="Alpine Secdb", url="https://secdb.alpinelinux.org/")
    dbc.batch_update(lambda tx: dbc.put_data_source(tx, "alpine 3.12", source))
    assert _read(cache, ["data-source", "alpine 3.12"]) == source.to_dict()


def test_put_advisory_empty_bucket_names(cache):
    db.init(cache)
    dbc = db.Config()
    with pytest.raises(db.DBError, match="empty bucket name"):
        dbc.batch_update(lambda tx: dbc.put_advisory(tx, [], "key", Advisory()))


def test_failed_transaction_rolls_back(cache):
    db.init(cache)
    dbc = db.Config()

    def fill_then_fail(tx):
        dbc.put_vulnerability_id(tx, "CVE-1")
        raise RuntimeError("stop")

    with pytest.raises(db.DBError, match="error in batch update: stop"):
        dbc.batch_update(fill_then_fail)
    assert _top_buckets(cache) == []


def test_read_only_transaction_rejects_writes(cache):
    db.init(cache)
    with db.Config().connection().transaction() as tx:
        with pytest.raises(db.DBError, match="tx not writable"):
            tx.create_bucket_if_not_exists("bucket")


def test_bucket_and_value_names_conflict(tmp_path):
    database = db.Database(tmp_path / "store.db")
    with database.transaction(writable=True) as tx:
        bucket = tx.create_bucket_if_not_exists("root")
        bucket.put("key", b"value")
        with pytest.raises(db.DBError, match="incompatible value"):
            bucket.create_bucket_if_not_exists("key")
        bucket.create_bucket_if_not_exists("nested")
        with pytest.raises(db.DBError, match="incompatible value"):
            bucket.put("nested", b"value")
        assert list(bucket.items()) == [("key", b"value"), ("nested", None)]


def test_database_persists_across_reopen(tmp_path):
    path = tmp_path / "store.db"
    database = db.Database(path)
    with database.transaction(writable=True) as tx:
        tx.create_bucket_if_not_exists("a").create_bucket_if_not_exists("b").put("k", b"\x00\xff")
    database.close()

    reopened = db.Database(path)
    with reopened.transaction() as tx:
        assert tx.bucket("a").bucket("b").get("k") == b"\x00\xff"
    reopened.close()
    with pytest.raises(db.DBError, match="database not open"):
        with reopened.transaction():
            pass