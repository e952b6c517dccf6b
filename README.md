# advisorydb

`advisorydb` reads security advisories published by Linux distributions and
language ecosystems from local copies of their data and stores them in one
file-backed database of nested buckets. A scanner can then look advisories up
by platform and package name.

## Installation

```
pip install .
```

For development:

```
pip install ".[test]"
pytest
```

## Modules

- `advisorydb.types`: the stored records. `Advisory`, `Advisories`,
  `VulnerabilityDetail`, `Vulnerability`, `DataSource`, `CVSS`, and the
  `Severity` and `Status` enums. Each record has `to_dict()`, and most have
  `from_dict()`. `new_severity(name)` raises `ValueError` for an unknown name.
  `new_status(name)` falls back to `Status.UNKNOWN`.
- `advisorydb.db`: the database.
  - `init(cache_dir)` opens the database file at `db_path(cache_dir)`, which
    lies inside `db_dir(cache_dir)`. It creates the file if it is missing. A
    broken file is replaced by an empty one.
  - `close()` closes it.
  - `Config` carries the operations:
    - writing inside `batch_update(fn)`: `put_advisory_detail`,
      `put_vulnerability_detail`, `put_vulnerability_id`, `put_data_source`,
      `put_vulnerability`, and the Red Hat CPE mappings;
    - reading: `get_advisories`, `for_each_advisory`, `get_vulnerability`,
      `get_vulnerability_detail`, `red_hat_repo_to_cpes`, `red_hat_nvr_to_cpes`;
    - cleaning up: `save_advisory_details`, `for_each_vulnerability_id` and the
      `delete_*_bucket` methods.

  A write transaction is saved only if the whole batch succeeds. Failures
  raise `DBError`.
- `advisorydb.metadata`: `Client(cache_dir)` reads (`get`), writes (`update`)
  and removes (`delete`) the `metadata.json` file next to the database. The
  file holds a `Metadata` record: schema version, next update, updated at and
  downloaded at.
- `advisorydb.vulnsrc`: one module per data source. Each has a `VulnSrc` with
  `name()` and `update(directory)`. The table shows where each one reads its
  files and how it looks advisories up again.

  | Module       | Reads from                         | Lookup                                    |
  |--------------|------------------------------------|-------------------------------------------|
  | `alma`       | `vuln-list/alma/`                  | `get(release, pkg_name)`                  |
  | `alpine`     | `vuln-list/alpine/`                | `get(release, pkg_name)`                  |
  | `amazon`     | `vuln-list/amazon/<version>/`      | `get(version, pkg_name)`                  |
  | `archlinux`  | `vuln-list/arch-linux/`            | `get(pkg_name)`                           |
  | `bundler`    | `ruby-advisory-db/gems/`           | none (no `get`)                           |
  | `chainguard` | `vuln-list/chainguard/`            | `get(release, pkg_name)`, release ignored |
  | `debian`     | `vuln-list-debian/tracker/`        | `get(release, pkg_name)`                  |

  `debian.VulnSrc` accepts a `put` callable that replaces how each advisory is
  stored. `alma.VulnSrc` accepts an `Alma` subclass for the same purpose.
- `advisorydb.vulnsrc.bucket`: `name(ecosystem, data_source)` builds bucket
  names such as `rubygems::Ruby Advisory Database`. `Config.get_advisories`
  treats a source containing `::` as a prefix and scans every matching bucket.
- `advisorydb.utils`:
  - `file_walk(root)` yields `(path, file)` for every non-empty file, in
    lexical order;
  - `construct_version(epoch, version, release)` builds a version string;
  - `exists(path)` checks whether a path exists;
  - `unmarshal_json_file(file_name)` reads a JSON file;
  - `must_time_parse(value)` parses an RFC 3339 time;
  - `cache_dir()` gives the default cache location.
- `advisorydb.seqs`: `unique`, `has_intersection`, `is_int` and `merge`.
- `advisorydb.progress`: `new_spinner(suffix)` and `start_progress(total)`.
  Setting `advisorydb.progress.quiet = True` silences both.

Malformed input files raise `ValueError` and a missing data directory raises
`FileNotFoundError`. Storage failures raise `DBError`.

## Example

```python
from advisorydb import db
from advisorydb.vulnsrc import alpine

db.init("/tmp/advisory-cache")
source = alpine.VulnSrc()
source.update("/tmp/advisory-cache")   # reads vuln-list/alpine/**.json

# Copy staged advisories into their platform buckets, then drop the staging area.
config = db.Config()
config.for_each_vulnerability_id(config.save_advisory_details)
config.delete_advisory_detail_bucket()

for advisory in source.get("3.12", "ansible"):
    print(advisory.vulnerability_id, advisory.fixed_version)
db.close()
```

## What it does not do

- There is no command-line program. Everything is used from Python.
- There is no single build step that runs every source in turn.
- Per-source `VulnerabilityDetail` entries are not merged into normalised
  `Vulnerability` records on their own. `Config.put_vulnerability` is there to
  store such records once you have built them.
- Metadata is not written automatically. Call `metadata.Client.update` yourself.
- The package never downloads anything. The data directories must already be
  present locally.
- The database file uses the package's own JSON-based format. It is readable
  only through `advisorydb.db`.