import json
import textwrap

import pytest

from fivetransync.cli import main

DOC = """
resources:
  - type: fivetran_group
    name: main
    attributes:
      name: Main
  - type: fivetran_connector
    name: pg
    attributes:
      group_id: ${fivetran_group.main.id}
      service: postgres
      destination_schema_name: pg
      config:
        host: db
"""


@pytest.fixture
def workdir(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    for key in ("FIVETRAN_APIKEY", "FIVETRAN_APISECRET"):
        monkeypatch.delenv(key, raising=False)
    (tmp_path / "fivetran.yml").write_text(textwrap.dedent(DOC), encoding="utf-8")
    return tmp_path


def _args(fake, *extra):
    return [*extra, "--base-url", fake.base_url, "--api-key", "KEY", "--api-secret", "SECRET",
            "--retries", "0", "--logs-dir", "logs"]


def test_plan_apply_destroy(fake, workdir, capsys):
    rc = main(["plan", "--file", "fivetran.yml", "--state", "state.json", *_args(fake)])
    out = capsys.readouterr().out
    assert rc == 0
    assert "CREATE=2 | UPDATE=0 | REPLACE=0 | UNCHANGED=0 | ERROR=0 | EXCEPTION=0" in out
    assert fake.writes() == []
    assert not (workdir / "state.json").exists()

    rc = main(["apply", "--file", "fivetran.yml", "--state", "state.json", "--output", "out.json", *_args(fake)])
    out = capsys.readouterr().out
    assert rc == 0
    assert "CREATED=2 | UPDATED=0 | UNCHANGED=0 | ERROR=0 | EXCEPTION=0" in out
    state = json.loads((workdir / "state.json").read_text(encoding="utf-8"))
    assert set(state["resources"]) == {"fivetran_group.main", "fivetran_connector.pg"}
    report = json.loads((workdir / "out.json").read_text(encoding="utf-8"))
    assert report["counts"] == {"CREATED": 2}
    assert report["results"][0]["key"] == "fivetran_group.main"

    rc = main(["apply", "--dry-run", "--file", "fivetran.yml", "--state", "state.json", *_args(fake)])
    assert rc == 0
    assert "UNCHANGED=2" in capsys.readouterr().out

    rc = main(["destroy", "--file", "fivetran.yml", "--state", "state.json", *_args(fake)])
    assert rc == 0
    assert "DELETED=2" in capsys.readouterr().out
    assert json.loads((workdir / "state.json").read_text(encoding="utf-8"))["resources"] == {}
    assert fake.groups == {} and fake.connectors == {}

    assert list((workdir / "logs").glob("20*/apply_*.log"))


def test_apply_errors_exit_2(fake, workdir, capsys):
    fake.inject("POST", "/groups", 400, {"code": "InvalidInput", "message": "name taken"})
    rc = main(["apply", "--file", "fivetran.yml", *_args(fake)])
    out = capsys.readouterr().out
    assert rc == 2
    assert "name taken" in out
    assert "ERROR=2" in out  # the connector cannot resolve the group id


def test_read_data_source(fake, workdir, capsys):
    fake.groups["g1"] = {"id": "g1", "name": "Main"}
    rc = main(["read", "group", "--id", "g1", "--output", "group.json", *_args(fake)])
    assert rc == 0
    printed = json.loads(capsys.readouterr().out)
    assert printed["name"] == "Main"
    assert json.loads((workdir / "group.json").read_text(encoding="utf-8")) == printed

    assert main(["read", "group", *_args(fake)]) == 2
    assert main(["read", "connector", "--id", "missing", *_args(fake)]) == 2


def test_missing_credentials(fake, workdir):
    with pytest.raises(ValueError, match="fivetran.api_key"):
        main(["apply", "--file", "fivetran.yml", "--base-url", fake.base_url, "--logs-dir", "logs"])
