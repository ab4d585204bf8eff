"""End-to-end runs over CSV endpoints, plus the CLI commands."""

import argparse
import csv
import json

from sfmigrate.cli import run_migration, run_validation
from sfmigrate.models.migration import MigrationStatus
from sfmigrate.models.script import Script
from sfmigrate.orchestrator import MigrationRunner


def write_csv(path, header, rows):
    with open(path, "w", encoding="utf-8", newline="") as f:
        writer = csv.writer(f)
        writer.writerow(header)
        writer.writerows(rows)


def read_csv(path):
    with open(path, "r", encoding="utf-8", newline="") as f:
        return list(csv.DictReader(f))


def script_data(tmp_path, objects, **options):
    source_dir = tmp_path / "source"
    target_dir = tmp_path / "target"
    source_dir.mkdir(exist_ok=True)
    target_dir.mkdir(exist_ok=True)
    data = {
        "orgs": [
            {"name": "files-in", "media": "csvfile", "directory": str(source_dir)},
            {"name": "files-out", "media": "csvfile", "directory": str(target_dir)},
        ],
        "sourceOrg": "files-in",
        "targetOrg": "files-out",
        "objects": objects,
    }
    data.update(options)
    return data


def seed_source(tmp_path):
    (tmp_path / "source").mkdir(exist_ok=True)
    write_csv(tmp_path / "source" / "Account.csv", ["Id", "Name"], [["001A", "Acme"], ["001B", "Globex"]])
    write_csv(tmp_path / "source" / "Contact.csv", ["Id", "LastName", "AccountId"],
              [["003A", "Doe", "001A"], ["003B", "Roe", "001B"], ["003C", "Poe", ""]])


OBJECTS = [
    {"query": "SELECT LastName, AccountId FROM Contact", "operation": "Insert"},
    {"query": "SELECT Name FROM Account", "operation": "Upsert", "externalId": "Name"},
]


def test_csv_to_csv_run_links_children(tmp_path):
    seed_source(tmp_path)
    script = Script.from_dict(script_data(tmp_path, OBJECTS))
    runner = MigrationRunner(script, output_dir=str(tmp_path / "out"))
    result = runner.run_migration()

    assert result.status == MigrationStatus.COMPLETED
    assert result.object_sets[0].update_order == ["Account", "Contact"]
    accounts = {r["Name"]: r["Id"] for r in read_csv(tmp_path / "target" / "Account.csv")}
    contacts = {r["LastName"]: r["AccountId"] for r in read_csv(tmp_path / "target" / "Contact.csv")}
    assert contacts == {"Doe": accounts["Acme"], "Roe": accounts["Globex"], "Poe": ""}
    assert result.total_processed == 5

    reports = list((tmp_path / "out" / "logs").glob("migration_report_*.json"))
    assert len(reports) == 1
    report = json.loads(reports[0].read_text())
    assert report["status"] == "completed"
    assert report["object_sets"][0]["tasks"][0]["object_name"] == "Account"


def test_second_run_updates_nothing(tmp_path):
    seed_source(tmp_path)
    objects = [{"query": "SELECT Name FROM Account", "operation": "Upsert", "externalId": "Name"}]
    MigrationRunner(Script.from_dict(script_data(tmp_path, objects)), output_dir=str(tmp_path / "out")).run_migration()
    result = MigrationRunner(Script.from_dict(script_data(tmp_path, objects)),
                             output_dir=str(tmp_path / "out")).run_migration()

    task = result.object_sets[0].tasks[0]
    assert (task.inserted, task.updated, task.skipped_unchanged) == (0, 0, 2)
    assert len(read_csv(tmp_path / "target" / "Account.csv")) == 2


def test_unresolvable_reference_fails_only_its_set(tmp_path):
    seed_source(tmp_path)
    write_csv(tmp_path / "source" / "Contact.csv", ["Id", "LastName", "AccountId"], [["003A", "Doe", "001Z"]])
    data = script_data(tmp_path, OBJECTS, failOnMissingParentRecords=True)
    data["objectSets"] = [{"objects": [{"query": "SELECT Name FROM Lead", "operation": "Insert"}]}]
    write_csv(tmp_path / "source" / "Lead.csv", ["Id", "Name"], [["00QA", "Lead One"]])

    result = MigrationRunner(Script.from_dict(data), output_dir=str(tmp_path / "out")).run_migration()
    assert [s.status for s in result.object_sets] == [MigrationStatus.FAILED, MigrationStatus.COMPLETED]
    assert result.status == MigrationStatus.COMPLETED_WITH_ERRORS
    assert len(read_csv(tmp_path / "target" / "Lead.csv")) == 1


def test_unknown_org_fails_run_and_writes_report(tmp_path):
    data = script_data(tmp_path, OBJECTS)
    data["targetOrg"] = "missing"
    result = MigrationRunner(Script.from_dict(data), output_dir=str(tmp_path / "out")).run_migration()
    assert result.status == MigrationStatus.FAILED
    assert result.errors[0]["type"] == "ConfigurationError"
    assert list((tmp_path / "out" / "logs").glob("migration_report_*.json"))


# ---- CLI ----

def write_script(tmp_path, data):
    path = tmp_path / "export.json"
    path.write_text(json.dumps(data))
    return path


def test_cli_validate(tmp_path, capsys):
    write_script(tmp_path, script_data(tmp_path, OBJECTS))
    assert run_validation(argparse.Namespace(config=str(tmp_path))) == 0
    assert "Script is valid!" in capsys.readouterr().out


def test_cli_validate_rejects_unknown_operation(tmp_path, capsys):
    write_script(tmp_path, script_data(tmp_path, [{"query": "SELECT Name FROM Account", "operation": "Merge"}]))
    assert run_validation(argparse.Namespace(config=str(tmp_path))) == 1
    assert "Unknown operation" in capsys.readouterr().out


def test_cli_run_simulation_leaves_target_untouched(tmp_path, capsys):
    seed_source(tmp_path)
    path = write_script(tmp_path, script_data(tmp_path, OBJECTS))
    args = argparse.Namespace(config=str(path), output_dir=str(tmp_path / "out"), simulation=True)
    assert run_migration(args) == 0
    assert not (tmp_path / "target" / "Account.csv").exists()
    assert "MIGRATION COMPLETE" in capsys.readouterr().out


def test_cli_run_missing_script(tmp_path):
    args = argparse.Namespace(config=str(tmp_path / "nope.json"), output_dir=str(tmp_path / "out"), simulation=False)
    assert run_migration(args) == 2
