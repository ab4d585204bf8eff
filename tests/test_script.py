"""Tests for script loading and normalization."""

import json

import pytest

from sfmigrate.config import Settings
from sfmigrate.exceptions import ConfigurationError
from sfmigrate.models.script import Operation, Script, ScriptObject


def test_record_type_is_forced_to_readonly(make_script):
    script = make_script([{"query": "SELECT Id, DeveloperName FROM RecordType", "operation": "Upsert",
                           "deleteOldData": True}])
    script.setup()
    obj = script.get_all_objects()[0]
    assert obj.operation == Operation.READONLY
    assert obj.original_operation == Operation.UPSERT
    assert obj.delete_old_data is False
    assert obj.external_id == "DeveloperName;NamespacePrefix;SobjectType"


def test_delete_variants_are_normalized(make_script):
    script = make_script([
        {"query": "SELECT Id FROM Account", "operation": "HardDelete"},
        {"query": "SELECT Id FROM Contact", "operation": "DeleteSource"},
        {"query": "SELECT Id FROM Case", "operation": "DeleteHierarchy"},
    ])
    script.setup()
    account, contact, case = script.get_all_objects()
    assert account.operation == Operation.DELETE and account.hard_delete
    assert contact.operation == Operation.DELETE and contact.delete_from_source
    assert contact.external_id == "Id"
    assert case.operation == Operation.DELETE and case.delete_by_hierarchy


def test_insert_keys_on_id_and_query_gets_id(make_script):
    script = make_script([{"query": "SELECT Name FROM Account", "operation": "Insert", "externalId": "Name"}])
    script.setup()
    obj = script.get_all_objects()[0]
    assert obj.external_id == "Id"
    assert obj.parsed_query.fields == ["Name", "Id"]


def test_unknown_operation_and_empty_script(make_script):
    with pytest.raises(ConfigurationError):
        make_script([{"query": "SELECT Id FROM Account", "operation": "Merge"}]).setup()
    with pytest.raises(ConfigurationError):
        make_script([]).setup()


def test_duplicate_object_in_set(make_script):
    script = make_script([
        {"query": "SELECT Id FROM Account", "operation": "Insert"},
        {"query": "SELECT Id, Name FROM Account", "operation": "Upsert"},
    ])
    with pytest.raises(ConfigurationError):
        script.setup()


def test_polymorphic_lookup_adds_user_and_group_once(make_script):
    script = make_script([
        {"query": "SELECT Subject, OwnerId FROM Case", "operation": "Insert",
         "polymorphicLookups": [{"fieldName": "OwnerId"}]},
        {"query": "SELECT Subject, WhoId$User FROM Task", "operation": "Insert"},
    ])
    script.setup()
    names = [o.name for o in script.get_all_objects()]
    assert names == ["Case", "Task", "User", "Group"]
    user = script.object_sets[0].get_object("User")
    assert user.is_auto_added and user.operation == Operation.READONLY
    assert "User" not in [o["query"].split()[-1] for o in script.to_dict()["objectSets"][0]["objects"]]


def test_declared_user_is_not_replaced(make_script):
    script = make_script([
        {"query": "SELECT Id, Email FROM User", "operation": "Readonly", "externalId": "Email"},
        {"query": "SELECT Subject, OwnerId$User FROM Case", "operation": "Insert"},
    ])
    script.setup()
    users = [o for o in script.get_all_objects() if o.name == "User"]
    assert len(users) == 1 and users[0].external_id == "Email"


def test_values_mapping_flag_conflict_is_a_warning(make_script):
    script = make_script([{"query": "SELECT Name FROM Account", "operation": "Upsert", "externalId": "Name",
                           "useValuesMapping": True, "useCSVValuesMapping": True}])
    warnings = script.setup()
    assert len(warnings) == 1
    assert script.get_all_objects()[0].uses_values_mapping


def test_object_sets_and_excluded_objects(make_script):
    script = make_script(
        [{"query": "SELECT Name FROM Account", "operation": "Upsert", "externalId": "Name"}],
        objectSets=[{"objects": [
            {"query": "SELECT LastName FROM Contact", "operation": "Insert"},
            {"query": "SELECT Subject FROM Case", "operation": "Insert", "excluded": True},
        ]}],
    )
    script.setup()
    assert [s.index for s in script.object_sets] == [0, 1]
    assert [o.name for o in script.object_sets[1].active_objects] == ["Contact"]


def test_from_file_reads_values_mapping_csv(tmp_path):
    (tmp_path / "export.json").write_text(json.dumps({
        "orgs": [{"name": "src", "media": "csvfile", "directory": str(tmp_path)}],
        "sourceOrg": "src",
        "targetOrg": "src",
        "objects": [{"query": "SELECT Name, Rating FROM Account", "operation": "Upsert", "externalId": "Name",
                     "useValuesMapping": True}],
    }))
    (tmp_path / "ValueMapping.csv").write_text("ObjectName,FieldName,RawValue,Value\nAccount,Rating,Hot,Warm\n")
    script = Script.from_file(str(tmp_path))
    assert script.base_path == str(tmp_path)
    assert len(script.values_mapping) == 1
    assert script.values_mapping[0].value == "Warm"
    assert script.get_org("src").is_file_media


def test_from_file_errors(tmp_path):
    with pytest.raises(ConfigurationError):
        Script.from_file(str(tmp_path / "missing.json"))
    bad = tmp_path / "export.json"
    bad.write_text("{not json")
    with pytest.raises(ConfigurationError):
        Script.from_file(str(bad))


def test_missing_org_is_a_configuration_error(make_script):
    with pytest.raises(ConfigurationError):
        make_script([]).get_org("nope")


def test_script_object_from_dict_aliases():
    obj = ScriptObject.from_dict({"query": "SELECT Id FROM Account", "operation": "upsert", "alwaysUseBulkApi": True})
    assert obj.operation == Operation.UPSERT
    assert obj.force_bulk_api is True


def test_settings_fill_unset_api_values(make_script):
    settings = Settings(api_version="61.0", polling_interval_ms=250, polling_timeout_ms=9000)
    script = make_script([{"query": "SELECT Name FROM Account", "operation": "Insert"}])
    script.setup(settings)
    assert (script.api_version, script.polling_interval_ms, script.polling_timeout_ms) == ("61.0", 250, 9000)

    pinned = make_script([{"query": "SELECT Name FROM Account", "operation": "Insert"}],
                         apiVersion="60.0", pollingIntervalMs=1000)
    pinned.setup(settings)
    assert (pinned.api_version, pinned.polling_interval_ms) == ("60.0", 1000)


def test_record_selection_options_round_trip():
    data = {"query": "SELECT Name FROM Account", "operation": "Upsert", "externalId": "Name", "master": False,
            "sourceRecordsFilter": "Rating = 'Hot'", "targetRecordsFilter": "Name != 'Test'",
            "useQueryAll": True, "queryAllTarget": True}
    obj = ScriptObject.from_dict(data)
    assert (obj.master, obj.use_query_all, obj.query_all_target) == (False, True, True)
    dumped = obj.to_dict()
    assert {k: dumped[k] for k in data if k != "operation"} == {k: v for k, v in data.items() if k != "operation"}
