"""Tests for describe attachment, external id and lookup resolution."""

import pytest

from sfmigrate.exceptions import ConfigurationError
from sfmigrate.models.describe import SObjectDescribe
from sfmigrate.services.field_resolver import FieldResolver
from sfmigrate.services.mapping import MappingResolver

from conftest import FakeConnection, run


def describe(name, fields):
    return SObjectDescribe.from_dict({"name": name, "fields": fields})


def field(name, **attrs):
    data = {"name": name, "type": "string", "createable": True, "updateable": True}
    data.update(attrs)
    return data


ACCOUNT = describe("Account", [
    field("Id", type="id", createable=False, updateable=False),
    field("Name"),
    field("Rating"),
    field("Site"),
    field("AccountNumber", createable=False, updateable=False, calculated=True),
    field("OwnerId", type="reference", referenceTo=["User"], relationshipName="Owner"),
])
CONTACT = describe("Contact", [
    field("Id", type="id", createable=False, updateable=False),
    field("LastName"),
    field("AccountId", type="reference", referenceTo=["Account"], relationshipName="Account"),
    field("ReportsToId", type="reference", referenceTo=["Contact"], relationshipName="ReportsTo"),
])
CASE = describe("Case", [
    field("Id", type="id", createable=False, updateable=False),
    field("Subject"),
    field("OwnerId", type="reference", referenceTo=["User", "Group"], relationshipName="Owner"),
])


def resolve(script, describes=None, mapping=None):
    script.setup()
    connection = FakeConnection(describes=describes if describes is not None else {"Account": ACCOUNT,
                                                                                   "Contact": CONTACT})
    resolver = FieldResolver(mapping or MappingResolver(), connection, connection)
    object_set = script.object_sets[0]
    run(resolver.resolve_object_set(object_set))
    return object_set


def test_lookup_paths_follow_parent_external_id(make_script):
    object_set = resolve(make_script([
        {"query": "SELECT Name, Rating, AccountNumber, OwnerId FROM Account", "operation": "Upsert",
         "externalId": "Name"},
        {"query": "SELECT LastName, AccountId, ReportsToId FROM Contact", "operation": "Insert"},
    ]))
    account = object_set.get_object("Account")
    contact = object_set.get_object("Contact")

    assert "OwnerId" not in account.lookups
    assert set(contact.lookups) == {"AccountId", "ReportsToId"}
    assert contact.lookups["AccountId"].external_id_paths == {"Account": ["Account.Name"]}
    assert "Account.Name" in contact.fields_in_query
    assert contact.lookups["ReportsToId"].external_id_paths == {"Contact": []}
    assert account.parent_lookup_objects == []
    assert contact.parent_lookup_objects == ["Account"]


def test_fields_to_update_is_subset_of_fields_in_query(make_script):
    object_set = resolve(make_script([
        {"query": "SELECT Name, Rating, AccountNumber, OwnerId FROM Account", "operation": "Upsert",
         "externalId": "Name", "excludedFromUpdateFields": ["Rating"]},
        {"query": "SELECT LastName, AccountId FROM Contact", "operation": "Insert"},
    ]))
    for obj in object_set.active_objects:
        assert set(obj.fields_to_update) <= set(obj.fields_in_query)
        assert "Id" not in obj.fields_to_update
    account = object_set.get_object("Account")
    assert account.fields_to_update == ["Name", "OwnerId"]


def test_readonly_objects_update_nothing(make_script):
    object_set = resolve(make_script([
        {"query": "SELECT Name FROM Account", "operation": "Readonly", "externalId": "Name"},
    ]))
    assert object_set.get_object("Account").fields_to_update == []


def test_upsert_without_resolvable_external_id_fails(make_script):
    no_name = describe("Contact", [field("Id", type="id"), field("LastName")])
    with pytest.raises(ConfigurationError):
        resolve(make_script([{"query": "SELECT LastName FROM Contact", "operation": "Upsert"}]),
                describes={"Contact": no_name})


def test_unknown_external_id_field_fails(make_script):
    with pytest.raises(ConfigurationError):
        resolve(make_script([{"query": "SELECT Name FROM Account", "operation": "Upsert",
                              "externalId": "Missing__c"}]))


def test_default_external_id_is_name(make_script):
    object_set = resolve(make_script([{"query": "SELECT Rating FROM Account", "operation": "Upsert"}]))
    account = object_set.get_object("Account")
    assert account.external_id == "Name"
    assert "Name" in account.fields_in_query


def test_all_keyword_expands_from_describe(make_script):
    object_set = resolve(make_script([{"query": "SELECT readonly_false FROM Account", "operation": "Upsert",
                                       "externalId": "Name"}]))
    fields = object_set.get_object("Account").parsed_query.fields
    assert "Rating" in fields and "AccountNumber" not in fields


def test_synthesized_describe_for_file_endpoints(make_script):
    object_set = resolve(make_script([
        {"query": "SELECT Name FROM Account", "operation": "Upsert", "externalId": "Name"},
        {"query": "SELECT LastName, AccountId FROM Contact", "operation": "Insert"},
    ]), describes={})
    contact = object_set.get_object("Contact")
    assert contact.source_describe.is_described is False
    assert contact.lookups["AccountId"].parent_names == ["Account"]
    assert contact.fields_to_update == ["LastName", "AccountId"]


def test_target_fields_follow_field_mapping(make_script):
    script = make_script([
        {"query": "SELECT Name FROM Account", "operation": "Upsert", "externalId": "Name",
         "useFieldMapping": True, "fieldMapping": [{"sourceField": "Name", "targetField": "Title__c"}]},
        {"query": "SELECT LastName, AccountId FROM Contact", "operation": "Insert"},
    ])
    script.setup()
    mapping = MappingResolver()
    mapping.add_script_objects(script.object_sets[0].active_objects)
    connection = FakeConnection()
    run(FieldResolver(mapping, connection, connection).resolve_object_set(script.object_sets[0]))
    contact = script.object_sets[0].get_object("Contact")
    assert "Account.Title__c" in contact.target_fields_in_query


def test_polymorphic_lookup_becomes_typeof_field(make_script):
    object_set = resolve(make_script([
        {"query": "SELECT Subject, OwnerId FROM Case", "operation": "Insert",
         "polymorphicLookups": [{"fieldName": "OwnerId"}]},
    ]), describes={"Case": CASE})
    case = object_set.get_object("Case")
    lookup = case.lookups["OwnerId"]

    assert lookup.polymorphic
    assert lookup.parent_names == ["User", "Group"]
    assert "TYPEOF Owner WHEN User THEN Name WHEN Group THEN Name END" in case.fields_in_query
    assert "Owner.Name" not in case.fields_in_query
    assert case.fields_to_update == ["Subject", "OwnerId"]


def test_composite_parent_external_id_expands_to_each_part(make_script):
    object_set = resolve(make_script([
        {"query": "SELECT Name, Site FROM Account", "operation": "Upsert", "externalId": "Name;Site"},
        {"query": "SELECT LastName, AccountId FROM Contact", "operation": "Insert"},
    ]))
    contact = object_set.get_object("Contact")
    assert contact.lookups["AccountId"].external_id_paths == {"Account": ["Account.Name", "Account.Site"]}
    assert {"Account.Name", "Account.Site"} <= set(contact.fields_in_query)
