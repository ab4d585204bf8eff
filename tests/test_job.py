"""Tests for task ordering and the job stages against in-memory endpoints."""

import asyncio

import pytest

from sfmigrate.exceptions import ExecutionError, UnresolvableReferenceError
from sfmigrate.job.job import MigrationJob
from sfmigrate.models.describe import LookupField, SObjectDescribe
from sfmigrate.models.migration import MigrationStatus, TaskState
from sfmigrate.models.record import Record
from sfmigrate.models.script import Operation, ScriptObject
from sfmigrate.services.field_resolver import FieldResolver
from sfmigrate.services.hooks import HookEventName
from sfmigrate.services.mapping import MappingResolver
from sfmigrate.services.values import ValuesMapper

from conftest import FakeConnection, run

ACCOUNT = {"query": "SELECT Name FROM Account", "operation": "Upsert", "externalId": "Name"}
CONTACT = {"query": "SELECT LastName, AccountId FROM Contact", "operation": "Insert"}


def build_job(script, source, target, context):
    script.setup()
    object_set = script.object_sets[0]
    mapping = MappingResolver()
    mapping.add_script_objects(object_set.active_objects)
    run(FieldResolver(mapping, source, target).resolve_object_set(object_set))
    job = MigrationJob(script, object_set, context, source, target, mapping,
                       values_mapper=ValuesMapper(script.values_mapping))
    job.build_tasks()
    return job


def scenario_source():
    return FakeConnection("source", tables={
        "Account": [{"Name": "Acme"}],
        "Contact": [{"Id": "S-C1", "LastName": "Doe", "AccountId": None, "Account.Name": "Acme"}],
    }, id_prefix="S")


# ---- Ordering ----

def script_object(query, operation, parents=(), master_detail=False):
    obj = ScriptObject(query=query, operation=operation)
    obj.setup()
    obj.lookups = {
        f"{p}Id": LookupField(field_name=f"{p}Id", relationship_name=p, parent_names=[p],
                              master_detail=master_detail)
        for p in parents
    }
    return obj


def test_order_puts_parents_and_readonly_first():
    objects = [
        script_object("SELECT LastName FROM Contact", Operation.INSERT, parents=["Account"]),
        script_object("SELECT Name FROM Account", Operation.INSERT),
        script_object("SELECT DeveloperName FROM RecordType", Operation.READONLY),
        script_object("SELECT Name FROM User", Operation.READONLY),
    ]
    ordered = MigrationJob.order_objects(objects)
    assert [o.name for o in ordered] == ["RecordType", "User", "Account", "Contact"]
    kept = MigrationJob.order_objects(objects, keep_declared_order=True)
    assert [o.name for o in kept] == ["RecordType", "Contact", "Account", "User"]


def test_order_moves_master_detail_parent_ahead():
    objects = [
        script_object("SELECT Name FROM Parent__c", Operation.INSERT, parents=["Child__c"]),
        script_object("SELECT Name FROM Child__c", Operation.INSERT, parents=["Parent__c"], master_detail=True),
    ]
    assert [o.name for o in MigrationJob.order_objects(objects)] == ["Parent__c", "Child__c"]


# ---- Scenario ----

def test_upsert_parent_then_insert_child_resolves_lookup(make_script, context):
    source, target = scenario_source(), FakeConnection("target")
    job = build_job(make_script([ACCOUNT, CONTACT]), source, target, context)
    summary = run(job.run())

    assert summary.status == MigrationStatus.COMPLETED
    assert summary.query_order == ["Account", "Contact"]
    assert summary.update_order == ["Account", "Contact"]
    account_id = target.tables["Account"][0].id
    assert target.tables["Account"][0]["Name"] == "Acme"
    assert target.tables["Contact"][0]["AccountId"] == account_id
    assert [t.state for t in job.tasks] == [TaskState.DONE, TaskState.DONE]
    assert job.get_task_by_object_name("Account").summary.inserted == 1


def test_lookup_resolves_through_parent_source_id(make_script, context):
    source = FakeConnection("source", tables={
        "Account": [{"Id": "S-A1", "Name": "Acme"}],
        "Contact": [{"Id": "S-C1", "LastName": "Doe", "AccountId": "S-A1"}],
    })
    target = FakeConnection("target", tables={"Account": [{"Id": "T-A1", "Name": "Acme"}]})
    job = build_job(make_script([ACCOUNT, CONTACT]), source, target, context)
    run(job.run())
    assert target.tables["Contact"][0]["AccountId"] == "T-A1"
    assert ("create", "Account", 1) not in target.calls


def test_unchanged_records_are_skipped_and_changed_updated(make_script, context):
    source = FakeConnection("source", tables={"Account": [
        {"Id": "S1", "Name": "Acme", "Rating": "Hot"},
        {"Id": "S2", "Name": "Globex", "Rating": "Hot"},
    ]})
    target = FakeConnection("target", tables={"Account": [
        {"Id": "T1", "Name": "Acme", "Rating": "Hot"},
        {"Id": "T2", "Name": "Globex", "Rating": "Cold"},
    ]})
    job = build_job(make_script([{"query": "SELECT Name, Rating FROM Account", "operation": "Upsert",
                                  "externalId": "Name"}]), source, target, context)
    run(job.run())
    task = job.tasks[0]
    assert task.summary.skipped_unchanged == 1
    assert task.summary.updated == 1
    assert target.calls == [("update", "Account", 1)]
    assert target.tables["Account"][1]["Rating"] == "Hot"


def test_self_reference_resolved_in_second_pass(make_script, context):
    contact = SObjectDescribe.from_dict({"name": "Contact", "fields": [
        {"name": "Id", "type": "id"},
        {"name": "LastName", "createable": True, "updateable": True},
        {"name": "ReportsToId", "type": "reference", "referenceTo": ["Contact"], "relationshipName": "ReportsTo",
         "createable": True, "updateable": True},
    ]})
    source = FakeConnection("source", tables={"Contact": [
        {"Id": "S-C1", "LastName": "Boss", "ReportsToId": None},
        {"Id": "S-C2", "LastName": "Report", "ReportsToId": "S-C1"},
    ]}, describes={"Contact": contact})
    target = FakeConnection("target", describes={"Contact": contact})
    job = build_job(make_script([{"query": "SELECT LastName, ReportsToId FROM Contact", "operation": "Insert"}]),
                    source, target, context)
    task = job.tasks[0]
    assert task.deferred_lookup_fields == ["ReportsToId"]

    run(job.run())
    boss, report = target.tables["Contact"]
    assert report["ReportsToId"] == boss.id
    assert task.summary.inserted == 2
    assert task.summary.updated == 1
    assert task.state == TaskState.DONE


def test_missing_parent_is_reported(make_script, context):
    source = FakeConnection("source", tables={
        "Contact": [{"Id": "S-C1", "LastName": "Doe", "AccountId": "S-A9", "Account.Name": "Nope"}],
    })
    target = FakeConnection("target")
    job = build_job(make_script([ACCOUNT, CONTACT]), source, target, context)
    run(job.run())
    contact = job.get_task_by_object_name("Contact")
    assert target.tables["Contact"][0]["AccountId"] is None
    assert [m.lookup_value for m in contact.summary.missing_parents] == ["Nope"]


def test_missing_parent_aborts_set_when_configured(make_script, context):
    source = FakeConnection("source", tables={
        "Contact": [{"Id": "S-C1", "LastName": "Doe", "AccountId": "S-A9", "Account.Name": "Nope"}],
    })
    job = build_job(make_script([ACCOUNT, CONTACT], failOnMissingParentRecords=True),
                    source, FakeConnection("target"), context)
    with pytest.raises(UnresolvableReferenceError):
        run(job.run())
    assert job.summary.status == MigrationStatus.FAILED


class FailingTarget(FakeConnection):
    async def create(self, object_name, records, all_or_none=False):
        if object_name == "Account":
            raise ExecutionError("INSUFFICIENT_ACCESS: no create on Account", error_code="INSUFFICIENT_ACCESS")
        return await super().create(object_name, records, all_or_none)


def test_execution_error_fails_task_and_skips_dependents(make_script, context):
    source = scenario_source()
    source.tables["Case"] = [Record({"Id": "S-K1", "Subject": "Help"})]
    target = FailingTarget("target")
    job = build_job(make_script([ACCOUNT, CONTACT, {"query": "SELECT Subject FROM Case", "operation": "Insert"}]),
                    source, target, context)
    summary = run(job.run())

    states = {t.object_name: t.state for t in job.tasks}
    assert states == {"Account": TaskState.FAILED, "Contact": TaskState.SKIPPED, "Case": TaskState.DONE}
    assert summary.status == MigrationStatus.COMPLETED_WITH_ERRORS
    assert summary.errors[0]["object_name"] == "Account"
    assert len(target.tables["Case"]) == 1


def test_per_record_failures_do_not_stop_the_task(make_script, context):
    source = FakeConnection("source", tables={"Contact": [
        {"Id": "S-C1", "LastName": "FAIL"}, {"Id": "S-C2", "LastName": "Ok"},
    ]})
    target = FakeConnection("target")
    job = build_job(make_script([{"query": "SELECT LastName FROM Contact", "operation": "Insert"}]),
                    source, target, context)
    summary = run(job.run())
    task = job.tasks[0]
    assert (task.summary.inserted, task.summary.failed) == (1, 1)
    assert task.processed_records[0].has_errors
    assert summary.status == MigrationStatus.COMPLETED_WITH_ERRORS


def test_hook_cancellation_stops_at_next_task(make_script, context):
    def cancel_after_accounts(event):
        if event.object_name == "Account":
            event.cancel("enough")

    context.hooks.register(HookEventName.BEFORE_UPDATE, cancel_after_accounts)
    target = FakeConnection("target")
    job = build_job(make_script([ACCOUNT, CONTACT]), scenario_source(), target, context)
    summary = run(job.run())
    assert summary.status == MigrationStatus.CANCELLED
    assert len(target.tables["Account"]) == 1
    assert "Contact" not in target.tables
    assert context.cancel_reason == "enough"


def test_filter_hook_drops_records(make_script, context):
    context.hooks.register(HookEventName.FILTER_RECORDS,
                           lambda e: [r for r in e.records if r.get("Name") != "Skip"])
    source = FakeConnection("source", tables={"Account": [{"Name": "Keep"}, {"Name": "Skip"}]})
    target = FakeConnection("target")
    job = build_job(make_script([ACCOUNT]), source, target, context)
    run(job.run())
    assert [r["Name"] for r in target.tables["Account"]] == ["Keep"]


def test_parallel_execution_waits_for_parents(make_script, context):
    target = FakeConnection("target")
    job = build_job(make_script([ACCOUNT, CONTACT], executeTasksInParallel=True), scenario_source(), target,
                    context)
    summary = run(job.run())
    assert summary.status == MigrationStatus.COMPLETED
    assert summary.update_order == ["Account", "Contact"]
    assert target.tables["Contact"][0]["AccountId"] == target.tables["Account"][0].id


def test_parallel_execution_ignores_forward_lookups_not_updated(make_script, context):
    source = FakeConnection("source", tables={
        "Account": [{"Id": "S-A1", "Name": "Acme", "ContactId": "S-C1"}],
        "Contact": [{"Id": "S-C1", "LastName": "Doe", "AccountId": "S-A1"}],
    })
    target = FakeConnection("target")
    script = make_script([
        {"query": "SELECT Name, ContactId FROM Account", "operation": "Upsert", "externalId": "Name"},
        {"query": "SELECT LastName, AccountId FROM Contact", "operation": "Upsert", "externalId": "LastName",
         "excludedFromUpdateFields": ["AccountId"]},
    ], executeTasksInParallel=True)
    job = build_job(script, source, target, context)
    assert [t.object_name for t in job.tasks] == ["Contact", "Account"]
    assert [t.deferred_lookup_fields for t in job.tasks] == [[], []]

    summary = run(asyncio.wait_for(job.run(), 5))
    assert summary.status == MigrationStatus.COMPLETED
    assert summary.update_order == ["Contact", "Account"]
    assert target.tables["Account"][0]["ContactId"] == target.tables["Contact"][0].id
    assert "AccountId" not in target.tables["Contact"][0]


def test_simulation_mode_writes_nothing(make_script, context):
    target = FakeConnection("target")
    job = build_job(make_script([ACCOUNT, CONTACT], simulationMode=True), scenario_source(), target, context)
    run(job.run())
    assert target.calls == []
    account = job.get_task_by_object_name("Account").processed_records[0]
    contact = job.get_task_by_object_name("Contact").processed_records[0]
    assert len(account.id) == 18
    assert contact["AccountId"] == account.id


def test_values_mapping_applies_before_write(make_script, context):
    source = FakeConnection("source", tables={"Account": [{"Name": "Acme", "Rating": "Hot"}]})
    target = FakeConnection("target")
    script = make_script(
        [{"query": "SELECT Name, Rating FROM Account", "operation": "Upsert", "externalId": "Name",
          "useValuesMapping": True}],
        valuesMapping=[{"ObjectName": "Account", "FieldName": "Rating", "RawValue": "Hot", "Value": "Warm"}],
    )
    job = build_job(script, source, target, context)
    run(job.run())
    assert target.tables["Account"][0]["Rating"] == "Warm"


def test_delete_operations(make_script, context):
    target = FakeConnection("target", tables={"Account": [{"Id": "T1"}, {"Id": "T2"}]})
    job = build_job(make_script([{"query": "SELECT Name FROM Account", "operation": "HardDelete"}]),
                    FakeConnection("source"), target, context)
    summary = run(job.run())
    assert target.tables["Account"] == []
    assert target.purged == ["T1", "T2"]
    assert summary.delete_order == ["Account"]
    assert summary.query_order == []
    assert job.tasks[0].summary.deleted == 2


def test_delete_old_data_before_upsert(make_script, context):
    source = FakeConnection("source", tables={"Account": [{"Name": "Acme"}]})
    target = FakeConnection("target", tables={"Account": [{"Id": "T-OLD", "Name": "Old"}]})
    job = build_job(make_script([dict(ACCOUNT, deleteOldData=True)]), source, target, context)
    run(job.run())
    assert [r["Name"] for r in target.tables["Account"]] == ["Acme"]
    assert job.tasks[0].summary.deleted == 1


def test_get_task_by_field_path(make_script, context):
    job = build_job(make_script([ACCOUNT, CONTACT]), scenario_source(), FakeConnection("target"), context)
    task, field_name = job.get_task_by_field_path("Contact.Account.Name")
    assert task.object_name == "Account" and field_name == "Name"
    assert job.get_task_by_field_path("Contact.Owner.Name") == (None, None)
    contact = job.get_task_by_object_name("Contact")
    assert job.get_task_by_field_path("LastName", contact) == (contact, "LastName")


# ---- Lookup shapes ----

CASE_DESCRIBE = SObjectDescribe.from_dict({"name": "Case", "fields": [
    {"name": "Id", "type": "id"},
    {"name": "Subject", "createable": True, "updateable": True},
    {"name": "OwnerId", "type": "reference", "referenceTo": ["User", "Group"], "relationshipName": "Owner",
     "createable": True, "updateable": True},
]})


def test_polymorphic_owner_resolves_to_user_and_queue(make_script, context):
    source = FakeConnection("source", tables={
        "Case": [
            {"Id": "S-K1", "Subject": "Billing", "OwnerId": "S-U1", "Owner.Name": "Ann"},
            {"Id": "S-K2", "Subject": "Shipping", "OwnerId": "S-G1", "Owner.Name": "Support Queue"},
        ],
        "User": [{"Id": "S-U1", "Name": "Ann"}],
        "Group": [{"Id": "S-G1", "Name": "Support Queue"}],
    }, describes={"Case": CASE_DESCRIBE})
    target = FakeConnection("target", tables={
        "User": [{"Id": "TU1", "Name": "Ann"}],
        "Group": [{"Id": "TG1", "Name": "Support Queue"}],
    }, describes={"Case": CASE_DESCRIBE})
    script = make_script([{"query": "SELECT Subject, OwnerId FROM Case", "operation": "Insert",
                           "polymorphicLookups": [{"fieldName": "OwnerId"}]}])
    job = build_job(script, source, target, context)
    assert [t.object_name for t in job.tasks] == ["User", "Group", "Case"]

    summary = run(job.run())
    assert summary.status == MigrationStatus.COMPLETED
    assert [r["OwnerId"] for r in target.tables["Case"]] == ["TU1", "TG1"]
    assert any(q.startswith("SELECT Subject, OwnerId, Id, TYPEOF Owner WHEN User THEN Name") for q in source.queries)


def test_composite_parent_external_id_needs_every_part(make_script, context):
    source = FakeConnection("source", tables={
        "Account": [{"Id": "S-A1", "Name": "Acme", "Site": "East"}, {"Id": "S-A2", "Name": "Acme", "Site": "West"}],
        "Contact": [
            {"Id": "S-C1", "LastName": "West", "AccountId": None, "Account.Name": "Acme", "Account.Site": "West"},
            {"Id": "S-C2", "LastName": "Partial", "AccountId": None, "Account.Name": "Acme", "Account.Site": None},
            {"Id": "S-C3", "LastName": "East", "AccountId": None, "Account.Name": "Acme", "Account.Site": "East"},
        ],
    })
    target = FakeConnection("target", tables={"Account": [{"Id": "T-A1", "Name": "Acme", "Site": "West"}]})
    script = make_script([
        {"query": "SELECT Name, Site FROM Account", "operation": "Upsert", "externalId": "Name;Site"},
        CONTACT,
    ])
    job = build_job(script, source, target, context)
    run(job.run())

    by_site = {r["Site"]: r.id for r in target.tables["Account"]}
    assert set(by_site) == {"West", "East"} and by_site["West"] == "T-A1"
    assert [r["AccountId"] for r in target.tables["Contact"]] == ["T-A1", None, by_site["East"]]
    assert job.get_task_by_object_name("Contact").summary.missing_parents == []


# ---- Master objects and record filters ----

def master_scenario_source():
    return FakeConnection("source", tables={
        "Account": [{"Id": "S-A1", "Name": "Acme"}, {"Id": "S-A2", "Name": "Globex"}],
        "Contact": [{"Id": "S-C1", "LastName": "Doe", "AccountId": "S-A1"},
                    {"Id": "S-C2", "LastName": "Roe", "AccountId": "S-A9"},
                    {"Id": "S-C3", "LastName": "Poe", "AccountId": None}],
    })


def test_non_master_parent_keeps_only_referenced_records(make_script, context):
    target = FakeConnection("target")
    job = build_job(make_script([dict(ACCOUNT, master=False), CONTACT]), master_scenario_source(), target, context)
    summary = run(job.run())

    assert summary.status == MigrationStatus.COMPLETED
    assert [r["Name"] for r in target.tables["Account"]] == ["Acme"]
    assert target.tables["Contact"][0]["AccountId"] == target.tables["Account"][0].id
    assert len(target.tables["Contact"]) == 3
    assert job.get_task_by_object_name("Account").summary.source_records == 1


def test_non_master_child_keeps_records_pointing_at_kept_parents(make_script, context):
    target = FakeConnection("target")
    job = build_job(make_script([ACCOUNT, dict(CONTACT, master=False)]), master_scenario_source(), target, context)
    run(job.run())

    assert [r["Name"] for r in target.tables["Account"]] == ["Acme", "Globex"]
    assert [r["LastName"] for r in target.tables["Contact"]] == ["Doe"]


def test_non_master_object_without_relationships_keeps_everything(make_script, context):
    target = FakeConnection("target")
    job = build_job(make_script([dict(ACCOUNT, master=False)]), master_scenario_source(), target, context)
    run(job.run())
    assert len(target.tables["Account"]) == 2


def test_source_filter_applied_when_endpoint_ignores_where(make_script, context):
    source = FakeConnection("source", tables={"Account": [
        {"Id": "S1", "Name": "Acme", "Rating": "Hot"},
        {"Id": "S2", "Name": "Globex", "Rating": "Hot"},
        {"Id": "S3", "Name": "Initech", "Rating": "Cold"},
    ]})
    target = FakeConnection("target")
    script = make_script([{"query": "SELECT Name, Rating FROM Account", "operation": "Upsert", "externalId": "Name",
                           "sourceRecordsFilter": "Rating = 'Hot' AND NOT Name LIKE 'G%'"}])
    job = build_job(script, source, target, context)
    run(job.run())

    assert source.queries[0].endswith("WHERE Rating = 'Hot' AND NOT Name LIKE 'G%'")
    assert [r["Name"] for r in target.tables["Account"]] == ["Acme"]


def test_source_filter_is_combined_with_the_where_clause(make_script, context):
    script = make_script([{"query": "SELECT Name FROM Account WHERE Industry = 'Tech'", "operation": "Upsert",
                           "externalId": "Name", "sourceRecordsFilter": "Rating = 'Hot'"}])
    job = build_job(script, FakeConnection("source"), FakeConnection("target"), context)
    assert job.tasks[0]._source_soql().endswith("WHERE (Industry = 'Tech') AND (Rating = 'Hot')")


def test_target_filter_drops_outgoing_records(make_script, context):
    target = FakeConnection("target")
    script = make_script([ACCOUNT, dict(CONTACT, targetRecordsFilter="LastName IN ('Doe', 'Poe')")])
    job = build_job(script, master_scenario_source(), target, context)
    run(job.run())
    assert [r["LastName"] for r in target.tables["Contact"]] == ["Doe", "Poe"]


def test_unparsable_target_filter_is_skipped_with_warning(make_script, context, caplog):
    target = FakeConnection("target")
    job = build_job(make_script([dict(ACCOUNT, targetRecordsFilter="Name ==")]), master_scenario_source(), target,
                    context)
    with caplog.at_level("WARNING"):
        run(job.run())
    assert len(target.tables["Account"]) == 2
    assert any("target filter not applied" in r.getMessage() for r in caplog.records)


def test_query_all_flags_reach_the_endpoints(make_script, context):
    source, target = master_scenario_source(), FakeConnection("target")
    script = make_script([dict(ACCOUNT, query="SELECT Name FROM Account WHERE IsDeleted = true",
                               useQueryAll=True, queryAllTarget=True)])
    job = build_job(script, source, target, context)
    run(job.run())
    assert source.query_all_queries == source.queries
    assert len(target.query_all_queries) == 1
    assert "WHERE" not in target.query_all_queries[0]
