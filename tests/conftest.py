"""Shared fixtures: an in-memory endpoint and script builders."""

import asyncio
from typing import Any, Dict, List, Optional

import pytest

from sfmigrate.connections.base import BaseConnection
from sfmigrate.context import RunContext
from sfmigrate.models.describe import SObjectDescribe
from sfmigrate.models.record import CrudResult, Record
from sfmigrate.models.script import Script
from sfmigrate.soql import parse_query, typeof_paths


class FakeConnection(BaseConnection):
    """
    In-memory endpoint.

    Tables are lists of flat records keyed by object name; relationship
    values are stored under dotted keys. A record whose ``LastName`` is
    ``FAIL`` is rejected by every DML call.
    """

    def __init__(
        self,
        identity: str = "fake",
        tables: Optional[Dict[str, List[Dict[str, Any]]]] = None,
        describes: Optional[Dict[str, SObjectDescribe]] = None,
        id_prefix: str = "T",
    ):
        super().__init__(identity, "65.0")
        self.tables: Dict[str, List[Record]] = {
            name: [Record(row) for row in rows] for name, rows in (tables or {}).items()
        }
        self.describes = describes or {}
        self.id_prefix = id_prefix
        self.queries: List[str] = []
        self.query_all_queries: List[str] = []
        self.calls: List[tuple] = []
        self.purged: List[str] = []
        self._counter = 0

    def _new_id(self) -> str:
        self._counter += 1
        return f"{self.id_prefix}{self._counter:017d}"

    @staticmethod
    def _rejected(record: Record) -> bool:
        return record.get("LastName") == "FAIL"

    async def describe_sobject(self, object_name: str) -> Optional[SObjectDescribe]:
        return self.describes.get(object_name)

    async def query(self, soql: str, query_all: bool = False) -> List[Record]:
        self.queries.append(soql)
        if query_all:
            self.query_all_queries.append(soql)
        parsed = parse_query(soql)
        fields: List[str] = []
        for name in parsed.fields:
            fields.extend(typeof_paths(name) if name.upper().startswith("TYPEOF ") else [name])
        return [row.clone(fields) for row in self.tables.get(parsed.object_name, [])]

    async def create(self, object_name: str, records: List[Record], all_or_none: bool = False) -> List[CrudResult]:
        self.calls.append(("create", object_name, len(records)))
        table = self.tables.setdefault(object_name, [])
        results = []
        for record in records:
            if self._rejected(record):
                results.append(CrudResult(success=False, errors=["REQUIRED_FIELD_MISSING: LastName"]))
                continue
            row = record.without("Errors")
            row.id = self._new_id()
            table.append(row)
            results.append(CrudResult(id=row.id, success=True))
        return results

    async def update(self, object_name: str, records: List[Record], all_or_none: bool = False) -> List[CrudResult]:
        self.calls.append(("update", object_name, len(records)))
        by_id = {row.id: row for row in self.tables.get(object_name, [])}
        results = []
        for record in records:
            row = by_id.get(record.id)
            if row is None or self._rejected(record):
                results.append(CrudResult(id=record.id, success=False, errors=["ENTITY_IS_DELETED"]))
                continue
            row.update(record.without("Errors"))
            results.append(CrudResult(id=record.id, success=True))
        return results

    async def upsert(self, object_name: str, records: List[Record], external_id_field: str = "Id",
                     all_or_none: bool = False) -> List[CrudResult]:
        self.calls.append(("upsert", object_name, len(records)))
        existing = [r for r in records if r.id]
        new = [r for r in records if not r.id]
        updated = iter(await self.update(object_name, existing, all_or_none))
        created = iter(await self.create(object_name, new, all_or_none))
        return [next(updated) if r.id else next(created) for r in records]

    async def destroy(self, object_name: str, ids: List[str], all_or_none: bool = False) -> List[CrudResult]:
        self.calls.append(("destroy", object_name, len(ids)))
        table = self.tables.get(object_name, [])
        existing = {row.id for row in table}
        self.tables[object_name] = [row for row in table if row.id not in set(ids)]
        return [CrudResult(id=i, success=i in existing, errors=[] if i in existing else ["ENTITY_IS_DELETED"])
                for i in ids]

    async def empty_recycle_bin(self, ids: List[str]) -> List[CrudResult]:
        self.purged.extend(ids)
        return [CrudResult(id=i, success=True) for i in ids]


def run(coro):
    return asyncio.run(coro)


def build_script(objects: List[Dict[str, Any]], **options) -> Script:
    data = {
        "orgs": [
            {"name": "source", "instanceUrl": "https://source.example.com", "accessToken": "s"},
            {"name": "target", "instanceUrl": "https://target.example.com", "accessToken": "t"},
        ],
        "sourceOrg": "source",
        "targetOrg": "target",
        "objects": objects,
    }
    data.update(options)
    return Script.from_dict(data)


@pytest.fixture
def context():
    return RunContext()


@pytest.fixture
def make_script():
    return build_script
