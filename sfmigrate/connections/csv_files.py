"""Flat-file endpoint: one ``<Object>.csv`` per object in a directory."""

import csv
import logging
import random
import string
from pathlib import Path
from typing import Dict, List, Optional

from ..constants import CSV_FILE_EXTENSION, CSV_FILE_MEDIA, ID_FIELD_NAME
from ..models.describe import SObjectDescribe
from ..models.record import CrudResult, Record
from ..soql import parse_query, typeof_paths
from .base import BaseConnection

logger = logging.getLogger(__name__)


def generate_file_record_id(length: int = 18) -> str:
    return "".join(random.choices(string.ascii_letters + string.digits, k=length))


class CsvFileConnection(BaseConnection):
    """
    Endpoint backed by CSV files.

    Queries read the whole file and project the requested columns; WHERE,
    ORDER BY and LIMIT are not evaluated. Relationship values are read from
    dotted column headers (``Account.Name``). Rows without an Id get a
    generated one. DML rewrites the file after each call.
    """

    is_file_media = True

    def __init__(self, directory: str, api_version: str, encoding: str = "utf-8", delimiter: str = ","):
        """
        Initialize the connection.

        Args:
            directory: Directory holding the CSV files
            api_version: Kept for the registry key only
            encoding: File encoding
            delimiter: CSV delimiter character
        """
        path = Path(directory)
        super().__init__(f"{CSV_FILE_MEDIA}:{path.resolve()}", api_version)
        self.directory = path
        self.encoding = encoding
        self.delimiter = delimiter
        self._tables: Dict[str, List[Record]] = {}
        self._columns: Dict[str, List[str]] = {}

    def _file_path(self, object_name: str) -> Path:
        return self.directory / f"{object_name}{CSV_FILE_EXTENSION}"

    def _load(self, object_name: str) -> List[Record]:
        if object_name in self._tables:
            return self._tables[object_name]
        path = self._file_path(object_name)
        rows: List[Record] = []
        columns: List[str] = []
        if path.exists():
            with open(path, "r", encoding=self.encoding, newline="") as f:
                reader = csv.DictReader(f, delimiter=self.delimiter)
                columns = list(reader.fieldnames or [])
                for row in reader:
                    record = Record((k, v if v != "" else None) for k, v in row.items() if k is not None)
                    if not record.id:
                        record.id = generate_file_record_id()
                    rows.append(record)
            logger.info(f"Loaded {len(rows)} row(s) from {path}")
        else:
            logger.warning(f"File not found: {path}")
        if ID_FIELD_NAME not in columns:
            columns.insert(0, ID_FIELD_NAME)
        self._tables[object_name] = rows
        self._columns[object_name] = columns
        return rows

    def _save(self, object_name: str) -> None:
        rows = self._tables.get(object_name, [])
        columns = self._columns.setdefault(object_name, [ID_FIELD_NAME])
        for row in rows:
            for key in row:
                if key not in columns and not key.startswith("___") and key != "Errors":
                    columns.append(key)
        self.directory.mkdir(parents=True, exist_ok=True)
        with open(self._file_path(object_name), "w", encoding=self.encoding, newline="") as f:
            writer = csv.DictWriter(f, fieldnames=columns, delimiter=self.delimiter, extrasaction="ignore")
            writer.writeheader()
            for row in rows:
                writer.writerow({c: "" if row.get(c) is None else row.get(c) for c in columns})

    async def describe_sobject(self, object_name: str) -> Optional[SObjectDescribe]:
        return None

    async def query(self, soql: str, query_all: bool = False) -> List[Record]:
        parsed = parse_query(soql)
        fields: List[str] = []
        for name in parsed.fields:
            fields.extend(typeof_paths(name) if name.upper().startswith("TYPEOF ") else [name])
        rows = self._load(parsed.object_name)
        return [row.clone(fields) for row in rows]

    async def create(self, object_name: str, records: List[Record], all_or_none: bool = False) -> List[CrudResult]:
        rows = self._load(object_name)
        results = []
        for record in records:
            row = record.without("Errors")
            row.id = generate_file_record_id()
            rows.append(row)
            results.append(CrudResult(id=row.id, success=True))
        self._save(object_name)
        return results

    async def update(self, object_name: str, records: List[Record], all_or_none: bool = False) -> List[CrudResult]:
        by_id = {row.id: row for row in self._load(object_name)}
        results = []
        for record in records:
            row = by_id.get(record.id)
            if row is None:
                results.append(CrudResult(id=record.id, success=False, errors=["Record not found"]))
                continue
            row.update(record.without("Errors"))
            results.append(CrudResult(id=record.id, success=True))
        self._save(object_name)
        return results

    async def upsert(
        self,
        object_name: str,
        records: List[Record],
        external_id_field: str = ID_FIELD_NAME,
        all_or_none: bool = False,
    ) -> List[CrudResult]:
        by_key = {row.get_str(external_id_field): row for row in self._load(object_name)}
        to_create = [r for r in records if r.get_str(external_id_field) not in by_key]
        created = iter(await self.create(object_name, to_create)) if to_create else iter([])
        results = []
        for record in records:
            row = by_key.get(record.get_str(external_id_field))
            if row is None:
                results.append(next(created))
            else:
                row.update({k: v for k, v in record.items() if k not in (ID_FIELD_NAME, "Errors")})
                results.append(CrudResult(id=row.id, success=True))
        self._save(object_name)
        return results

    async def destroy(self, object_name: str, ids: List[str], all_or_none: bool = False) -> List[CrudResult]:
        rows = self._load(object_name)
        existing = {row.id for row in rows}
        targets = set(ids)
        self._tables[object_name] = [row for row in rows if row.id not in targets]
        self._save(object_name)
        return [
            CrudResult(id=i, success=True) if i in existing
            else CrudResult(id=i, success=False, errors=["Record not found"])
            for i in ids
        ]
