"""Salesforce org connection over the REST, SOAP and Bulk APIs."""

import asyncio
import csv
import io
import logging
from typing import Any, Dict, List, Optional, Tuple
from xml.etree import ElementTree
from xml.sax.saxutils import escape

import httpx

from ..constants import (
    COMPOSITE_SOBJECTS_MAX_RECORDS,
    ID_FIELD_NAME,
    SFORCE_API_CALL_HEADERS,
)
from ..exceptions import ConfigurationError, ExecutionError
from ..models.describe import SObjectDescribe
from ..models.record import CrudResult, Record
from ..soql import parse_query, typeof_paths
from .base import BaseConnection, format_csv_value
from .models import BulkV1BatchInfo, BulkV1JobInfo, BulkV2JobInfo, QueryResult, SaveResult

logger = logging.getLogger(__name__)

RETRY_STATUS_CODES = (429, 500, 502, 503, 504)
IDEMPOTENT_METHODS = ("GET", "HEAD", "PUT", "DELETE", "OPTIONS")


def _parse_salesforce_error(response: httpx.Response) -> Tuple[str, str]:
    fallback_code = "salesforce_request_failed"
    fallback_message = f"Salesforce API request failed with status {response.status_code}"

    try:
        payload = response.json()
    except ValueError:
        body = response.text.strip()
        return fallback_code, body or fallback_message

    if isinstance(payload, list) and payload:
        first = payload[0]
        if isinstance(first, dict):
            return (
                str(first.get("errorCode") or fallback_code),
                str(first.get("message") or fallback_message),
            )

    if isinstance(payload, dict):
        error = payload.get("error") if isinstance(payload.get("error"), dict) else payload
        return (
            str(error.get("errorCode") or error.get("exceptionCode") or fallback_code),
            str(error.get("message") or error.get("exceptionMessage") or fallback_message),
        )

    return fallback_code, fallback_message


def flatten_record(data: Dict[str, Any], prefix: str = "") -> Record:
    """Flatten nested relationship objects into dotted keys, dropping ``attributes``."""
    record = Record()
    for key, value in data.items():
        if key == "attributes":
            continue
        name = f"{prefix}{key}"
        if isinstance(value, dict) and "records" not in value:
            record.update(flatten_record(value, f"{name}."))
        else:
            record[name] = value
    return record


def _chunks(items: List[Any], size: int) -> List[List[Any]]:
    return [items[i:i + size] for i in range(0, len(items), size)]


def _save_results(payload: Any) -> List[CrudResult]:
    results = []
    for item in payload or []:
        parsed = SaveResult.model_validate(item)
        results.append(CrudResult(
            id=parsed.id,
            success=parsed.success,
            errors=[
                f"{e.status_code}: {e.message}" + (f" ({', '.join(e.fields)})" if e.fields else "")
                if e.status_code else e.message
                for e in parsed.errors
            ],
        ))
    return results


class SalesforceConnection(BaseConnection):
    """
    Connection to a live org.

    Uses an ``httpx.AsyncClient`` for every call. REST CRUD goes through
    the composite sobjects collections (200 records per request), Bulk v1
    uses JSON jobs and Bulk v2 uses CSV ingest jobs.
    """

    supports_bulk_api = True
    evaluates_where = True

    def __init__(
        self,
        instance_url: str,
        access_token: str,
        api_version: str,
        timeout: float = 120.0,
        client: Optional[httpx.AsyncClient] = None,
        max_retries: int = 3,
        backoff_factor: float = 2.0,
    ):
        """
        Initialize the connection.

        Args:
            instance_url: Org instance URL
            access_token: OAuth access token or session id
            api_version: API version without the ``v`` prefix
            timeout: Request timeout in seconds
            client: Preconfigured client (tests inject a mock transport)
            max_retries: Retries of a failed request
            backoff_factor: Base of the exponential delay between retries, in seconds
        """
        if not instance_url or not access_token:
            raise ConfigurationError("instanceUrl and accessToken are required for an org connection")
        super().__init__(instance_url.rstrip("/").lower(), api_version)
        self.instance_url = instance_url.rstrip("/")
        self.access_token = access_token
        self.timeout = timeout
        self.max_retries = max(max_retries, 0)
        self.backoff_factor = backoff_factor
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.instance_url,
                timeout=self.timeout,
                transport=httpx.AsyncHTTPTransport(retries=self.max_retries),
                headers={"Authorization": f"Bearer {self.access_token}", **SFORCE_API_CALL_HEADERS},
            )
        return self._client

    @property
    def data_path(self) -> str:
        return f"/services/data/v{self.api_version}"

    def _retry_delay(self, attempt: int, response: Optional[httpx.Response] = None) -> float:
        if response is not None:
            try:
                return max(float(response.headers.get("Retry-After", "")), 0.0)
            except ValueError:
                pass
        return self.backoff_factor * (2 ** attempt)

    async def _request(self, method: str, url: str, object_name: Optional[str] = None, **kwargs) -> httpx.Response:
        """
        Send one API request.

        429 is retried for every method; the other statuses in
        ``RETRY_STATUS_CODES`` and transport errors only for idempotent methods.
        """
        attempt = 0
        while True:
            try:
                response = await self.client.request(method, url, **kwargs)
            except httpx.TransportError as e:
                if method.upper() in IDEMPOTENT_METHODS and attempt < self.max_retries:
                    delay = self._retry_delay(attempt)
                    logger.warning(f"{method} {url} failed ({e}), retry {attempt + 1} in {delay:.1f}s")
                    await asyncio.sleep(delay)
                    attempt += 1
                    continue
                raise ExecutionError(f"Request to {url} failed: {e}", object_name)
            except httpx.HTTPError as e:
                raise ExecutionError(f"Request to {url} failed: {e}", object_name)

            retryable = response.status_code == 429 or (
                response.status_code in RETRY_STATUS_CODES and method.upper() in IDEMPOTENT_METHODS)
            if not retryable or attempt >= self.max_retries:
                break
            delay = self._retry_delay(attempt, response)
            logger.warning(f"{method} {url} returned {response.status_code}, retry {attempt + 1} in {delay:.1f}s")
            await asyncio.sleep(delay)
            attempt += 1

        if response.status_code >= 400:
            code, message = _parse_salesforce_error(response)
            raise ExecutionError(f"{code}: {message}", object_name, error_code=code)
        return response

    # ---- Metadata and query ----

    async def describe_sobject(self, object_name: str) -> Optional[SObjectDescribe]:
        try:
            response = await self._request("GET", f"{self.data_path}/sobjects/{object_name}/describe/", object_name)
        except ExecutionError as e:
            if e.error_code == "NOT_FOUND":
                raise ConfigurationError("Object does not exist in the org", object_name)
            raise
        return SObjectDescribe.from_dict(response.json())

    async def query(self, soql: str, query_all: bool = False) -> List[Record]:
        parsed = parse_query(soql)
        endpoint = "queryAll" if query_all else "query"
        plain_fields: List[str] = []
        for name in parsed.fields:
            plain_fields.extend(typeof_paths(name) if name.upper().startswith("TYPEOF ") else [name])
        response = await self._request("GET", f"{self.data_path}/{endpoint}/", parsed.object_name, params={"q": soql})
        result = QueryResult.model_validate(response.json())
        records = [flatten_record(r) for r in result.records]
        while result.next_records_url:
            response = await self._request("GET", result.next_records_url, parsed.object_name)
            result = QueryResult.model_validate(response.json())
            records.extend(flatten_record(r) for r in result.records)
        for record in records:
            for name in plain_fields:
                if name not in record:
                    record[name] = None
        logger.debug(f"{parsed.object_name}: {len(records)} record(s) queried")
        return records

    # ---- REST CRUD ----

    async def _composite(self, method: str, url: str, object_name: str, records: List[Dict[str, Any]],
                         all_or_none: bool) -> List[CrudResult]:
        results: List[CrudResult] = []
        for chunk in _chunks(records, COMPOSITE_SOBJECTS_MAX_RECORDS):
            body = {"allOrNone": all_or_none, "records": chunk}
            response = await self._request(method, url, object_name, json=body)
            results.extend(_save_results(response.json()))
        return results

    @staticmethod
    def _payload(object_name: str, record: Record, include_id: bool) -> Dict[str, Any]:
        body: Dict[str, Any] = {"attributes": {"type": object_name}}
        for key, value in record.items():
            if "." in key or key.startswith("___") or key == "Errors":
                continue
            if key == ID_FIELD_NAME and not include_id:
                continue
            body[key] = value
        return body

    async def create(self, object_name: str, records: List[Record], all_or_none: bool = False) -> List[CrudResult]:
        payload = [self._payload(object_name, r, include_id=False) for r in records]
        return await self._composite("POST", f"{self.data_path}/composite/sobjects", object_name, payload, all_or_none)

    async def update(self, object_name: str, records: List[Record], all_or_none: bool = False) -> List[CrudResult]:
        payload = [self._payload(object_name, r, include_id=True) for r in records]
        return await self._composite("PATCH", f"{self.data_path}/composite/sobjects", object_name, payload, all_or_none)

    async def upsert(
        self,
        object_name: str,
        records: List[Record],
        external_id_field: str = ID_FIELD_NAME,
        all_or_none: bool = False,
    ) -> List[CrudResult]:
        payload = [self._payload(object_name, r, include_id=True) for r in records]
        url = f"{self.data_path}/composite/sobjects/{object_name}/{external_id_field}"
        return await self._composite("PATCH", url, object_name, payload, all_or_none)

    async def destroy(self, object_name: str, ids: List[str], all_or_none: bool = False) -> List[CrudResult]:
        results: List[CrudResult] = []
        for chunk in _chunks(ids, COMPOSITE_SOBJECTS_MAX_RECORDS):
            params = {"ids": ",".join(chunk), "allOrNone": str(all_or_none).lower()}
            response = await self._request("DELETE", f"{self.data_path}/composite/sobjects", object_name, params=params)
            results.extend(_save_results(response.json()))
        return results

    async def empty_recycle_bin(self, ids: List[str]) -> List[CrudResult]:
        """Purge through the SOAP partner ``emptyRecycleBin`` call."""
        results: List[CrudResult] = []
        for chunk in _chunks(ids, COMPOSITE_SOBJECTS_MAX_RECORDS):
            id_elements = "".join(f"<urn:ids>{escape(i)}</urn:ids>" for i in chunk)
            envelope = (
                '<?xml version="1.0" encoding="utf-8"?>'
                '<soapenv:Envelope xmlns:soapenv="http://schemas.xmlsoap.org/soap/envelope/" '
                'xmlns:urn="urn:partner.soap.sforce.com">'
                f"<soapenv:Header><urn:SessionHeader><urn:sessionId>{escape(self.access_token)}"
                "</urn:sessionId></urn:SessionHeader></soapenv:Header>"
                f"<soapenv:Body><urn:emptyRecycleBin>{id_elements}</urn:emptyRecycleBin></soapenv:Body>"
                "</soapenv:Envelope>"
            )
            response = await self._request(
                "POST",
                f"/services/Soap/u/{self.api_version}",
                content=envelope.encode("utf-8"),
                headers={"Content-Type": "text/xml; charset=UTF-8", "SOAPAction": '""'},
            )
            root = ElementTree.fromstring(response.content)
            for result in root.iter("{urn:partner.soap.sforce.com}result"):
                errors = [
                    (e.findtext("{urn:partner.soap.sforce.com}message") or "").strip()
                    for e in result.findall("{urn:partner.soap.sforce.com}errors")
                ]
                results.append(CrudResult(
                    id=result.findtext("{urn:partner.soap.sforce.com}id"),
                    success=(result.findtext("{urn:partner.soap.sforce.com}success") == "true"),
                    errors=[e for e in errors if e],
                ))
        return results

    # ---- Bulk API v1 ----

    @property
    def bulk_v1_path(self) -> str:
        return f"/services/async/{self.api_version}"

    @property
    def _bulk_v1_headers(self) -> Dict[str, str]:
        return {"X-SFDC-Session": self.access_token, "Content-Type": "application/json"}

    async def bulk_v1_create_job(
        self, object_name: str, operation: str, concurrency_mode: str = "Parallel",
        external_id_field: Optional[str] = None,
    ) -> str:
        body: Dict[str, Any] = {
            "operation": operation,
            "object": object_name,
            "contentType": "JSON",
            "concurrencyMode": concurrency_mode,
        }
        if external_id_field:
            body["externalIdFieldName"] = external_id_field
        response = await self._request("POST", f"{self.bulk_v1_path}/job", object_name,
                                       json=body, headers=self._bulk_v1_headers)
        return BulkV1JobInfo.model_validate(response.json()).id

    async def bulk_v1_add_batch(self, job_id: str, records: List[Dict[str, Any]]) -> str:
        payload = [{k: v for k, v in r.items() if "." not in k and not k.startswith("___") and k != "Errors"}
                   for r in records]
        response = await self._request("POST", f"{self.bulk_v1_path}/job/{job_id}/batch",
                                       json=payload, headers=self._bulk_v1_headers)
        return BulkV1BatchInfo.model_validate(response.json()).id

    async def bulk_v1_batch_state(self, job_id: str, batch_id: str) -> Tuple[str, Optional[str]]:
        response = await self._request("GET", f"{self.bulk_v1_path}/job/{job_id}/batch/{batch_id}",
                                       headers=self._bulk_v1_headers)
        info = BulkV1BatchInfo.model_validate(response.json())
        return info.state, info.state_message

    async def bulk_v1_batch_results(self, job_id: str, batch_id: str) -> List[CrudResult]:
        response = await self._request("GET", f"{self.bulk_v1_path}/job/{job_id}/batch/{batch_id}/result",
                                       headers=self._bulk_v1_headers)
        return _save_results(response.json())

    async def bulk_v1_close_job(self, job_id: str) -> None:
        await self._request("POST", f"{self.bulk_v1_path}/job/{job_id}",
                            json={"state": "Closed"}, headers=self._bulk_v1_headers)

    # ---- Bulk API v2 ----

    async def bulk_v2_create_job(
        self, object_name: str, operation: str, external_id_field: Optional[str] = None,
    ) -> str:
        body: Dict[str, Any] = {
            "object": object_name,
            "operation": operation,
            "contentType": "CSV",
            "lineEnding": "LF",
        }
        if external_id_field:
            body["externalIdFieldName"] = external_id_field
        response = await self._request("POST", f"{self.data_path}/jobs/ingest", object_name, json=body)
        return BulkV2JobInfo.model_validate(response.json()).id

    async def bulk_v2_upload(self, job_id: str, records: List[Dict[str, Any]]) -> None:
        columns: List[str] = []
        for record in records:
            for key in record:
                if key not in columns and "." not in key and not key.startswith("___") and key != "Errors":
                    columns.append(key)
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(columns)
        for record in records:
            writer.writerow([format_csv_value(record.get(c)) for c in columns])
        await self._request(
            "PUT",
            f"{self.data_path}/jobs/ingest/{job_id}/batches",
            content=buffer.getvalue().encode("utf-8"),
            headers={"Content-Type": "text/csv"},
        )

    async def bulk_v2_close_job(self, job_id: str) -> None:
        await self._request("PATCH", f"{self.data_path}/jobs/ingest/{job_id}", json={"state": "UploadComplete"})

    async def bulk_v2_job_state(self, job_id: str) -> Tuple[str, Optional[str]]:
        response = await self._request("GET", f"{self.data_path}/jobs/ingest/{job_id}")
        info = BulkV2JobInfo.model_validate(response.json())
        return info.state, info.error_message

    async def bulk_v2_job_results(self, job_id: str) -> Dict[str, List[Dict[str, Any]]]:
        results: Dict[str, List[Dict[str, Any]]] = {}
        for key, suffix in (("successful", "successfulResults"), ("failed", "failedResults"),
                            ("unprocessed", "unprocessedrecords")):
            response = await self._request("GET", f"{self.data_path}/jobs/ingest/{job_id}/{suffix}/")
            results[key] = list(csv.DictReader(io.StringIO(response.text)))
        return results

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
