"""Connection cache: one connection per (endpoint identity, API version)."""

import logging
from typing import Dict, Tuple

from ..config import Settings
from ..models.script import ScriptOrg
from .base import BaseConnection
from .csv_files import CsvFileConnection
from .salesforce import SalesforceConnection

logger = logging.getLogger(__name__)


class ConnectionRegistry:
    """Creates connections on first use and reuses them for every task."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self._connections: Dict[Tuple[str, str], BaseConnection] = {}

    def get(self, org: ScriptOrg, api_version: str) -> BaseConnection:
        key = (org.identity, api_version)
        connection = self._connections.get(key)
        if connection is None:
            connection = self._create(org, api_version)
            self._connections[key] = connection
            logger.info(f"Connection opened: {org.name} ({org.identity}), API {api_version}")
        return connection

    def register(self, org: ScriptOrg, api_version: str, connection: BaseConnection) -> None:
        """Install a preconfigured connection for an org."""
        self._connections[(org.identity, api_version)] = connection

    def _create(self, org: ScriptOrg, api_version: str) -> BaseConnection:
        if org.is_file_media:
            return CsvFileConnection(org.directory or ".", api_version)
        return SalesforceConnection(
            instance_url=org.instance_url or "",
            access_token=org.access_token or "",
            api_version=api_version,
            timeout=self.settings.http_timeout_seconds,
            max_retries=self.settings.http_max_retries,
            backoff_factor=self.settings.http_backoff_factor,
        )

    def __len__(self) -> int:
        return len(self._connections)

    async def close_all(self) -> None:
        for connection in self._connections.values():
            await connection.close()
        self._connections.clear()
