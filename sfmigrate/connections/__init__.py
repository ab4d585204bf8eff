"""Data endpoint connections."""

from .base import BaseConnection
from .csv_files import CsvFileConnection
from .registry import ConnectionRegistry
from .salesforce import SalesforceConnection

__all__ = [
    "BaseConnection",
    "CsvFileConnection",
    "ConnectionRegistry",
    "SalesforceConnection",
]
