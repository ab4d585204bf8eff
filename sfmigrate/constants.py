"""Platform constants shared by the script model, the job and the API layer."""

from typing import Dict, List

DEFAULT_API_VERSION = "65.0"

# Engine selection
DEFAULT_BULK_API_THRESHOLD_RECORDS = 200
DEFAULT_BULK_API_VERSION = "2.0"
DEFAULT_BULK_API_V1_BATCH_SIZE = 9500
NOT_SUPPORTED_OBJECTS_IN_BULK_API: List[str] = ["Attachment", "ContentVersion"]

# Polling (milliseconds)
DEFAULT_POLLING_INTERVAL_MS = 5000
DEFAULT_POLLING_TIMEOUT_MS = 3_000_000

# Concurrency
MAX_PARALLEL_REQUESTS = 10
DEFAULT_MAX_PARALLEL_EXEC_TASKS = 10

# Record markers
ERRORS_FIELD_NAME = "Errors"
ID_FIELD_NAME = "Id"
INTERNAL_ID_FIELD_NAME = "___Id"
INTERNAL_SOURCE_ID_FIELD_NAME = "___SourceId"
NOT_AVAILABLE_VALUE = "#N/A"
SIMULATED_ID_LENGTH = 18

# External ids
COMPLEX_FIELDS_SEPARATOR = ";"
POLYMORPHIC_FIELD_SEPARATOR = "$"
DEFAULT_EXTERNAL_ID_FIELD_NAME = "Name"
DEFAULT_EXTERNAL_IDS: Dict[str, str] = {
    "EmailMessage": "Subject",
    "RecordType": "DeveloperName;NamespacePrefix;SobjectType",
}

# Special objects
RECORD_TYPE_SOBJECT_NAME = "RecordType"
USER_OBJECT_NAME = "User"
GROUP_OBJECT_NAME = "Group"
SPECIAL_OBJECTS: List[str] = [GROUP_OBJECT_NAME, USER_OBJECT_NAME, RECORD_TYPE_SOBJECT_NAME]
DEFAULT_USER_QUERY = "SELECT Id, Name FROM User"
DEFAULT_GROUP_WHERE_CLAUSE = "Type = 'Queue'"
DEFAULT_GROUP_QUERY = f"SELECT Id, Name FROM Group WHERE {DEFAULT_GROUP_WHERE_CLAUSE}"
REFERENCED_FIELDS_MAP: Dict[str, str] = {"OwnerId": USER_OBJECT_NAME}

# Transport
REST_API_JOB_ID = "REST"
SFORCE_API_CALL_HEADERS: Dict[str, str] = {"Sforce-Call-Options": "client=SFMIGRATE"}
COMPOSITE_SOBJECTS_MAX_RECORDS = 200
BULK_V2_ERROR_FIELD = "sf__Error"
BULK_V2_ID_FIELD = "sf__Id"

# File endpoints
CSV_FILE_MEDIA = "csvfile"
CSV_FILE_EXTENSION = ".csv"
