"""Common type aliases for the OpenSaludOcupacional API."""
from typing import Any

# A single row of a JSON table (field_name -> value)
TableRow = dict[str, Any]

# Domain record aliases
AccidentRecord = dict[str, Any]
InfirmaryRecord = dict[str, Any]
AbsenceRecord = dict[str, Any]
CatalogEntry = dict[str, Any]
DirectoryEntry = dict[str, Any]
SessionUser = dict[str, Any]

# List aliases
RecordList = list[TableRow]
CatalogList = list[CatalogEntry]
