"""
Error taxonomy of the record-management core.

Every error here is caught at an operation boundary (controller method or
API route) and turned into a user-facing message; none is fatal.
"""
from typing import Iterable, Optional


class SOHError(Exception):
    """Base class for all domain errors."""

    #: Spanish message shown to the operator
    user_message = "Ha ocurrido un error"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.user_message)


class ValidationError(SOHError):
    """A required field is empty or a categorical value is not selectable."""

    user_message = "Por favor completa los campos obligatorios"

    def __init__(self, message: Optional[str] = None, fields: Iterable[str] = ()):
        self.fields = list(fields)
        if message is None and self.fields:
            message = f"Campos obligatorios vacíos: {', '.join(self.fields)}"
        super().__init__(message)


class PermissionDenied(SOHError):
    user_message = "No tienes permisos para esta acción"

    def __init__(self, resource: str, action: str, role: Optional[str] = None):
        self.resource = resource
        self.action = action
        self.role = role
        super().__init__(self.user_message)


class PersistenceError(SOHError):
    """A gateway call was rejected (transport, validation or missing row)."""

    user_message = "Error al guardar los datos"

    def __init__(self, message: Optional[str] = None, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class RecordNotFound(PersistenceError):
    def __init__(self, table: str, record_id: str):
        self.table = table
        self.record_id = record_id
        super().__init__(f"NOT_FOUND:{table}:{record_id}", status_code=404)


class LoadError(SOHError):
    """The parallel fetch batch of a reload failed."""

    user_message = "Error al cargar los datos"
