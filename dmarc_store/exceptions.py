"""
Error taxonomy for report ingestion, storage and queries

Provides:
- Parse errors (fatal to one report file, never to a batch)
- Validation errors (bad filter values, bad date ranges)
- Domain, duplicate and not-found conditions that callers recover from
- Storage errors that roll back and propagate
"""
import logging
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError, OperationalError, InterfaceError

logger = logging.getLogger(__name__)


class DmarcStoreError(Exception):
    """Base class for all package exceptions"""

    error_code = "ERROR"

    def __init__(self, message: str, error_code: Optional[str] = None):
        self.message = message
        if error_code is not None:
            self.error_code = error_code
        super().__init__(self.message)


# Parse errors

class ReportParseError(DmarcStoreError):
    """Raised when a report file cannot be turned into report data"""

    error_code = "PARSE_ERROR"


class MalformedXmlError(ReportParseError):
    """The underlying XML parser rejected the document"""

    error_code = "MALFORMED_XML"

    def __init__(self, message: str, line: Optional[int] = None, column: Optional[int] = None):
        if line is not None:
            message = f"{message} (line {line}, column {column})"
        super().__init__(message)
        self.line = line
        self.column = column


class UnknownTagError(ReportParseError):
    """An element has no transition from the current tag"""

    error_code = "UNKNOWN_TAG"

    def __init__(self, tag: str):
        super().__init__(f"Unknown tag: {tag}")
        self.tag = tag


class ExternalEntityError(ReportParseError):
    """The document declares entities or references external resources"""

    error_code = "EXTERNAL_ENTITY"

    def __init__(self, message: str = "The XML document has an external entity"):
        super().__init__(message)


class IncompleteReportError(ReportParseError):
    """The document parsed but the report data is missing or invalid"""

    error_code = "INCOMPLETE_REPORT"

    def __init__(self, message: str = "Incorrect or incomplete report data"):
        super().__init__(message)


# Validation errors

class ValidationError(DmarcStoreError):
    """Invalid input supplied by the caller"""

    error_code = "VALIDATION_ERROR"


class FilterError(ValidationError):
    """Invalid filter, order or limit value"""

    error_code = "INVALID_FILTER"


class DateRangeError(ValidationError):
    """Report period is implausible or inverted"""

    error_code = "INVALID_DATE_RANGE"


# Domain resolution

class DomainError(DmarcStoreError):
    """The owning domain of a report cannot be used"""

    error_code = "DOMAIN_ERROR"


class UnknownDomainError(DomainError):
    """The domain is unknown and may not be added automatically"""

    error_code = "UNKNOWN_DOMAIN"

    def __init__(self, fqdn: Optional[str] = None):
        message = "Failed to add an incoming report: unknown domain"
        if fqdn:
            message += f" {fqdn}"
        super().__init__(message)
        self.fqdn = fqdn


class InactiveDomainError(DomainError):
    """The domain exists but is not active"""

    error_code = "INACTIVE_DOMAIN"

    def __init__(self, fqdn: Optional[str] = None):
        super().__init__("Failed to add an incoming report: the domain is inactive")
        self.fqdn = fqdn


# Storage

class DuplicateReportError(DmarcStoreError):
    """The natural key of the report is already stored"""

    error_code = "DUPLICATE_REPORT"

    def __init__(self, message: str = "This report has already been loaded"):
        super().__init__(message)


class NotFoundError(DmarcStoreError):
    """Requested row does not exist"""

    error_code = "NOT_FOUND"


class StorageError(DmarcStoreError):
    """Database failure; the current operation was rolled back"""

    error_code = "DATABASE_ERROR"

    def __init__(self, message: str = "Database error", origin: Optional[BaseException] = None):
        super().__init__(message)
        self.origin = origin


# MySQL client error codes
_ACCESS_DENIED_CODES = (1044, 1045)
_CONNECTION_CODES = (2002, 2003, 2006, 2013)


def storage_error_from(exc: SQLAlchemyError, message: str) -> StorageError:
    """
    Build a StorageError for a failed database operation

    Connection and access failures get a more specific description than the
    operation message, the original exception is kept as the cause.

    Args:
        exc: The SQLAlchemy exception
        message: Description of the failed operation

    Returns:
        StorageError instance
    """
    detail = None
    if isinstance(exc, (OperationalError, InterfaceError)):
        orig = getattr(exc, "orig", None)
        args = getattr(orig, "args", ()) or ()
        code = args[0] if args and isinstance(args[0], int) else None
        if code in _ACCESS_DENIED_CODES or "password authentication failed" in str(orig):
            detail = "Database access denied"
        elif code in _CONNECTION_CODES or exc.connection_invalidated or "could not connect" in str(orig):
            detail = "Database connection error"
    if detail:
        message = f"{message}: {detail}"
    error = StorageError(message, origin=exc)
    error.__cause__ = exc
    return error


def error_result(exc: DmarcStoreError, **extra: Any) -> Dict[str, Any]:
    """
    Convert an exception into a structured result for the caller

    Args:
        exc: Handled exception
        **extra: Additional fields to include

    Returns:
        Dictionary with error_code, error and message keys
    """
    result = {
        "error_code": -1,
        "error": exc.error_code,
        "message": exc.message,
    }
    result.update(extra)
    return result
