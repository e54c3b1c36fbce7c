"""
SQLAlchemy models for the report store.

All models are exported from this module for easy importing.
"""

from dmarc_store.models.dmarc import Domain, Report, ReportRecord, utc_now
from dmarc_store.models.report_log import ReportLogEntry
from dmarc_store.models.types import (
    ALIGNMENT_VALUES, DISPOSITION_VALUES, IPAddressType, JSONText, LookupIndex
)

__all__ = [
    "Domain",
    "Report",
    "ReportRecord",
    "ReportLogEntry",
    "utc_now",
    # Column types
    "ALIGNMENT_VALUES",
    "DISPOSITION_VALUES",
    "IPAddressType",
    "JSONText",
    "LookupIndex",
]
