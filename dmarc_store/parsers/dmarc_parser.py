"""
DMARC Aggregate Report XML Parser

Pure parser with no database dependencies.
Parses streams incrementally; compressed files are unwrapped by ReportFile.

The document is walked with a fixed tag table: every tag knows its parent,
the element names it accepts as children, where its text goes (report
metadata, date range, published policy or the current record) and the value
to use when it never appears. Any element that is not in the table ends the
parse with UnknownTagError.
"""
import io
import logging
import zipfile
import zlib
import xml.sax
from datetime import datetime, timezone
from enum import Enum
from typing import Any, BinaryIO, Dict, List, NamedTuple, Optional

from defusedxml.common import DefusedXmlException
from defusedxml.sax import make_parser
from pydantic import ValidationError as PydanticValidationError

from dmarc_store.exceptions import (
    ExternalEntityError, IncompleteReportError, MalformedXmlError, ReportParseError, UnknownTagError
)
from dmarc_store.ingest.report_file import ReportFile
from dmarc_store.schemas import ReportData

logger = logging.getLogger(__name__)

CHUNK_SIZE = 4096


class Scope(Enum):
    """Where the text of a leaf tag is stored"""
    METADATA = "metadata"
    DATE = "date"
    POLICY = "policy"
    RECORD = "record"
    ITEM = "item"  # field of a reason or auth result being collected


class TagId(Enum):
    ROOT = "<root>"
    FEEDBACK = "feedback"
    VERSION = "version"
    REPORT_METADATA = "report_metadata"
    ORG_NAME = "org_name"
    EMAIL = "email"
    EXTRA_CONTACT_INFO = "extra_contact_info"
    REPORT_ID = "report_id"
    DATE_RANGE = "date_range"
    BEGIN = "begin"
    END = "end"
    ERROR = "error"
    POLICY_PUBLISHED = "policy_published"
    POLICY_DOMAIN = "policy_domain"
    POLICY_ADKIM = "policy_adkim"
    POLICY_ASPF = "policy_aspf"
    POLICY_P = "policy_p"
    POLICY_SP = "policy_sp"
    POLICY_NP = "policy_np"
    POLICY_PCT = "policy_pct"
    POLICY_FO = "policy_fo"
    RECORD = "record"
    ROW = "row"
    SOURCE_IP = "source_ip"
    COUNT = "count"
    POLICY_EVALUATED = "policy_evaluated"
    DISPOSITION = "disposition"
    DKIM_ALIGN = "dkim_align"
    SPF_ALIGN = "spf_align"
    REASON = "reason"
    REASON_TYPE = "reason_type"
    REASON_COMMENT = "reason_comment"
    IDENTIFIERS = "identifiers"
    ENVELOPE_TO = "envelope_to"
    ENVELOPE_FROM = "envelope_from"
    HEADER_FROM = "header_from"
    AUTH_RESULTS = "auth_results"
    DKIM_AUTH = "dkim_auth"
    DKIM_DOMAIN = "dkim_domain"
    DKIM_SELECTOR = "dkim_selector"
    DKIM_RESULT = "dkim_result"
    DKIM_HUMAN_RESULT = "dkim_human_result"
    SPF_AUTH = "spf_auth"
    SPF_DOMAIN = "spf_domain"
    SPF_SCOPE = "spf_scope"
    SPF_RESULT = "spf_result"


_NO_DEFAULT = object()


class TagInfo(NamedTuple):
    parent: Optional[TagId]
    children: Optional[Dict[str, TagId]] = None
    scope: Optional[Scope] = None
    key: Optional[str] = None
    default: Any = _NO_DEFAULT


TAGS: Dict[TagId, TagInfo] = {
    TagId.ROOT: TagInfo(None, {"FEEDBACK": TagId.FEEDBACK}),
    TagId.FEEDBACK: TagInfo(TagId.ROOT, {
        "VERSION": TagId.VERSION,
        "REPORT_METADATA": TagId.REPORT_METADATA,
        "POLICY_PUBLISHED": TagId.POLICY_PUBLISHED,
        "RECORD": TagId.RECORD,
    }),
    TagId.VERSION: TagInfo(TagId.FEEDBACK, scope=Scope.METADATA, key="version", default=None),

    # Report metadata
    TagId.REPORT_METADATA: TagInfo(TagId.FEEDBACK, {
        "ORG_NAME": TagId.ORG_NAME,
        "EMAIL": TagId.EMAIL,
        "EXTRA_CONTACT_INFO": TagId.EXTRA_CONTACT_INFO,
        "REPORT_ID": TagId.REPORT_ID,
        "DATE_RANGE": TagId.DATE_RANGE,
        "ERROR": TagId.ERROR,
    }),
    TagId.ORG_NAME: TagInfo(TagId.REPORT_METADATA, scope=Scope.METADATA, key="org_name"),
    TagId.EMAIL: TagInfo(TagId.REPORT_METADATA, scope=Scope.METADATA, key="email", default=None),
    TagId.EXTRA_CONTACT_INFO: TagInfo(
        TagId.REPORT_METADATA, scope=Scope.METADATA, key="extra_contact_info", default=None
    ),
    TagId.REPORT_ID: TagInfo(TagId.REPORT_METADATA, scope=Scope.METADATA, key="report_id"),
    TagId.DATE_RANGE: TagInfo(TagId.REPORT_METADATA, {"BEGIN": TagId.BEGIN, "END": TagId.END}),
    TagId.BEGIN: TagInfo(TagId.DATE_RANGE, scope=Scope.DATE, key="begin"),
    TagId.END: TagInfo(TagId.DATE_RANGE, scope=Scope.DATE, key="end"),
    TagId.ERROR: TagInfo(TagId.REPORT_METADATA, scope=Scope.METADATA, key="error_string", default=None),

    # Policy published
    TagId.POLICY_PUBLISHED: TagInfo(TagId.FEEDBACK, {
        "DOMAIN": TagId.POLICY_DOMAIN,
        "ADKIM": TagId.POLICY_ADKIM,
        "ASPF": TagId.POLICY_ASPF,
        "P": TagId.POLICY_P,
        "SP": TagId.POLICY_SP,
        "NP": TagId.POLICY_NP,
        "PCT": TagId.POLICY_PCT,
        "FO": TagId.POLICY_FO,
    }),
    TagId.POLICY_DOMAIN: TagInfo(TagId.POLICY_PUBLISHED, scope=Scope.METADATA, key="domain"),
    TagId.POLICY_ADKIM: TagInfo(TagId.POLICY_PUBLISHED, scope=Scope.POLICY, key="adkim", default=None),
    TagId.POLICY_ASPF: TagInfo(TagId.POLICY_PUBLISHED, scope=Scope.POLICY, key="aspf", default=None),
    TagId.POLICY_P: TagInfo(TagId.POLICY_PUBLISHED, scope=Scope.POLICY, key="p", default=None),
    TagId.POLICY_SP: TagInfo(TagId.POLICY_PUBLISHED, scope=Scope.POLICY, key="sp", default=None),
    TagId.POLICY_NP: TagInfo(TagId.POLICY_PUBLISHED, scope=Scope.POLICY, key="np", default=None),
    TagId.POLICY_PCT: TagInfo(TagId.POLICY_PUBLISHED, scope=Scope.POLICY, key="pct", default=None),
    TagId.POLICY_FO: TagInfo(TagId.POLICY_PUBLISHED, scope=Scope.POLICY, key="fo", default=None),

    # Records
    TagId.RECORD: TagInfo(TagId.FEEDBACK, {
        "ROW": TagId.ROW,
        "IDENTIFIERS": TagId.IDENTIFIERS,
        "AUTH_RESULTS": TagId.AUTH_RESULTS,
    }),
    TagId.ROW: TagInfo(TagId.RECORD, {
        "SOURCE_IP": TagId.SOURCE_IP,
        "COUNT": TagId.COUNT,
        "POLICY_EVALUATED": TagId.POLICY_EVALUATED,
    }),
    TagId.SOURCE_IP: TagInfo(TagId.ROW, scope=Scope.RECORD, key="ip"),
    TagId.COUNT: TagInfo(TagId.ROW, scope=Scope.RECORD, key="count"),
    TagId.POLICY_EVALUATED: TagInfo(TagId.ROW, {
        "DISPOSITION": TagId.DISPOSITION,
        "DKIM": TagId.DKIM_ALIGN,
        "SPF": TagId.SPF_ALIGN,
        "REASON": TagId.REASON,
    }),
    TagId.DISPOSITION: TagInfo(TagId.POLICY_EVALUATED, scope=Scope.RECORD, key="disposition"),
    TagId.DKIM_ALIGN: TagInfo(TagId.POLICY_EVALUATED, scope=Scope.RECORD, key="dkim_align"),
    TagId.SPF_ALIGN: TagInfo(TagId.POLICY_EVALUATED, scope=Scope.RECORD, key="spf_align"),
    TagId.REASON: TagInfo(TagId.POLICY_EVALUATED, {
        "TYPE": TagId.REASON_TYPE,
        "COMMENT": TagId.REASON_COMMENT,
    }, scope=Scope.RECORD, key="reason", default=None),
    TagId.REASON_TYPE: TagInfo(TagId.REASON, scope=Scope.ITEM, key="type"),
    TagId.REASON_COMMENT: TagInfo(TagId.REASON, scope=Scope.ITEM, key="comment"),
    TagId.IDENTIFIERS: TagInfo(TagId.RECORD, {
        "ENVELOPE_TO": TagId.ENVELOPE_TO,
        "ENVELOPE_FROM": TagId.ENVELOPE_FROM,
        "HEADER_FROM": TagId.HEADER_FROM,
    }),
    TagId.ENVELOPE_TO: TagInfo(TagId.IDENTIFIERS, scope=Scope.RECORD, key="envelope_to", default=None),
    TagId.ENVELOPE_FROM: TagInfo(TagId.IDENTIFIERS, scope=Scope.RECORD, key="envelope_from", default=None),
    TagId.HEADER_FROM: TagInfo(TagId.IDENTIFIERS, scope=Scope.RECORD, key="header_from", default=None),
    TagId.AUTH_RESULTS: TagInfo(TagId.RECORD, {
        "DKIM": TagId.DKIM_AUTH,
        "SPF": TagId.SPF_AUTH,
    }),
    TagId.DKIM_AUTH: TagInfo(TagId.AUTH_RESULTS, {
        "DOMAIN": TagId.DKIM_DOMAIN,
        "SELECTOR": TagId.DKIM_SELECTOR,
        "RESULT": TagId.DKIM_RESULT,
        "HUMAN_RESULT": TagId.DKIM_HUMAN_RESULT,
    }, scope=Scope.RECORD, key="dkim_auth", default=None),
    TagId.DKIM_DOMAIN: TagInfo(TagId.DKIM_AUTH, scope=Scope.ITEM, key="domain"),
    TagId.DKIM_SELECTOR: TagInfo(TagId.DKIM_AUTH, scope=Scope.ITEM, key="selector"),
    TagId.DKIM_RESULT: TagInfo(TagId.DKIM_AUTH, scope=Scope.ITEM, key="result"),
    TagId.DKIM_HUMAN_RESULT: TagInfo(TagId.DKIM_AUTH, scope=Scope.ITEM, key="human_result"),
    TagId.SPF_AUTH: TagInfo(TagId.AUTH_RESULTS, {
        "DOMAIN": TagId.SPF_DOMAIN,
        "SCOPE": TagId.SPF_SCOPE,
        "RESULT": TagId.SPF_RESULT,
    }, scope=Scope.RECORD, key="spf_auth", default=None),
    TagId.SPF_DOMAIN: TagInfo(TagId.SPF_AUTH, scope=Scope.ITEM, key="domain"),
    TagId.SPF_SCOPE: TagInfo(TagId.SPF_AUTH, scope=Scope.ITEM, key="scope"),
    TagId.SPF_RESULT: TagInfo(TagId.SPF_AUTH, scope=Scope.ITEM, key="result"),
}

# Tags collected into a scratch dict and appended to a record list on close
COMPOSITE_TAGS = (TagId.REASON, TagId.DKIM_AUTH, TagId.SPF_AUTH)


def _timestamp_to_datetime(value: Optional[str], name: str) -> datetime:
    """Convert a Unix timestamp string to a naive UTC datetime, negative values clamp to the epoch"""
    try:
        ts = int(value) if value else 0
        return datetime.fromtimestamp(max(ts, 0), tz=timezone.utc).replace(tzinfo=None)
    except (ValueError, OverflowError, OSError):
        raise IncompleteReportError(f"Incorrect {name} date in the report: {value}")


class ReportXmlWalker:
    """
    State machine fed with element events of one report document

    All state lives on the instance, so independent documents can be parsed
    concurrently with separate walkers.

    Args:
        strict: Reject unknown elements. When False, unknown elements are
            skipped together with their content.
    """

    def __init__(self, strict: bool = True):
        self.strict = strict
        self.tag = TagId.ROOT
        self.stack: List[TagId] = []
        self.skip_depth = 0
        self.header: Dict[str, Any] = {}
        self.date: Dict[str, str] = {}
        self.policy: Dict[str, Any] = {}
        self.records: List[Dict[str, Any]] = []
        self.scratch: Optional[Dict[str, str]] = None
        self.finished = False

    def start_element(self, name: str):
        if self.skip_depth:
            self.skip_depth += 1
            return

        child = (TAGS[self.tag].children or {}).get(name.upper())
        if child is None:
            if self.strict:
                raise UnknownTagError(name)
            logger.debug(f"Skipping unknown tag {name} in {self.tag.value}")
            self.skip_depth = 1
            return

        self.stack.append(self.tag)
        self.tag = child

        if child is TagId.RECORD:
            self.records.append({})
        elif child is TagId.ERROR:
            self.header.setdefault("error_string", []).append("")
        elif child in COMPOSITE_TAGS:
            self.records[-1].setdefault(TAGS[child].key, [])
            self.scratch = {}

    def characters(self, data: str):
        if self.skip_depth:
            return

        info = TAGS[self.tag]
        if info.children is not None or info.scope is None:
            # Whitespace between elements
            return

        if self.tag is TagId.ERROR:
            self.header["error_string"][-1] += data
            return

        target = self._target(info.scope)
        target[info.key] = target.get(info.key, "") + data

    def end_element(self, name: str):
        if self.skip_depth:
            self.skip_depth -= 1
            return

        info = TAGS[self.tag]
        if self.tag is TagId.ERROR:
            self.header["error_string"][-1] = self.header["error_string"][-1].strip()
        elif self.tag in COMPOSITE_TAGS:
            self.records[-1][info.key].append(self.scratch)
            self.scratch = None
        elif info.children is None:
            target = self._target(info.scope)
            if info.key in target:
                target[info.key] = target[info.key].strip()
        elif self.tag is TagId.FEEDBACK:
            self._finish()

        self.tag = self.stack.pop()

    def _target(self, scope: Scope) -> Dict[str, Any]:
        if scope is Scope.METADATA:
            return self.header
        if scope is Scope.DATE:
            return self.date
        if scope is Scope.POLICY:
            return self.policy
        if scope is Scope.ITEM:
            return self.scratch
        return self.records[-1]

    def _finish(self):
        """Apply defaults for fields that never appeared and convert typed values"""
        for info in TAGS.values():
            if info.default is _NO_DEFAULT:
                continue
            if info.scope is Scope.RECORD:
                for record in self.records:
                    record.setdefault(info.key, info.default)
            else:
                self._target(info.scope).setdefault(info.key, info.default)

        self.header["begin_time"] = _timestamp_to_datetime(self.date.get("begin"), "begin")
        self.header["end_time"] = _timestamp_to_datetime(self.date.get("end"), "end")

        for record in self.records:
            if record.get("count") is not None:
                try:
                    record["count"] = int(record["count"])
                except ValueError:
                    raise IncompleteReportError(f"Incorrect message count: {record['count']}")

        self.finished = True

    def report(self) -> ReportData:
        """Validated report built from the walked document"""
        if not self.finished:
            raise IncompleteReportError("The report has no feedback element")
        if not self.records:
            raise IncompleteReportError("The report has no records")
        try:
            return ReportData(**self.header, policy=self.policy, records=self.records)
        except PydanticValidationError as e:
            errors = e.errors()
            logger.debug(f"Report validation failed: {errors}")
            location = ".".join(str(p) for p in errors[0]["loc"]) if errors else ""
            raise IncompleteReportError(f"Incorrect or incomplete report data: {location}")


class _SaxAdapter(xml.sax.ContentHandler):
    """Forwards SAX events to a ReportXmlWalker"""

    def __init__(self, walker: ReportXmlWalker):
        super().__init__()
        self.walker = walker

    def startElement(self, name, attrs):
        self.walker.start_element(name)

    def endElement(self, name):
        self.walker.end_element(name)

    def characters(self, content):
        self.walker.characters(content)


def parse_report(stream: BinaryIO, chunk_size: int = CHUNK_SIZE, strict: bool = True) -> ReportData:
    """
    Parse a DMARC aggregate report from a binary stream

    The stream is read forward in chunks and never buffered whole.

    Args:
        stream: Readable binary stream with the XML document
        chunk_size: Number of bytes fed to the XML parser at once
        strict: Reject elements that are not part of the report schema

    Returns:
        Validated ReportData

    Raises:
        MalformedXmlError: The XML is not well-formed or is truncated
        UnknownTagError: The document has an element outside the schema
        ExternalEntityError: The document declares or references entities
        IncompleteReportError: Required data is missing or invalid
    """
    walker = ReportXmlWalker(strict=strict)
    parser = make_parser()
    parser.setContentHandler(_SaxAdapter(walker))

    received = 0
    try:
        while True:
            chunk = stream.read(chunk_size)
            if not chunk:
                break
            received += len(chunk)
            parser.feed(chunk)
        if not received:
            raise MalformedXmlError("Empty XML document")
        parser.close()
    except xml.sax.SAXParseException as e:
        raise MalformedXmlError(e.getMessage(), e.getLineNumber(), e.getColumnNumber())
    except xml.sax.SAXException as e:
        raise MalformedXmlError(str(e))
    except DefusedXmlException as e:
        raise ExternalEntityError(f"The XML document has a forbidden entity: {e}")
    except (OSError, EOFError, zlib.error, zipfile.BadZipFile) as e:
        # Compressed streams fail while being read, zip members on a bad CRC
        raise ReportParseError(f"Failed to read the report data: {str(e)}")

    return walker.report()


def parse_xml(xml_data: bytes, strict: bool = True) -> ReportData:
    """
    Parse DMARC aggregate report XML

    Args:
        xml_data: XML content as bytes

    Returns:
        Parsed ReportData object
    """
    return parse_report(io.BytesIO(xml_data), strict=strict)


def parse_report_file(file_content: bytes, filename: str, strict: bool = True) -> ReportData:
    """
    Main entry point for parsing a DMARC report file

    Gzip and zip payloads are decompressed while the XML is parsed.

    Args:
        file_content: File content as bytes
        filename: Original filename

    Returns:
        Parsed ReportData object

    Raises:
        ReportParseError: If decompression or parsing fails
    """
    with ReportFile(filename, file_content).datastream() as stream:
        return parse_report(stream, strict=strict)
