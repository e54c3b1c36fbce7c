import ipaddress
from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from dmarc_store.models.types import ALIGNMENT_VALUES, DISPOSITION_VALUES


def to_naive_utc(value: datetime) -> datetime:
    """Stored datetimes are naive UTC"""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


# Record sub-objects

class Reason(BaseModel):
    """Policy override reason"""
    type: Optional[str] = None
    comment: Optional[str] = None


class DkimAuth(BaseModel):
    """DKIM authentication result"""
    domain: Optional[str] = None
    selector: Optional[str] = None
    result: Optional[str] = None
    human_result: Optional[str] = None


class SpfAuth(BaseModel):
    """SPF authentication result"""
    domain: Optional[str] = None
    scope: Optional[str] = None
    result: Optional[str] = None


class ReportRecordData(BaseModel):
    """Results for one source IP of a report"""
    ip: str
    count: int = Field(ge=0)
    disposition: str
    reason: Optional[List[Reason]] = None
    dkim_auth: Optional[List[DkimAuth]] = None
    spf_auth: Optional[List[SpfAuth]] = None
    dkim_align: str
    spf_align: str
    envelope_to: Optional[str] = None
    envelope_from: Optional[str] = None
    header_from: Optional[str] = None

    @field_validator('ip')
    @classmethod
    def check_ip(cls, v):
        try:
            return str(ipaddress.ip_address(v.strip()))
        except ValueError:
            raise ValueError(f"Incorrect IP address: {v}")

    @field_validator('disposition')
    @classmethod
    def check_disposition(cls, v):
        if v not in DISPOSITION_VALUES:
            raise ValueError(f"Incorrect disposition value: {v}")
        return v

    @field_validator('dkim_align', 'spf_align')
    @classmethod
    def check_alignment(cls, v):
        if v not in ALIGNMENT_VALUES:
            raise ValueError(f"Incorrect alignment value: {v}")
        return v


class ReportPolicy(BaseModel):
    """Published DMARC policy at the time of the report"""
    adkim: Optional[str] = None  # DKIM alignment mode
    aspf: Optional[str] = None   # SPF alignment mode
    p: Optional[str] = None      # Policy for domain
    sp: Optional[str] = None     # Policy for subdomains
    np: Optional[str] = None     # Policy for non-existent subdomains
    pct: Optional[str] = None    # Percentage of messages to filter
    fo: Optional[str] = None     # Failure reporting options


class ReportIdentity(BaseModel):
    """Natural key of a stored report"""
    domain: str
    begin_time: datetime
    org: str
    external_id: str

    @field_validator('domain')
    @classmethod
    def lower_domain(cls, v):
        return v.strip().lower()

    @field_validator('begin_time')
    @classmethod
    def naive_begin_time(cls, v):
        return to_naive_utc(v)


class ReportData(BaseModel):
    """Complete DMARC aggregate report"""
    version: Optional[str] = None
    domain: str = Field(min_length=1)
    org_name: str = Field(min_length=1)
    report_id: str = Field(min_length=1)
    email: Optional[str] = None
    extra_contact_info: Optional[str] = None
    error_string: Optional[List[str]] = None
    begin_time: datetime
    end_time: datetime
    policy: ReportPolicy = Field(default_factory=ReportPolicy)
    loaded_time: Optional[datetime] = None
    seen: bool = False
    records: List[ReportRecordData] = Field(default_factory=list)

    @field_validator('begin_time', 'end_time', 'loaded_time')
    @classmethod
    def naive_times(cls, v):
        return None if v is None else to_naive_utc(v)

    def identity(self) -> ReportIdentity:
        return ReportIdentity(
            domain=self.domain,
            begin_time=self.begin_time,
            org=self.org_name,
            external_id=self.report_id,
        )


# Report list

class AlignmentCounts(BaseModel):
    """Messages per alignment outcome"""
    fail: int = 0
    unknown: int = 0
    pass_: int = Field(default=0, alias="pass")

    class Config:
        populate_by_name = True


class ReportSummary(BaseModel):
    """One row of the report list with pre-aggregated counts"""
    id: int
    domain: str
    org: str
    external_id: str
    begin_time: datetime
    end_time: datetime
    seen: bool
    messages: int = 0
    dkim: AlignmentCounts = Field(default_factory=AlignmentCounts)
    spf: AlignmentCounts = Field(default_factory=AlignmentCounts)
    rejected: int = 0
    quarantined: int = 0

    def identity(self) -> ReportIdentity:
        return ReportIdentity(
            domain=self.domain,
            begin_time=self.begin_time,
            org=self.org,
            external_id=self.external_id,
        )


class ReportListPage(BaseModel):
    """A page of the report list"""
    reports: List[ReportSummary]
    more: bool


# Domains

class DomainData(BaseModel):
    id: Optional[int] = None
    fqdn: str
    active: bool = True
    description: Optional[str] = None
    created_time: Optional[datetime] = None
    updated_time: Optional[datetime] = None

    class Config:
        from_attributes = True

    @field_validator('fqdn')
    @classmethod
    def lower_fqdn(cls, v):
        v = v.strip().lower()
        if not v:
            raise ValueError("Domain name must not be empty")
        return v


# Statistics

class EmailSummary(BaseModel):
    """Email volume split into mutually exclusive alignment buckets"""
    total: int = 0
    dkim_spf_aligned: int = 0
    dkim_aligned: int = 0  # DKIM only
    spf_aligned: int = 0   # SPF only
    rejected: int = 0
    quarantined: int = 0


class StatsSummary(BaseModel):
    emails: EmailSummary
    organizations: int = 0


class IpStats(BaseModel):
    ip: str
    emails: int
    dkim_aligned: int
    spf_aligned: int
    rejected: int
    quarantined: int


class OrganizationStats(BaseModel):
    name: str
    reports: int
    emails: int


# Report log

class ReportLogItem(BaseModel):
    """One entry of the report loading log"""
    id: Optional[int] = None
    domain: Optional[str] = None
    external_id: Optional[str] = None
    event_time: Optional[datetime] = None
    filename: Optional[str] = None
    source: str
    success: bool = False
    message: Optional[str] = None

    class Config:
        from_attributes = True

    @field_validator('event_time')
    @classmethod
    def naive_event_time(cls, v):
        return None if v is None else to_naive_utc(v)

    @classmethod
    def succeeded(cls, source: str, report: ReportData, filename: Optional[str] = None,
                  message: Optional[str] = None) -> "ReportLogItem":
        return cls(source=source, success=True, domain=report.domain, external_id=report.report_id,
                   filename=filename, message=message)

    @classmethod
    def failed(cls, source: str, report: Optional[ReportData], filename: Optional[str],
               message: str) -> "ReportLogItem":
        """Entry for a file that was not loaded; the report is None when parsing failed"""
        return cls(
            source=source,
            success=False,
            domain=report.domain if report is not None else None,
            external_id=report.report_id if report is not None else None,
            filename=filename,
            message=message,
        )


class ReportLogPage(BaseModel):
    """A page of the report log"""
    items: List[ReportLogItem]
    more: bool
