from datetime import datetime, timezone

from sqlalchemy import (
    Boolean, Column, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
)
from sqlalchemy.orm import relationship

from dmarc_store.database import Base
from dmarc_store.models.types import (
    ALIGNMENT_VALUES, DISPOSITION_VALUES, IPAddressType, JSONText, LookupIndex
)


def utc_now() -> datetime:
    """Current UTC time as a naive datetime, the form stored in DateTime columns"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Domain(Base):
    """Domain that owns aggregate reports"""
    __tablename__ = "domains"

    id = Column(Integer, primary_key=True)
    fqdn = Column(String(255), unique=True, nullable=False)
    active = Column(Boolean, nullable=False, default=False)
    description = Column(Text, nullable=True)

    # Timestamps
    created_time = Column(DateTime, default=utc_now, nullable=False)
    updated_time = Column(DateTime, default=utc_now, onupdate=utc_now, nullable=False)

    # Relationships
    reports = relationship("Report", back_populates="domain")

    def __repr__(self):
        return f"<Domain(id={self.id}, fqdn={self.fqdn}, active={self.active})>"


class Report(Base):
    """Stored DMARC aggregate report"""
    __tablename__ = "reports"
    __table_args__ = (
        UniqueConstraint("domain_id", "begin_time", "org", "external_id", name="org_time_id_u"),
        Index("ix_reports_org_begin_time", "org", "begin_time"),
    )

    id = Column(Integer, primary_key=True)
    domain_id = Column(Integer, ForeignKey("domains.id"), nullable=False)

    # Report period
    begin_time = Column(DateTime, nullable=False, index=True)
    end_time = Column(DateTime, nullable=False, index=True)
    loaded_time = Column(DateTime, default=utc_now, nullable=False)

    # Report metadata
    org = Column(String(255), nullable=False)
    external_id = Column(String(255), nullable=False)
    email = Column(String(255), nullable=True)
    extra_contact_info = Column(String(255), nullable=True)
    error_string = Column(JSONText, nullable=True)

    # Policy published
    policy_adkim = Column(String(20), nullable=True)
    policy_aspf = Column(String(20), nullable=True)
    policy_p = Column(String(20), nullable=True)
    policy_sp = Column(String(20), nullable=True)
    policy_np = Column(String(20), nullable=True)
    policy_pct = Column(String(20), nullable=True)
    policy_fo = Column(String(20), nullable=True)

    seen = Column(Boolean, nullable=False, default=False)

    # Relationships
    domain = relationship("Domain", back_populates="reports")
    records = relationship("ReportRecord", back_populates="report")

    def __repr__(self):
        return f"<Report(id={self.id}, org={self.org}, external_id={self.external_id})>"


class ReportRecord(Base):
    """One row of an aggregate report: results for a single source IP"""
    __tablename__ = "rptrecords"

    id = Column(Integer, primary_key=True)
    report_id = Column(Integer, ForeignKey("reports.id"), nullable=False, index=True)

    ip = Column(IPAddressType, nullable=False, index=True)
    rcount = Column(Integer, nullable=False)
    disposition = Column(LookupIndex(DISPOSITION_VALUES), nullable=False)
    reason = Column(JSONText, nullable=True)

    # Authentication results
    dkim_auth = Column(JSONText, nullable=True)
    spf_auth = Column(JSONText, nullable=True)
    dkim_align = Column(LookupIndex(ALIGNMENT_VALUES), nullable=False)
    spf_align = Column(LookupIndex(ALIGNMENT_VALUES), nullable=False)

    # Identifiers
    envelope_to = Column(String(255), nullable=True)
    envelope_from = Column(String(255), nullable=True)
    header_from = Column(String(255), nullable=True)

    # Relationships
    report = relationship("Report", back_populates="records")

    def __repr__(self):
        return f"<ReportRecord(id={self.id}, ip={self.ip}, rcount={self.rcount})>"
