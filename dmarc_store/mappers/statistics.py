"""
Aggregate statistics over stored reports

The three queries share one condition builder: conditions on report rows
(domain, period overlap, organization, status) and conditions on record
rows (alignment and disposition of the individual records).
"""
import logging
from datetime import datetime
from typing import Any, Callable, List, Mapping, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from dmarc_store.config import Settings, get_settings
from dmarc_store.exceptions import FilterError, storage_error_from
from dmarc_store.filters import STATUS_VALUES, overlap_condition
from dmarc_store.mappers.base import SqlDialect
from dmarc_store.mappers.domain import DomainMapper
from dmarc_store.models import ALIGNMENT_VALUES, DISPOSITION_VALUES, Report, ReportRecord
from dmarc_store.schemas import EmailSummary, IpStats, OrganizationStats, StatsSummary

logger = logging.getLogger(__name__)

STATS_FILTER_KEYS = ("organization", "dkim", "spf", "disposition", "status")

DateRange = Tuple[datetime, datetime]


def _domain_id(domain: Any, domain_resolver: Callable[[str], int]) -> Optional[int]:
    if domain is None:
        return None
    if isinstance(domain, bool):
        raise FilterError("Filter: Incorrect domain value")
    if isinstance(domain, int):
        return domain
    if isinstance(domain, str):
        return domain_resolver(domain.strip().lower())
    domain_id = getattr(domain, "id", None)
    if not isinstance(domain_id, int):
        raise FilterError("Filter: Incorrect domain value")
    return domain_id


class StatisticsMapper(SqlDialect):
    """Summary, per-IP and per-organization statistics for a domain and period"""

    def __init__(self, db: Session, settings: Optional[Settings] = None):
        self.db = db
        self.settings = settings or get_settings()
        self.domains = DomainMapper(db)

    def conditions(
        self,
        domain: Any,
        range: DateRange,
        filter: Optional[Mapping[str, Any]] = None
    ) -> Tuple[List, List]:
        """
        Report-level and record-level conditions

        Args:
            domain: Domain object with an id, a domain id, a domain name, or
                None for all domains
            range: Half-open period (date1, date2)
            filter: organization, dkim, spf, disposition and status values

        Returns:
            Tuple of (report_conditions, record_conditions)
        """
        report_cond = []
        record_cond = []
        domain_id = _domain_id(domain, self.domains.domain_id)
        if domain_id is not None:
            report_cond.append(Report.domain_id == domain_id)
        date1, date2 = range
        report_cond.append(overlap_condition(date1, date2))

        for name in STATS_FILTER_KEYS:
            value = (filter or {}).get(name)
            if not value:
                continue
            if name == "organization":
                report_cond.append(Report.org == value)
            elif name == "dkim":
                if value not in ALIGNMENT_VALUES:
                    raise FilterError("Filter: Incorrect DKIM value")
                record_cond.append(ReportRecord.dkim_align == value)
            elif name == "spf":
                if value not in ALIGNMENT_VALUES:
                    raise FilterError("Filter: Incorrect SPF value")
                record_cond.append(ReportRecord.spf_align == value)
            elif name == "disposition":
                if value not in DISPOSITION_VALUES:
                    raise FilterError("Filter: Incorrect value of disposition")
                record_cond.append(ReportRecord.disposition == value)
            elif name == "status":
                if value not in STATUS_VALUES:
                    raise FilterError("Filter: Incorrect status value")
                report_cond.append(Report.seen == STATUS_VALUES[value])
        return report_cond, record_cond

    def summary(self, domain: Any, range: DateRange, filter: Optional[Mapping[str, Any]] = None) -> StatsSummary:
        """Email volume by alignment and disposition plus the number of reporting organizations"""
        report_cond, record_cond = self.conditions(domain, range, filter)
        rcount = ReportRecord.rcount
        dkim_pass = ReportRecord.dkim_align == "pass"
        spf_pass = ReportRecord.spf_align == "pass"
        try:
            row = self.db.query(
                func.coalesce(func.sum(rcount), 0).label("total"),
                self.sum_if(dkim_pass & spf_pass, rcount).label("dkim_spf_aligned"),
                self.sum_if(dkim_pass & ~spf_pass, rcount).label("dkim_aligned"),
                self.sum_if(~dkim_pass & spf_pass, rcount).label("spf_aligned"),
                self.sum_if(ReportRecord.disposition == "reject", rcount).label("rejected"),
                self.sum_if(ReportRecord.disposition == "quarantine", rcount).label("quarantined"),
            ).select_from(ReportRecord).join(
                Report, ReportRecord.report_id == Report.id
            ).filter(*report_cond, *record_cond).one()

            orgs = self.db.query(func.count(func.distinct(Report.org)))
            if record_cond:
                orgs = orgs.join(ReportRecord, ReportRecord.report_id == Report.id)
            organizations = orgs.filter(*report_cond, *record_cond).scalar()
        except SQLAlchemyError as e:
            raise storage_error_from(e, "Failed to get summary information")

        return StatsSummary(
            emails=EmailSummary(
                total=int(row.total or 0),
                dkim_spf_aligned=int(row.dkim_spf_aligned or 0),
                dkim_aligned=int(row.dkim_aligned or 0),
                spf_aligned=int(row.spf_aligned or 0),
                rejected=int(row.rejected or 0),
                quarantined=int(row.quarantined or 0),
            ),
            organizations=int(organizations or 0),
        )

    def ips(self, domain: Any, range: DateRange, filter: Optional[Mapping[str, Any]] = None) -> List[IpStats]:
        """Statistics per source IP, largest volume first"""
        report_cond, record_cond = self.conditions(domain, range, filter)
        rcount = ReportRecord.rcount
        emails = func.sum(rcount)
        try:
            rows = self.db.query(
                ReportRecord.ip,
                emails.label("emails"),
                self.sum_if(ReportRecord.dkim_align == "pass", rcount).label("dkim_aligned"),
                self.sum_if(ReportRecord.spf_align == "pass", rcount).label("spf_aligned"),
                self.sum_if(ReportRecord.disposition == "reject", rcount).label("rejected"),
                self.sum_if(ReportRecord.disposition == "quarantine", rcount).label("quarantined"),
            ).join(
                Report, ReportRecord.report_id == Report.id
            ).filter(
                *report_cond, *record_cond
            ).group_by(ReportRecord.ip).order_by(emails.desc(), ReportRecord.ip).all()
        except SQLAlchemyError as e:
            raise storage_error_from(e, "Failed to get IP address information")

        return [
            IpStats(
                ip=row.ip,
                emails=int(row.emails or 0),
                dkim_aligned=int(row.dkim_aligned or 0),
                spf_aligned=int(row.spf_aligned or 0),
                rejected=int(row.rejected or 0),
                quarantined=int(row.quarantined or 0),
            ) for row in rows
        ]

    def organizations(
        self,
        domain: Any,
        range: DateRange,
        filter: Optional[Mapping[str, Any]] = None
    ) -> List[OrganizationStats]:
        """Statistics per reporting organization, largest volume first"""
        report_cond, record_cond = self.conditions(domain, range, filter)
        emails = func.sum(ReportRecord.rcount)
        try:
            rows = self.db.query(
                Report.org,
                func.count(func.distinct(Report.id)).label("reports"),
                emails.label("emails"),
            ).join(
                ReportRecord, ReportRecord.report_id == Report.id
            ).filter(
                *report_cond, *record_cond
            ).group_by(Report.org).order_by(emails.desc(), Report.org).all()
        except SQLAlchemyError as e:
            raise storage_error_from(e, "Failed to get summary information of reporting organizations")

        return [
            OrganizationStats(name=row.org, reports=int(row.reports), emails=int(row.emails or 0))
            for row in rows
        ]
