"""
Report storage

ReportMapper implements the report operations once on top of the dialect
hooks of SqlDialect; the dialect modules only supply those hooks.
"""
import logging
import re
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional

from sqlalchemy import and_, delete, func, insert, select, true, union, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from dmarc_store.config import Settings, get_settings
from dmarc_store.exceptions import (
    DateRangeError, DmarcStoreError, DuplicateReportError, InactiveDomainError, NotFoundError,
    UnknownDomainError, ValidationError, storage_error_from
)
from dmarc_store.filters import FilterSet, ReportLimit, ReportOrder, build_report_filter
from dmarc_store.mappers.base import SqlDialect
from dmarc_store.mappers.domain import DomainMapper
from dmarc_store.models import Domain, Report, ReportRecord, utc_now
from dmarc_store.schemas import (
    AlignmentCounts, ReportData, ReportIdentity, ReportPolicy, ReportRecordData, ReportSummary
)

logger = logging.getLogger(__name__)

POLICY_FIELDS = ("adkim", "aspf", "p", "sp", "np", "pct", "fo")
RECORD_SORT_COLUMNS = {"message-count": ReportRecord.rcount, "ip": ReportRecord.ip}
EPOCH = datetime(1970, 1, 1)


class ReportMapper(SqlDialect):
    """
    Report operations shared by all dialects

    Args:
        db: Database session; the mapper commits or rolls back the
            transactions it opens
        settings: Application settings, defaults to get_settings()
    """

    def __init__(self, db: Session, settings: Optional[Settings] = None):
        self.db = db
        self.settings = settings or get_settings()
        self.domains = DomainMapper(db)

    # Fetch

    def _report_row(self, identity: ReportIdentity) -> Optional[Report]:
        return self.db.query(Report).join(Domain, Domain.id == Report.domain_id).filter(
            Domain.fqdn == identity.domain,
            Report.begin_time == identity.begin_time,
            Report.org == identity.org,
            Report.external_id == identity.external_id,
        ).one_or_none()

    def _records_order(self) -> List:
        field, direction = self.settings.records_sort_by.split(",")
        column = RECORD_SORT_COLUMNS[field]
        column = column.desc() if direction == "descent" else column.asc()
        return [column, ReportRecord.id.asc()]

    def fetch(self, identity: ReportIdentity) -> ReportData:
        """
        Load a report with its records by the natural key

        Raises:
            NotFoundError: There is no such report
            StorageError: The database query failed
        """
        try:
            report = self._report_row(identity)
            if report is None:
                raise NotFoundError("The report is not found")
            records = self.db.query(ReportRecord).filter(
                ReportRecord.report_id == report.id
            ).order_by(*self._records_order()).all()
        except SQLAlchemyError as e:
            raise storage_error_from(e, "Failed to get the report data")

        return ReportData(
            domain=identity.domain,
            org_name=report.org,
            report_id=report.external_id,
            email=report.email,
            extra_contact_info=report.extra_contact_info,
            error_string=report.error_string,
            begin_time=report.begin_time,
            end_time=report.end_time,
            loaded_time=report.loaded_time,
            seen=report.seen,
            policy=ReportPolicy(**{f: getattr(report, f"policy_{f}") for f in POLICY_FIELDS}),
            records=[
                ReportRecordData(
                    ip=r.ip,
                    count=r.rcount,
                    disposition=r.disposition,
                    reason=r.reason,
                    dkim_auth=r.dkim_auth,
                    spf_auth=r.spf_auth,
                    dkim_align=r.dkim_align,
                    spf_align=r.spf_align,
                    envelope_to=r.envelope_to,
                    envelope_from=r.envelope_from,
                    header_from=r.header_from,
                ) for r in records
            ],
        )

    # Save

    @staticmethod
    def _check_dates(report: ReportData):
        begin, end = report.begin_time, report.end_time
        for value in (begin, end):
            if value == EPOCH or not 1000 <= value.year <= 9999:
                raise DateRangeError("Failed to add an incoming report: wrong date range")
        if begin > end:
            raise DateRangeError("Failed to add an incoming report: wrong date range")

    def _domain_allowed(self, fqdn: str) -> bool:
        pattern = self.settings.allowed_domains
        if not pattern:
            return False
        try:
            return re.search(pattern, fqdn, re.IGNORECASE) is not None
        except re.error:
            logger.warning(
                "The allowed_domains parameter in the settings has an incorrect regular expression value."
            )
            return False

    def _resolve_domain(self, fqdn: str) -> int:
        """Id of the report domain, adding the domain when the policy allows it"""
        domain = self.domains.find(fqdn)
        if domain is not None:
            if not domain.active:
                raise InactiveDomainError(fqdn)
            return domain.id

        if self.domains.count(1) != 0 and not self._domain_allowed(fqdn):
            raise UnknownDomainError(fqdn)

        try:
            domain = self.domains.add(fqdn)
        except IntegrityError:
            # Another session added the domain after the lookup; nothing but
            # reads has happened in this transaction yet
            self.db.rollback()
            domain = self.domains.find(fqdn)
            if domain is None:
                raise
            logger.info(f"Domain {fqdn} was added concurrently, using the stored one")
            if not domain.active:
                raise InactiveDomainError(fqdn)
            return domain.id

        logger.info(f"Domain {fqdn} was added automatically")
        return domain.id

    @staticmethod
    def _record_values(report_id: int, record: ReportRecordData) -> Dict[str, Any]:
        def dump(items):
            return None if items is None else [item.model_dump() for item in items]

        return {
            "report_id": report_id,
            "ip": record.ip,
            "rcount": record.count,
            "disposition": record.disposition,
            "reason": dump(record.reason),
            "dkim_auth": dump(record.dkim_auth),
            "spf_auth": dump(record.spf_auth),
            "dkim_align": record.dkim_align,
            "spf_align": record.spf_align,
            "envelope_to": record.envelope_to,
            "envelope_from": record.envelope_from,
            "header_from": record.header_from,
        }

    def save(self, report: ReportData) -> ReportData:
        """
        Store a new report with all its records in one transaction

        Returns:
            The stored report with the normalized domain name and load time

        Raises:
            DateRangeError: The report period is implausible
            InactiveDomainError: The report domain is not active
            UnknownDomainError: The domain is unknown and may not be added
            DuplicateReportError: The report has already been loaded
            StorageError: Any other database failure
        """
        fqdn = report.domain.strip().lower()
        self._check_dates(report)
        if not report.records:
            raise ValidationError("Failed to add an incoming report: the report has no records")

        loaded_time = utc_now()
        try:
            domain_id = self._resolve_domain(fqdn)
            values = {
                "domain_id": domain_id,
                "begin_time": report.begin_time,
                "end_time": report.end_time,
                "loaded_time": loaded_time,
                "org": report.org_name,
                "external_id": report.report_id,
                "email": report.email,
                "extra_contact_info": report.extra_contact_info,
                "error_string": report.error_string,
                "seen": False,
            }
            for name in POLICY_FIELDS:
                values[f"policy_{name}"] = getattr(report.policy, name)
            report_id = self.insert_report(values)
            self.db.execute(
                insert(ReportRecord.__table__),
                [self._record_values(report_id, r) for r in report.records]
            )
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            if self.is_duplicate_report(e):
                raise DuplicateReportError() from e
            logger.error(f"Failed to insert report {report.report_id}: {str(e)}", exc_info=True)
            raise storage_error_from(e, "Failed to insert the report")
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to insert report {report.report_id}: {str(e)}", exc_info=True)
            raise storage_error_from(e, "Failed to insert the report")
        except DmarcStoreError:
            self.db.rollback()
            raise

        logger.info(
            f"Report {report.report_id} from {report.org_name} for {fqdn} saved "
            f"({len(report.records)} records)"
        )
        return report.model_copy(update={"domain": fqdn, "loaded_time": loaded_time, "seen": False})

    # Properties

    def set_property(self, identity: ReportIdentity, name: str, value: Any):
        """
        Change a property of a stored report; only 'seen' is supported

        Raises:
            ValidationError: Unsupported property or value type
            NotFoundError: There is no such report
        """
        if name != "seen" or not isinstance(value, bool):
            raise ValidationError("Incorrect parameters")

        try:
            report = self._report_row(identity)
            if report is None:
                raise NotFoundError("The report is not found")
            self.db.execute(update(Report.__table__).where(Report.id == report.id).values(seen=value))
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise storage_error_from(e, "Failed to update the report")

    # Report list

    def _filter(self, filter: Optional[Mapping[str, Any]], scope: Optional[Iterable[int]] = None) -> FilterSet:
        return build_report_filter(filter, self.domains.domain_id, scope)

    def _aggregates(self) -> Dict[str, Any]:
        rcount = ReportRecord.rcount
        return {
            "messages": func.coalesce(func.sum(rcount), 0),
            "dkim_align_fail": self.sum_if(ReportRecord.dkim_align == "fail", rcount),
            "dkim_align_unknown": self.sum_if(ReportRecord.dkim_align == "unknown", rcount),
            "spf_align_fail": self.sum_if(ReportRecord.spf_align == "fail", rcount),
            "spf_align_unknown": self.sum_if(ReportRecord.spf_align == "unknown", rcount),
            "rejected": self.sum_if(ReportRecord.disposition == "reject", rcount),
            "quarantined": self.sum_if(ReportRecord.disposition == "quarantine", rcount),
        }

    def list_query(self, filter_set: FilterSet, order: ReportOrder, limit: ReportLimit):
        """Query of report summaries; exposed for inspection of the generated SQL"""
        aggregates = self._aggregates()
        columns = (
            Report.id, Domain.fqdn, Report.org, Report.external_id,
            Report.begin_time, Report.end_time, Report.seen,
        )
        query = self.db.query(
            *columns, *[expr.label(name) for name, expr in aggregates.items()]
        ).join(
            Domain, Domain.id == Report.domain_id
        ).outerjoin(
            ReportRecord, ReportRecord.report_id == Report.id
        ).filter(
            *filter_set.where
        ).group_by(*columns)

        having = filter_set.having(aggregates)
        if having:
            query = query.having(*having)
        return limit.apply(query.order_by(*order.clauses()))

    def list(
        self,
        filter: Optional[Mapping[str, Any]] = None,
        order: Optional[ReportOrder] = None,
        limit: Optional[ReportLimit] = None,
        scope: Optional[Iterable[int]] = None
    ) -> List[ReportSummary]:
        """
        Reports matching the filter with per-report message counts

        Reports without records are included with zero counts.
        """
        query = self.list_query(self._filter(filter, scope), order or ReportOrder(), limit or ReportLimit())
        try:
            rows = query.all()
        except SQLAlchemyError as e:
            raise storage_error_from(e, "Failed to get the report list")

        result = []
        for row in rows:
            messages = int(row.messages or 0)
            dkim_fail, dkim_unknown = int(row.dkim_align_fail or 0), int(row.dkim_align_unknown or 0)
            spf_fail, spf_unknown = int(row.spf_align_fail or 0), int(row.spf_align_unknown or 0)
            result.append(ReportSummary(
                id=row.id,
                domain=row.fqdn,
                org=row.org,
                external_id=row.external_id,
                begin_time=row.begin_time,
                end_time=row.end_time,
                seen=bool(row.seen),
                messages=messages,
                dkim=AlignmentCounts(
                    fail=dkim_fail, unknown=dkim_unknown, pass_=messages - dkim_fail - dkim_unknown
                ),
                spf=AlignmentCounts(
                    fail=spf_fail, unknown=spf_unknown, pass_=messages - spf_fail - spf_unknown
                ),
                rejected=int(row.rejected or 0),
                quarantined=int(row.quarantined or 0),
            ))
        return result

    def count_query(self, filter_set: FilterSet):
        if filter_set.needs_aggregation:
            inner = self.db.query(Report.id).outerjoin(
                ReportRecord, ReportRecord.report_id == Report.id
            ).filter(*filter_set.where).group_by(Report.id).having(
                *filter_set.having(self._aggregates())
            ).subquery()
            return self.db.query(func.count()).select_from(inner)
        return self.db.query(func.count(Report.id)).filter(*filter_set.where)

    def count(
        self,
        filter: Optional[Mapping[str, Any]] = None,
        limit: Optional[ReportLimit] = None,
        scope: Optional[Iterable[int]] = None
    ) -> int:
        """Number of reports list() returns for the same filter and limit"""
        query = self.count_query(self._filter(filter, scope))
        try:
            total = int(query.scalar() or 0)
        except SQLAlchemyError as e:
            raise storage_error_from(e, "Failed to get the number of reports")
        return (limit or ReportLimit()).clamp(total)

    # Deletion

    def delete(
        self,
        filter: Optional[Mapping[str, Any]] = None,
        order: Optional[ReportOrder] = None,
        limit: Optional[ReportLimit] = None,
        scope: Optional[Iterable[int]] = None
    ) -> int:
        """
        Delete matching reports and their records in one transaction

        Only the row criteria of the filter are used; dkim, spf and
        disposition do not affect deletion.

        Returns:
            Number of deleted reports
        """
        filter_set = self._filter(filter, scope)
        order = order or ReportOrder()
        limit = limit or ReportLimit()

        try:
            if limit.count or limit.offset:
                # LIMIT is not allowed in an IN subquery on MariaDB, so pick the ids first
                ids_query = limit.apply(
                    self.db.query(Report.id).filter(*filter_set.where).order_by(*order.clauses())
                )
                report_ids = [row.id for row in ids_query]
                record_cond = ReportRecord.report_id.in_(report_ids)
                report_cond = Report.id.in_(report_ids)
            else:
                record_cond = ReportRecord.report_id.in_(select(Report.id).where(*filter_set.where))
                report_cond = and_(true(), *filter_set.where)

            self.db.execute(delete(ReportRecord.__table__).where(record_cond))
            result = self.db.execute(delete(Report.__table__).where(report_cond))
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to delete reports: {str(e)}", exc_info=True)
            raise storage_error_from(e, "Failed to delete reports")

        logger.info(f"Deleted {result.rowcount} reports")
        return result.rowcount

    # Distinct values

    def months(self, scope: Optional[Iterable[int]] = None) -> List[str]:
        """Months ('yyyy-mm') covered by at least one report, newest first"""
        conditions = [] if scope is None else [Report.domain_id.in_(list(scope))]
        months = union(
            select(self.month_label(Report.begin_time).label("month")).where(*conditions),
            select(self.month_label(Report.end_time).label("month")).where(*conditions),
        ).subquery()
        try:
            rows = self.db.execute(select(months.c.month).order_by(months.c.month.desc()))
            return [row.month for row in rows]
        except SQLAlchemyError as e:
            raise storage_error_from(e, "Failed to get a list of months")

    def organizations(self, scope: Optional[Iterable[int]] = None) -> List[str]:
        """Reporting organizations, sorted by name"""
        query = self.db.query(Report.org).distinct().order_by(Report.org)
        if scope is not None:
            query = query.filter(Report.domain_id.in_(list(scope)))
        try:
            return [row.org for row in query]
        except SQLAlchemyError as e:
            raise storage_error_from(e, "Failed to get a list of organizations")
