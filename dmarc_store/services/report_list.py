"""
Report List Service

Paged access to the stored reports. Pages are fetched one row longer than
requested so the caller learns whether more reports follow without a
separate count query.
"""
import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional

from sqlalchemy.orm import Session

from dmarc_store.config import Settings, get_settings
from dmarc_store.filters import STATUS_VALUES, ReportLimit, ReportOrder, build_report_filter
from dmarc_store.mappers import get_report_mapper
from dmarc_store.models import ALIGNMENT_VALUES, DISPOSITION_VALUES
from dmarc_store.schemas import ReportListPage

logger = logging.getLogger(__name__)


class ReportList:
    """
    Report list with a filter, an order and a page size

    Args:
        db: Database session
        settings: Application settings, defaults to get_settings()
        scope: Ids of the domains whose reports are visible; None means all
    """

    def __init__(self, db: Session, settings: Optional[Settings] = None, scope: Optional[Iterable[int]] = None):
        self.settings = settings or get_settings()
        self.mapper = get_report_mapper(db, self.settings)
        self.scope = None if scope is None else list(scope)
        self.filter: Dict[str, Any] = {}
        self.order = ReportOrder()
        self.max_count: Optional[int] = None

    def set_filter(self, filter: Optional[Mapping[str, Any]]):
        """Replace the filter; invalid values are rejected right away"""
        filter = dict(filter or {})
        build_report_filter(filter, self.mapper.domains.domain_id, self.scope)
        self.filter = filter

    def set_order(self, field: str = "begin_time", direction: str = "descent"):
        self.order = ReportOrder(field, direction)

    def set_max_count(self, num: int):
        """Page size; 0 or less restores the configured default"""
        self.max_count = num if num > 0 else None

    def page_size(self) -> int:
        return self.max_count or self.settings.report_list_page_size

    def get_list(self, position: int = 0) -> ReportListPage:
        """Page of reports starting at position"""
        size = self.page_size()
        reports = self.mapper.list(self.filter, self.order, ReportLimit(position, size + 1), self.scope)
        return ReportListPage(reports=reports[:size], more=len(reports) > size)

    def count(self) -> int:
        return self.mapper.count(self.filter, ReportLimit(0, self.max_count or 0), self.scope)

    def delete(self) -> int:
        """Delete the reports matching the filter, at most max_count of them when it is set"""
        deleted = self.mapper.delete(self.filter, self.order, ReportLimit(0, self.max_count or 0), self.scope)
        logger.info(f"Report list delete removed {deleted} reports (filter: {self.filter})")
        return deleted

    def filter_values(self) -> Dict[str, List[str]]:
        """Values available for each filter key"""
        domains = self.mapper.domains.list()
        if self.scope is not None:
            domains = [d for d in domains if d.id in self.scope]
        return {
            "domain": [d.fqdn for d in domains],
            "month": self.mapper.months(self.scope),
            "organization": self.mapper.organizations(self.scope),
            "dkim": list(ALIGNMENT_VALUES),
            "spf": list(ALIGNMENT_VALUES),
            "disposition": list(DISPOSITION_VALUES),
            "status": list(STATUS_VALUES),
        }
