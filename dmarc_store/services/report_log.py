"""
Report Log Service

Paged access to the report loading log and its cleanup.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from dmarc_store.config import Settings, get_settings
from dmarc_store.filters import ReportLimit
from dmarc_store.mappers.report_log import DIRECTIONS, ReportLogMapper
from dmarc_store.models import utc_now
from dmarc_store.schemas import ReportLogPage

logger = logging.getLogger(__name__)


class ReportLog:
    """
    Report log entries of a period

    Args:
        db: Database session
        from_time: Start of the period (inclusive), None for no bound
        till_time: End of the period (exclusive), None for no bound
        settings: Application settings, defaults to get_settings()
    """

    def __init__(
        self,
        db: Session,
        from_time: Optional[datetime] = None,
        till_time: Optional[datetime] = None,
        settings: Optional[Settings] = None
    ):
        self.settings = settings or get_settings()
        self.mapper = ReportLogMapper(db)
        self.filter = {"from_time": from_time, "till_time": till_time}
        self.direction = "ascent"
        self.max_count: Optional[int] = None

    def set_order(self, direction: str):
        if direction not in DIRECTIONS:
            raise ValueError(f"Incorrect order direction: {direction}")
        self.direction = direction

    def set_max_count(self, num: int):
        """Page size and delete limit; 0 or less means the default page size and no delete limit"""
        self.max_count = num if num > 0 else None

    def count(self) -> int:
        return self.mapper.count(self.filter, ReportLimit(0, self.max_count or 0))

    def get_list(self, position: int = 0) -> ReportLogPage:
        size = self.max_count or self.settings.report_list_page_size
        items = self.mapper.list(self.filter, self.direction, ReportLimit(position, size + 1))
        return ReportLogPage(items=items[:size], more=len(items) > size)

    def delete(self) -> int:
        return self.mapper.delete(self.filter, self.direction, ReportLimit(0, self.max_count or 0))


def clean_report_log(
    db: Session,
    days_old: int,
    delete_maximum: int = 0,
    leave_minimum: int = 0,
    now: Optional[datetime] = None,
    settings: Optional[Settings] = None
) -> int:
    """
    Delete log entries older than days_old days, oldest first

    Args:
        db: Database session
        days_old: Age in days of the entries to delete
        delete_maximum: Maximum number of entries to delete, 0 for no limit
        leave_minimum: Number of entries that are never deleted
        now: Current time, defaults to the current UTC time
        settings: Application settings, defaults to get_settings()

    Returns:
        Number of deleted entries
    """
    for name, value in (("days_old", days_old), ("delete_maximum", delete_maximum),
                        ("leave_minimum", leave_minimum)):
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise ValueError(f"Incorrect {name} value: {value}")

    cnt = ReportLog(db, settings=settings).count() - leave_minimum
    if cnt <= 0:
        return 0
    if delete_maximum > 0:
        cnt = min(cnt, delete_maximum)

    till_time = (now or utc_now()) - timedelta(days=days_old)
    log = ReportLog(db, till_time=till_time, settings=settings)
    log.set_order("ascent")
    if leave_minimum > 0 or delete_maximum > 0:
        log.set_max_count(cnt)
    deleted = log.delete()
    logger.info(f"Report log cleanup removed {deleted} entries older than {days_old} days")
    return deleted
