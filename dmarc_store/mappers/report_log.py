"""
Report log storage

Every attempt to load a report file leaves one entry. The log is filtered by
event time only and ordered by event time, so the same queries work on all
dialects.
"""
import logging
from datetime import datetime
from typing import Any, List, Mapping, Optional

from sqlalchemy import asc, delete, desc, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from dmarc_store.exceptions import FilterError, NotFoundError, storage_error_from
from dmarc_store.filters import ReportLimit
from dmarc_store.models import ReportLogEntry, utc_now
from dmarc_store.schemas import ReportLogItem, to_naive_utc

logger = logging.getLogger(__name__)

DIRECTIONS = ("ascent", "descent")


def log_conditions(filter: Optional[Mapping[str, Any]]) -> List:
    """
    Conditions for the from_time (inclusive) and till_time (exclusive) filter values

    Raises:
        FilterError: A value is not a datetime
    """
    conditions = []
    for name in ("from_time", "till_time"):
        value = (filter or {}).get(name)
        if value is None:
            continue
        if not isinstance(value, datetime):
            raise FilterError(f"Report log filter: Incorrect {name} value")
        value = to_naive_utc(value)
        if name == "from_time":
            conditions.append(ReportLogEntry.event_time >= value)
        else:
            conditions.append(ReportLogEntry.event_time < value)
    return conditions


def log_order(direction: str) -> List:
    if direction not in DIRECTIONS:
        raise FilterError(f"Incorrect order direction: {direction}")
    sort = desc if direction == "descent" else asc
    return [sort(ReportLogEntry.event_time), sort(ReportLogEntry.id)]


class ReportLogMapper:
    """Storage of report log entries"""

    def __init__(self, db: Session):
        self.db = db

    def fetch(self, id: int) -> ReportLogItem:
        try:
            entry = self.db.get(ReportLogEntry, id)
        except SQLAlchemyError as e:
            raise storage_error_from(e, "Failed to get the log item")
        if entry is None:
            raise NotFoundError("The log item is not found")
        return ReportLogItem.model_validate(entry)

    def save(self, item: ReportLogItem) -> ReportLogItem:
        """
        Insert a new entry or update the entry with the item's id

        Returns:
            The stored item with its id and event time
        """
        try:
            if item.id is None:
                entry = ReportLogEntry()
                self.db.add(entry)
            else:
                entry = self.db.get(ReportLogEntry, item.id)
                if entry is None:
                    raise NotFoundError("The log item is not found")
            entry.domain = item.domain
            entry.external_id = item.external_id
            entry.event_time = item.event_time or utc_now()
            entry.filename = item.filename
            entry.source = item.source
            entry.success = item.success
            entry.message = item.message
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise storage_error_from(e, "Failed to save a report log item")
        self.db.refresh(entry)
        return ReportLogItem.model_validate(entry)

    def list(
        self,
        filter: Optional[Mapping[str, Any]] = None,
        direction: str = "ascent",
        limit: Optional[ReportLimit] = None
    ) -> List[ReportLogItem]:
        stmt = select(ReportLogEntry).where(*log_conditions(filter)).order_by(*log_order(direction))
        stmt = (limit or ReportLimit()).apply(stmt)
        try:
            entries = self.db.execute(stmt).scalars().all()
        except SQLAlchemyError as e:
            raise storage_error_from(e, "Failed to get the logs")
        return [ReportLogItem.model_validate(e) for e in entries]

    def count(self, filter: Optional[Mapping[str, Any]] = None, limit: Optional[ReportLimit] = None) -> int:
        """Number of matching entries that fall into the limit"""
        stmt = select(func.count(ReportLogEntry.id)).where(*log_conditions(filter))
        try:
            total = self.db.execute(stmt).scalar()
        except SQLAlchemyError as e:
            raise storage_error_from(e, "Failed to get the log data")
        return (limit or ReportLimit()).clamp(int(total or 0))

    def delete(
        self,
        filter: Optional[Mapping[str, Any]] = None,
        direction: str = "ascent",
        limit: Optional[ReportLimit] = None
    ) -> int:
        """
        Delete matching entries, only the first ones in the given order when limited

        Returns:
            Number of deleted entries
        """
        conditions = log_conditions(filter)
        order = log_order(direction)
        limit = limit or ReportLimit()
        try:
            if limit.count > 0 or limit.offset > 0:
                ids = self.db.execute(
                    limit.apply(select(ReportLogEntry.id).where(*conditions).order_by(*order))
                ).scalars().all()
                if not ids:
                    return 0
                result = self.db.execute(delete(ReportLogEntry).where(ReportLogEntry.id.in_(ids)))
            else:
                result = self.db.execute(delete(ReportLogEntry).where(*conditions))
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise storage_error_from(e, "Failed to remove the log data")
        logger.info(f"Removed {result.rowcount} report log entries")
        return result.rowcount
