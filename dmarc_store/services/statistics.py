"""
Statistics Service

Binds a domain and a reporting period to the statistics mapper. The period
is half-open: date1 is included, date2 is not.
"""
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from dmarc_store.config import Settings
from dmarc_store.mappers import get_statistics_mapper
from dmarc_store.models import utc_now
from dmarc_store.schemas import IpStats, OrganizationStats, StatsSummary


def _midnight(value: datetime) -> datetime:
    return value.replace(hour=0, minute=0, second=0, microsecond=0)


def _shift_months(value: datetime, months: int) -> datetime:
    """First day of the month that is `months` away from the month of value"""
    index = value.year * 12 + value.month - 1 + months
    return value.replace(year=index // 12, month=index % 12 + 1, day=1)


class Statistics:
    """Aggregate statistics of one domain (or all domains) over a period"""

    def __init__(
        self,
        db: Session,
        domain: Any,
        date1: datetime,
        date2: datetime,
        settings: Optional[Settings] = None
    ):
        self.domain = domain
        self.date1 = date1
        self.date2 = date2
        self.filter: Dict[str, Any] = {}
        self.mapper = get_statistics_mapper(db, settings)

    @classmethod
    def from_to(cls, db: Session, domain: Any, date1: datetime, date2: datetime, **kwargs) -> "Statistics":
        return cls(db, domain, date1, date2, **kwargs)

    @classmethod
    def last_week(cls, db: Session, domain: Any = None, offset: int = 0, now: Optional[datetime] = None,
                  **kwargs) -> "Statistics":
        """Monday to Monday of the previous week, moved back by offset weeks"""
        today = _midnight(now or utc_now())
        date1 = today - timedelta(days=today.weekday() + 7 * (1 + max(offset, 0)))
        return cls(db, domain, date1, date1 + timedelta(weeks=1), **kwargs)

    @classmethod
    def last_month(cls, db: Session, domain: Any = None, offset: int = 0, now: Optional[datetime] = None,
                   **kwargs) -> "Statistics":
        """The previous calendar month, moved back by offset months"""
        date1 = _shift_months(_midnight(now or utc_now()), -1 - max(offset, 0))
        return cls(db, domain, date1, _shift_months(date1, 1), **kwargs)

    @classmethod
    def last_n_days(cls, db: Session, domain: Any, ndays: int, offset: int = 0, now: Optional[datetime] = None,
                    **kwargs) -> "Statistics":
        """ndays full days ending at the last midnight, moved back by offset days"""
        date2 = _midnight(now or utc_now()) - timedelta(days=max(offset, 0))
        return cls(db, domain, date2 - timedelta(days=ndays), date2, **kwargs)

    def range(self) -> Tuple[datetime, datetime]:
        """First and last second of the period"""
        return self.date1, self.date2 - timedelta(seconds=1)

    def set_filter(self, filter: Dict[str, Any]):
        self.filter = dict(filter or {})

    def summary(self) -> StatsSummary:
        return self.mapper.summary(self.domain, (self.date1, self.date2), self.filter)

    def ips(self) -> List[IpStats]:
        return self.mapper.ips(self.domain, (self.date1, self.date2), self.filter)

    def organizations(self) -> List[OrganizationStats]:
        return self.mapper.organizations(self.domain, (self.date1, self.date2), self.filter)
