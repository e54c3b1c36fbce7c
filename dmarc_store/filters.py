"""
Report list filter, order and limit

Filter values are validated before any SQL is built and always reach the
database as bound parameters. Criteria on the per-report alignment and
disposition sums are kept apart from the row criteria because they can only
be applied after aggregation (HAVING).
"""
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from sqlalchemy import and_, asc, desc

from dmarc_store.exceptions import FilterError
from dmarc_store.models import ALIGNMENT_VALUES, DISPOSITION_VALUES, Report

# Reports whose period only touches a boundary by a few seconds are not counted in
BOUNDARY_EPSILON = timedelta(seconds=10)

FILTER_KEYS = (
    "domain", "month", "before_time", "organization", "dkim", "spf", "disposition", "status"
)
STATUS_VALUES = {"read": True, "unread": False}


def month_range(value: str) -> Tuple[datetime, datetime]:
    """
    First moment of a 'yyyy-mm' month and of the month after it

    Raises:
        FilterError: The value is not a valid month
    """
    parts = value.split("-")
    if len(parts) != 2:
        raise FilterError("Report list filter: Incorrect date format")
    try:
        year, month = int(parts[0]), int(parts[1])
    except ValueError:
        raise FilterError("Report list filter: Incorrect date format")
    if year < 1 or year > 9998 or month < 1 or month > 12:
        raise FilterError("Report list filter: Incorrect month or year value")

    start = datetime(year, month, 1)
    if month == 12:
        return start, datetime(year + 1, 1, 1)
    return start, datetime(year, month + 1, 1)


def overlap_condition(date1: datetime, date2: datetime):
    """Reports whose period overlaps [date1, date2) by more than the boundary epsilon"""
    return and_(
        Report.begin_time < date2 - BOUNDARY_EPSILON,
        Report.end_time >= date1 + BOUNDARY_EPSILON,
    )


def _domain_id(value: Any, domain_resolver: Callable[[str], int]) -> int:
    if isinstance(value, bool):
        raise FilterError("Report list filter: Incorrect domain value")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        return domain_resolver(value.strip().lower())
    domain_id = getattr(value, "id", None)
    if isinstance(domain_id, int):
        return domain_id
    raise FilterError("Report list filter: Incorrect domain value")


def _choice(value: Any, choices: Iterable[str], name: str) -> str:
    if not isinstance(value, str) or value not in choices:
        raise FilterError(f"Report list filter: Incorrect {name} value")
    return value


class FilterSet:
    """
    Validated report filter

    Attributes:
        where: Conditions on report rows, applied before aggregation
        post: Validated dkim, spf and disposition values, applied to the
            per-report sums
    """

    def __init__(self, where: Optional[List] = None, post: Optional[Dict[str, str]] = None):
        self.where = where or []
        self.post = post or {}

    @property
    def needs_aggregation(self) -> bool:
        return bool(self.post)

    def having(self, aggregates: Mapping[str, Any]) -> List:
        """
        Post-aggregation conditions built on the given aggregate expressions

        Args:
            aggregates: Expressions keyed dkim_align_fail, dkim_align_unknown,
                spf_align_fail, spf_align_unknown, rejected and quarantined
        """
        conditions = []
        for name in ("dkim", "spf"):
            value = self.post.get(name)
            if value is None:
                continue
            fail = aggregates[f"{name}_align_fail"]
            unknown = aggregates[f"{name}_align_unknown"]
            if value == "pass":
                conditions.append(and_(fail == 0, unknown == 0))
            elif value == "fail":
                conditions.append(fail > 0)
            else:
                conditions.append(unknown > 0)

        disposition = self.post.get("disposition")
        if disposition == "none":
            conditions.append(and_(aggregates["rejected"] == 0, aggregates["quarantined"] == 0))
        elif disposition == "quarantine":
            conditions.append(aggregates["quarantined"] > 0)
        elif disposition == "reject":
            conditions.append(aggregates["rejected"] > 0)
        return conditions


def build_report_filter(
    filter: Optional[Mapping[str, Any]],
    domain_resolver: Callable[[str], int],
    scope: Optional[Iterable[int]] = None
) -> FilterSet:
    """
    Validate filter values and turn them into SQL conditions

    Unknown keys and empty values are ignored.

    Args:
        filter: Filter values keyed by name
        domain_resolver: Returns the id of a domain by its name, raising
            NotFoundError when there is no such domain
        scope: Ids of the domains the caller may see; None means all domains

    Returns:
        FilterSet with the row conditions and the post-aggregation values

    Raises:
        FilterError: A filter value is invalid
    """
    result = FilterSet()
    if scope is not None:
        result.where.append(Report.domain_id.in_(list(scope)))

    for name in FILTER_KEYS:
        value = (filter or {}).get(name)
        if value is None or value == "":
            continue

        if name == "domain":
            result.where.append(Report.domain_id == _domain_id(value, domain_resolver))
        elif name == "month":
            if not isinstance(value, str):
                raise FilterError("Report list filter: Incorrect date format")
            date1, date2 = month_range(value)
            result.where.append(overlap_condition(date1, date2))
        elif name == "before_time":
            if not isinstance(value, datetime):
                raise FilterError("Report list filter: Incorrect before_time value")
            result.where.append(Report.begin_time < value)
        elif name == "organization":
            if not isinstance(value, str):
                raise FilterError("Report list filter: Incorrect organization value")
            result.where.append(Report.org == value)
        elif name == "dkim":
            result.post["dkim"] = _choice(value, ALIGNMENT_VALUES, "DKIM")
        elif name == "spf":
            result.post["spf"] = _choice(value, ALIGNMENT_VALUES, "SPF")
        elif name == "disposition":
            result.post["disposition"] = _choice(value, DISPOSITION_VALUES, "disposition")
        elif name == "status":
            result.where.append(Report.seen == STATUS_VALUES[_choice(value, STATUS_VALUES, "status")])

    return result


class ReportOrder:
    """Report list order with the report id as a stable tie-break"""

    FIELDS = {"begin_time": Report.begin_time}
    DIRECTIONS = ("ascent", "descent")

    def __init__(self, field: str = "begin_time", direction: str = "descent"):
        if field not in self.FIELDS:
            raise FilterError(f"Incorrect order field: {field}")
        if direction not in self.DIRECTIONS:
            raise FilterError(f"Incorrect order direction: {direction}")
        self.field = field
        self.direction = direction

    def clauses(self) -> List:
        func = desc if self.direction == "descent" else asc
        return [func(self.FIELDS[self.field]), func(Report.id)]

    def __repr__(self):
        return f"<ReportOrder(field={self.field}, direction={self.direction})>"


class ReportLimit:
    """Offset and maximum number of reports; count 0 means no limit"""

    def __init__(self, offset: int = 0, count: int = 0):
        for name, value in (("offset", offset), ("count", count)):
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise FilterError(f"Incorrect limit {name}: {value}")
        self.offset = offset
        self.count = count

    def apply(self, stmt):
        if self.count > 0:
            stmt = stmt.limit(self.count)
        if self.offset > 0:
            stmt = stmt.offset(self.offset)
        return stmt

    def clamp(self, total: int) -> int:
        """Number of the total rows that fall into this limit"""
        total = max(total - self.offset, 0)
        if 0 < self.count < total:
            total = self.count
        return total

    def __repr__(self):
        return f"<ReportLimit(offset={self.offset}, count={self.count})>"
