"""
SQL constructs that differ between database dialects

Each dialect module combines one of these with the report and statistics
mappers. The mappers build every query through these hooks, so the same
operation gives the same results on every backend even though the SQL text
differs.
"""
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

# Name of the natural key constraint on the reports table
REPORT_KEY_CONSTRAINT = "org_time_id_u"


class SqlDialect:
    """Dialect hooks; subclasses implement every method"""

    name = None

    db: Session

    def sum_if(self, condition, value):
        """Sum of value over the rows matching condition, 0 when there are none"""
        raise NotImplementedError

    def month_label(self, column):
        """'yyyy-mm' text of a datetime column"""
        raise NotImplementedError

    def insert_report(self, values: dict) -> int:
        """Insert one reports row and return its id"""
        raise NotImplementedError

    def is_duplicate_report(self, exc: IntegrityError) -> bool:
        """Whether the error is a violation of the report natural key"""
        raise NotImplementedError
