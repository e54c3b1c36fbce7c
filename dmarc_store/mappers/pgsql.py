"""PostgreSQL"""
from sqlalchemy import func, insert
from sqlalchemy.exc import IntegrityError

from dmarc_store.mappers.base import REPORT_KEY_CONSTRAINT, SqlDialect
from dmarc_store.mappers.report import ReportMapper
from dmarc_store.mappers.statistics import StatisticsMapper
from dmarc_store.models import Report

UNIQUE_VIOLATION = "23505"


class PgsqlDialect(SqlDialect):
    name = "pgsql"

    def sum_if(self, condition, value):
        return func.coalesce(func.sum(value).filter(condition), 0)

    def month_label(self, column):
        return func.to_char(column, "YYYY-MM")

    def insert_report(self, values: dict) -> int:
        stmt = insert(Report.__table__).values(**values).returning(Report.__table__.c.id)
        return self.db.execute(stmt).scalar_one()

    def is_duplicate_report(self, exc: IntegrityError) -> bool:
        orig = exc.orig
        # psycopg2 exposes pgcode, psycopg 3 sqlstate
        code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
        if code != UNIQUE_VIOLATION:
            return False
        constraint = getattr(getattr(orig, "diag", None), "constraint_name", None)
        return constraint == REPORT_KEY_CONSTRAINT or REPORT_KEY_CONSTRAINT in str(orig)


class PgsqlReportMapper(PgsqlDialect, ReportMapper):
    pass


class PgsqlStatisticsMapper(PgsqlDialect, StatisticsMapper):
    pass
