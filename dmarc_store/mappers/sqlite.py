"""SQLite, for embedded use and the default test backend"""
from sqlalchemy import case, func, insert
from sqlalchemy.exc import IntegrityError

from dmarc_store.mappers.base import SqlDialect
from dmarc_store.mappers.report import ReportMapper
from dmarc_store.mappers.statistics import StatisticsMapper
from dmarc_store.models import Report


class SqliteDialect(SqlDialect):
    name = "sqlite"

    def sum_if(self, condition, value):
        return func.coalesce(func.sum(case((condition, value), else_=0)), 0)

    def month_label(self, column):
        return func.strftime("%Y-%m", column)

    def insert_report(self, values: dict) -> int:
        result = self.db.execute(insert(Report.__table__).values(**values))
        return result.lastrowid

    def is_duplicate_report(self, exc: IntegrityError) -> bool:
        # The message names the columns of the violated key
        return "UNIQUE constraint failed: reports." in str(exc.orig)


class SqliteReportMapper(SqliteDialect, ReportMapper):
    pass


class SqliteStatisticsMapper(SqliteDialect, StatisticsMapper):
    pass
