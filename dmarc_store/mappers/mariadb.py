"""MariaDB and MySQL"""
from sqlalchemy import func, insert
from sqlalchemy.exc import IntegrityError

from dmarc_store.mappers.base import REPORT_KEY_CONSTRAINT, SqlDialect
from dmarc_store.mappers.report import ReportMapper
from dmarc_store.mappers.statistics import StatisticsMapper
from dmarc_store.models import Report

ER_DUP_ENTRY = 1062


class MariadbDialect(SqlDialect):
    name = "mariadb"

    def sum_if(self, condition, value):
        return func.sum(func.if_(condition, value, 0))

    def month_label(self, column):
        return func.date_format(column, "%Y-%m")

    def insert_report(self, values: dict) -> int:
        result = self.db.execute(insert(Report.__table__).values(**values))
        return result.lastrowid

    def is_duplicate_report(self, exc: IntegrityError) -> bool:
        args = getattr(exc.orig, "args", ()) or ()
        return bool(args) and args[0] == ER_DUP_ENTRY and REPORT_KEY_CONSTRAINT in str(exc.orig)


class MariadbReportMapper(MariadbDialect, ReportMapper):
    pass


class MariadbStatisticsMapper(MariadbDialect, StatisticsMapper):
    pass
