"""
Dialect-specific mappers behind one interface.

The dialect comes from the database_dialect setting or, when that is empty,
from the engine the session is bound to.
"""
from typing import Optional

from sqlalchemy.orm import Session

from dmarc_store.config import Settings, get_settings
from dmarc_store.mappers.domain import DomainMapper
from dmarc_store.mappers.mariadb import MariadbReportMapper, MariadbStatisticsMapper
from dmarc_store.mappers.pgsql import PgsqlReportMapper, PgsqlStatisticsMapper
from dmarc_store.mappers.report import ReportMapper
from dmarc_store.mappers.report_log import ReportLogMapper
from dmarc_store.mappers.sqlite import SqliteReportMapper, SqliteStatisticsMapper
from dmarc_store.mappers.statistics import StatisticsMapper

MAPPERS = {
    "mariadb": {"report": MariadbReportMapper, "statistics": MariadbStatisticsMapper},
    "pgsql": {"report": PgsqlReportMapper, "statistics": PgsqlStatisticsMapper},
    "sqlite": {"report": SqliteReportMapper, "statistics": SqliteStatisticsMapper},
}

# SQLAlchemy dialect names
ENGINE_DIALECTS = {
    "mysql": "mariadb",
    "mariadb": "mariadb",
    "postgresql": "pgsql",
    "sqlite": "sqlite",
}


def dialect_name(db: Session, settings: Optional[Settings] = None) -> str:
    """Mapper dialect for the session"""
    settings = settings or get_settings()
    if settings.database_dialect:
        return settings.database_dialect
    engine_dialect = db.get_bind().dialect.name
    try:
        return ENGINE_DIALECTS[engine_dialect]
    except KeyError:
        raise ValueError(f"Unsupported database dialect: {engine_dialect}")


def get_mapper(db: Session, kind: str, settings: Optional[Settings] = None):
    """
    Mapper of the given kind for the session's database

    Args:
        db: Database session
        kind: "report", "statistics", "domain" or "report-log"
        settings: Application settings, defaults to get_settings()
    """
    settings = settings or get_settings()
    if kind == "domain":
        return DomainMapper(db)
    if kind == "report-log":
        return ReportLogMapper(db)
    mappers = MAPPERS[dialect_name(db, settings)]
    if kind not in mappers:
        raise ValueError(f"Unknown mapper: {kind}")
    return mappers[kind](db, settings)


def get_report_mapper(db: Session, settings: Optional[Settings] = None) -> ReportMapper:
    return get_mapper(db, "report", settings)


def get_statistics_mapper(db: Session, settings: Optional[Settings] = None) -> StatisticsMapper:
    return get_mapper(db, "statistics", settings)


__all__ = [
    "DomainMapper",
    "ReportLogMapper",
    "ReportMapper",
    "StatisticsMapper",
    "MAPPERS",
    "dialect_name",
    "get_mapper",
    "get_report_mapper",
    "get_statistics_mapper",
]
