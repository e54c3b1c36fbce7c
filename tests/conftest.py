"""
Test Configuration and Fixtures

Mapper tests run against in-memory SQLite by default. Point TEST_DATABASE_URL
at a MariaDB or PostgreSQL database to run the same tests against that
backend; the database is created when it does not exist.
"""

import os
from datetime import datetime, timedelta
from pathlib import Path

import pytest
from sqlalchemy.orm import sessionmaker

from dmarc_store.config import Settings
from dmarc_store.database import Base, make_engine
from dmarc_store.schemas import ReportData, ReportPolicy, ReportRecordData


TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL", "sqlite://")

FIXTURES_DIR = Path(__file__).parent / "fixtures"


@pytest.fixture(scope="session")
def db_engine():
    """Create a test database engine (session-scoped for performance)"""
    # Import all models to register them with Base
    import dmarc_store.models  # noqa: F401

    if not TEST_DATABASE_URL.startswith("sqlite"):
        from sqlalchemy_utils import database_exists, create_database
        if not database_exists(TEST_DATABASE_URL):
            create_database(TEST_DATABASE_URL)

    engine = make_engine(TEST_DATABASE_URL)

    yield engine

    engine.dispose()


@pytest.fixture(scope="function")
def db_session(db_engine):
    """
    Create a test database session on fresh tables

    The mappers commit their own transactions, so the tables are dropped
    after each test instead of rolling back.
    """
    Base.metadata.create_all(bind=db_engine)

    TestingSessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=db_engine
    )
    session = TestingSessionLocal()

    yield session

    session.close()
    Base.metadata.drop_all(bind=db_engine)


@pytest.fixture
def settings():
    """Settings isolated from the environment and any .env file"""
    return Settings(_env_file=None, database_url=TEST_DATABASE_URL, allowed_domains="")


@pytest.fixture
def fixtures_dir():
    """Get fixtures directory path"""
    return FIXTURES_DIR


@pytest.fixture
def valid_xml():
    """Single-record report of google.com for example.com"""
    return (FIXTURES_DIR / "valid_report.xml").read_bytes()


@pytest.fixture
def multiple_records_xml():
    """Two-record report with reasons, several auth results and errors"""
    return (FIXTURES_DIR / "multiple_records.xml").read_bytes()


@pytest.fixture
def malformed_xml():
    return (FIXTURES_DIR / "malformed.xml").read_bytes()


@pytest.fixture
def unknown_tag_xml():
    return (FIXTURES_DIR / "unknown_tag.xml").read_bytes()


@pytest.fixture
def external_entity_xml():
    return (FIXTURES_DIR / "external_entity.xml").read_bytes()


@pytest.fixture
def sample_gzip(valid_xml):
    """Sample gzipped DMARC report"""
    import gzip
    return gzip.compress(valid_xml)


@pytest.fixture
def sample_zip(valid_xml):
    """Sample zipped DMARC report"""
    import zipfile
    import io

    zip_buffer = io.BytesIO()
    with zipfile.ZipFile(zip_buffer, 'w', zipfile.ZIP_DEFLATED) as zf:
        zf.writestr("report.xml", valid_xml)
    return zip_buffer.getvalue()


@pytest.fixture
def corrupt_zip(valid_xml):
    """Zipped report whose member data no longer matches its CRC"""
    import zipfile
    import io

    zip_buffer = io.BytesIO()
    with zipfile.ZipFile(zip_buffer, 'w', zipfile.ZIP_STORED) as zf:
        zf.writestr("report.xml", valid_xml)
    data = bytearray(zip_buffer.getvalue())
    pos = data.index(b"<org_name>google.com")
    data[pos + 10] ^= 0x20  # google.com -> Google.com
    return bytes(data)


def build_report(
    domain="example.com",
    org="google.com",
    report_id="123456",
    begin=datetime(2023, 11, 14, 22, 13, 20),
    days=1,
    records=None,
):
    """Report data for mapper tests; records are (ip, count, disposition, dkim, spf) tuples"""
    if records is None:
        records = [("192.0.2.1", 10, "none", "pass", "fail")]
    return ReportData(
        domain=domain,
        org_name=org,
        report_id=report_id,
        email=f"noreply-dmarc@{org}",
        begin_time=begin,
        end_time=begin + timedelta(days=days),
        policy=ReportPolicy(adkim="r", aspf="r", p="none", pct="100"),
        records=[
            ReportRecordData(
                ip=ip,
                count=count,
                disposition=disposition,
                dkim_align=dkim,
                spf_align=spf,
                header_from=domain,
            ) for ip, count, disposition, dkim, spf in records
        ],
    )


@pytest.fixture
def report_factory():
    """Factory for report data, see build_report()"""
    return build_report
