"""Integration tests for report storage"""
import pytest
from datetime import datetime
from unittest.mock import patch

from sqlalchemy.orm import sessionmaker

from dmarc_store.database import Base, make_engine
from dmarc_store.exceptions import (
    DateRangeError,
    DuplicateReportError,
    FilterError,
    InactiveDomainError,
    NotFoundError,
    UnknownDomainError,
    ValidationError,
)
from dmarc_store.filters import ReportLimit, ReportOrder
from dmarc_store.mappers import get_report_mapper
from dmarc_store.mappers.sqlite import SqliteReportMapper
from dmarc_store.models import Domain, Report, ReportRecord
from dmarc_store.parsers.dmarc_parser import parse_xml
from dmarc_store.schemas import ReportIdentity


@pytest.fixture
def mapper(db_session, settings):
    return get_report_mapper(db_session, settings)


@pytest.fixture
def stored_reports(mapper, report_factory):
    """Four reports of two organizations for example.com over three months"""
    reports = [
        report_factory(report_id="jan-1", begin=datetime(2024, 1, 10), records=[
            ("192.0.2.1", 10, "none", "pass", "pass"),
        ]),
        report_factory(report_id="feb-1", begin=datetime(2024, 2, 1), records=[
            ("192.0.2.1", 5, "none", "pass", "fail"),
            ("198.51.100.7", 2, "quarantine", "fail", "fail"),
        ]),
        report_factory(org="yahoo.com", report_id="feb-2", begin=datetime(2024, 2, 15), records=[
            ("203.0.113.9", 4, "reject", "unknown", "pass"),
        ]),
        report_factory(report_id="mar-1", begin=datetime(2024, 3, 1), records=[
            ("192.0.2.1", 1, "none", "pass", "pass"),
        ]),
    ]
    for report in reports:
        mapper.save(report)
    return reports


@pytest.mark.integration
class TestSaveAndFetch:
    """Test storing and loading reports"""

    def test_parsed_report_round_trip(self, mapper, valid_xml):
        """Saving then fetching by the natural key returns the parsed values"""
        report = parse_xml(valid_xml)
        saved = mapper.save(report)

        assert saved.loaded_time is not None
        fetched = mapper.fetch(ReportIdentity(
            domain="example.com",
            begin_time=datetime(2023, 11, 14, 22, 13, 20),
            org="google.com",
            external_id="123456",
        ))

        assert fetched.domain == "example.com"
        assert fetched.org_name == "google.com"
        assert fetched.report_id == "123456"
        assert fetched.email == "noreply-dmarc-support@google.com"
        assert fetched.begin_time == report.begin_time
        assert fetched.end_time == report.end_time
        assert fetched.policy == report.policy
        assert fetched.seen is False
        assert len(fetched.records) == 1

        record = fetched.records[0]
        assert record.ip == "192.0.2.1"
        assert record.count == 10
        assert record.disposition == "none"
        assert record.dkim_align == "pass"
        assert record.spf_align == "fail"
        assert record == report.records[0]

    def test_json_columns_keep_none_and_lists_apart(self, mapper, multiple_records_xml):
        report = parse_xml(multiple_records_xml)
        mapper.save(report)

        fetched = mapper.fetch(report.identity())
        assert fetched.domain == "example.com"
        assert fetched.error_string == ["Report size exceeded", "Second error"]
        by_ip = {r.ip: r for r in fetched.records}
        assert by_ip["2001:db8::1"].dkim_auth is None
        assert by_ip["2001:db8::1"].reason is None
        assert by_ip["203.0.113.5"].reason[0].type == "sampled_out"
        assert len(by_ip["203.0.113.5"].dkim_auth) == 2

    def test_records_sorted_by_message_count(self, mapper, multiple_records_xml):
        report = parse_xml(multiple_records_xml)
        mapper.save(report)
        assert [r.count for r in mapper.fetch(report.identity()).records] == [7, 3]

    def test_alignment_stored_as_lookup_index(self, mapper, db_session, report_factory):
        mapper.save(report_factory())
        raw = db_session.connection().exec_driver_sql(
            "SELECT dkim_align, spf_align, disposition FROM rptrecords"
        ).one()
        assert tuple(raw) == (2, 0, 2)

    def test_fetch_missing(self, mapper, report_factory):
        with pytest.raises(NotFoundError):
            mapper.fetch(report_factory().identity())

    def test_duplicate(self, mapper, db_session, report_factory):
        mapper.save(report_factory())
        with pytest.raises(DuplicateReportError):
            mapper.save(report_factory())

        assert db_session.query(Report).count() == 1
        assert db_session.query(ReportRecord).count() == 1

    def test_same_id_other_period_is_not_duplicate(self, mapper, db_session, report_factory):
        mapper.save(report_factory())
        mapper.save(report_factory(begin=datetime(2023, 11, 20)))
        assert db_session.query(Report).count() == 2

    def test_wrong_date_range(self, mapper, report_factory):
        report = report_factory(days=1)
        report = report.model_copy(update={"end_time": datetime(2023, 1, 1)})
        with pytest.raises(DateRangeError):
            mapper.save(report)

    def test_epoch_begin_time(self, mapper, report_factory):
        with pytest.raises(DateRangeError):
            mapper.save(report_factory(begin=datetime(1970, 1, 1)))

    def test_no_records(self, mapper, db_session, report_factory):
        report = report_factory().model_copy(update={"records": []})
        with pytest.raises(ValidationError):
            mapper.save(report)
        assert db_session.query(Report).count() == 0


@pytest.mark.integration
class TestDomainResolution:
    """Test automatic domain creation on save"""

    def test_first_domain_is_added(self, mapper, db_session, report_factory):
        saved = mapper.save(report_factory(domain="Example.COM"))
        assert saved.domain == "example.com"

        domain = db_session.query(Domain).one()
        assert domain.fqdn == "example.com"
        assert domain.active is True

    def test_unknown_domain(self, mapper, report_factory):
        mapper.save(report_factory())
        with pytest.raises(UnknownDomainError) as exc_info:
            mapper.save(report_factory(domain="example.net"))
        assert "example.net" in exc_info.value.message

    def test_allowed_domain_is_added(self, db_session, settings, report_factory):
        settings.allowed_domains = r"\.example\.net$"
        mapper = get_report_mapper(db_session, settings)
        mapper.save(report_factory())
        mapper.save(report_factory(domain="mail.EXAMPLE.net"))
        assert mapper.domains.names() == ["example.com", "mail.example.net"]

    def test_invalid_allowed_domains_regex(self, db_session, settings, report_factory, caplog):
        settings.allowed_domains = "(unclosed"
        mapper = get_report_mapper(db_session, settings)
        mapper.save(report_factory())
        with pytest.raises(UnknownDomainError):
            mapper.save(report_factory(domain="example.net"))
        assert "incorrect regular expression" in caplog.text

    def test_inactive_domain(self, mapper, db_session, report_factory):
        db_session.add(Domain(fqdn="example.com", active=False))
        db_session.commit()
        with pytest.raises(InactiveDomainError):
            mapper.save(report_factory())
        assert db_session.query(Report).count() == 0

    def test_failed_save_does_not_keep_added_domain(self, mapper, db_session, report_factory):
        report = report_factory().model_copy(update={"end_time": datetime(2023, 1, 1)})
        with pytest.raises(DateRangeError):
            mapper.save(report)
        assert db_session.query(Domain).count() == 0


@pytest.mark.integration
class TestSetProperty:
    """Test changing report properties"""

    def test_seen(self, mapper, report_factory):
        report = report_factory()
        mapper.save(report)
        mapper.set_property(report.identity(), "seen", True)
        assert mapper.fetch(report.identity()).seen is True

    @pytest.mark.parametrize("name,value", [("seen", "yes"), ("org", "x"), ("seen", 1)])
    def test_invalid(self, mapper, report_factory, name, value):
        report = report_factory()
        mapper.save(report)
        with pytest.raises(ValidationError):
            mapper.set_property(report.identity(), name, value)

    def test_missing_report(self, mapper, report_factory):
        with pytest.raises(NotFoundError):
            mapper.set_property(report_factory().identity(), "seen", True)


@pytest.mark.integration
class TestReportList:
    """Test listing and counting reports"""

    def test_list_counts(self, mapper, stored_reports):
        reports = mapper.list()
        assert [r.external_id for r in reports] == ["mar-1", "feb-2", "feb-1", "jan-1"]

        feb = reports[2]
        assert feb.domain == "example.com"
        assert feb.messages == 7
        assert (feb.dkim.fail, feb.dkim.unknown, feb.dkim.pass_) == (2, 0, 5)
        assert (feb.spf.fail, feb.spf.unknown, feb.spf.pass_) == (7, 0, 0)
        assert feb.quarantined == 2
        assert feb.rejected == 0

    def test_ascending_order(self, mapper, stored_reports):
        reports = mapper.list(order=ReportOrder("begin_time", "ascent"))
        assert [r.external_id for r in reports] == ["jan-1", "feb-1", "feb-2", "mar-1"]

    def test_limit(self, mapper, stored_reports):
        reports = mapper.list(limit=ReportLimit(1, 2))
        assert [r.external_id for r in reports] == ["feb-2", "feb-1"]

    def test_report_without_records_is_listed(self, mapper, db_session, stored_reports):
        domain = db_session.query(Domain).one()
        db_session.add(Report(
            domain_id=domain.id, begin_time=datetime(2024, 4, 1), end_time=datetime(2024, 4, 2),
            org="empty.test", external_id="empty", seen=False,
        ))
        db_session.commit()

        report = mapper.list(limit=ReportLimit(0, 1))[0]
        assert report.external_id == "empty"
        assert report.messages == 0
        assert report.dkim.pass_ == 0

    @pytest.mark.parametrize("filter,expected", [
        ({}, ["mar-1", "feb-2", "feb-1", "jan-1"]),
        ({"month": "2024-02"}, ["feb-2", "feb-1"]),
        ({"organization": "yahoo.com"}, ["feb-2"]),
        ({"domain": "example.com"}, ["mar-1", "feb-2", "feb-1", "jan-1"]),
        ({"dkim": "pass"}, ["mar-1", "jan-1"]),
        ({"dkim": "fail"}, ["feb-1"]),
        ({"dkim": "unknown"}, ["feb-2"]),
        ({"spf": "fail"}, ["feb-1"]),
        ({"spf": "pass"}, ["mar-1", "feb-2", "jan-1"]),
        ({"disposition": "none"}, ["mar-1", "jan-1"]),
        ({"disposition": "quarantine"}, ["feb-1"]),
        ({"disposition": "reject"}, ["feb-2"]),
        ({"status": "unread"}, ["mar-1", "feb-2", "feb-1", "jan-1"]),
        ({"status": "read"}, []),
        ({"before_time": datetime(2024, 2, 10)}, ["feb-1", "jan-1"]),
        ({"month": "2024-02", "spf": "pass"}, ["feb-2"]),
    ])
    def test_filters_agree_with_count(self, mapper, stored_reports, filter, expected):
        reports = mapper.list(filter)
        assert [r.external_id for r in reports] == expected
        assert mapper.count(filter) == len(reports)

    def test_count_with_limit(self, mapper, stored_reports):
        assert mapper.count({}, ReportLimit(0, 2)) == 2
        assert mapper.count({}, ReportLimit(3, 0)) == 1
        assert mapper.count({"dkim": "pass"}, ReportLimit(1, 10)) == 1

    def test_month_boundary(self, mapper, report_factory):
        """A report starting on the first of the month is in that month, not the previous one"""
        mapper.save(report_factory(report_id="feb", begin=datetime(2024, 2, 1)))
        mapper.save(report_factory(report_id="mar", begin=datetime(2024, 3, 1)))

        assert [r.external_id for r in mapper.list({"month": "2024-02"})] == ["feb"]
        assert [r.external_id for r in mapper.list({"month": "2024-03"})] == ["mar"]
        assert mapper.list({"month": "2024-01"}) == []

    def test_unknown_domain_filter(self, mapper, stored_reports):
        with pytest.raises(NotFoundError):
            mapper.list({"domain": "unknown.test"})

    def test_invalid_filter(self, mapper, stored_reports):
        with pytest.raises(FilterError):
            mapper.count({"disposition": "drop"})

    def test_scope(self, mapper, stored_reports):
        domain_id = mapper.domains.domain_id("example.com")
        assert len(mapper.list(scope=[domain_id])) == 4
        assert mapper.list(scope=[domain_id + 1]) == []
        assert mapper.count(scope=[]) == 0

    def test_months_and_organizations(self, mapper, stored_reports):
        assert mapper.months() == ["2024-03", "2024-02", "2024-01"]
        assert mapper.organizations() == ["google.com", "yahoo.com"]
        assert mapper.months(scope=[]) == []


@pytest.mark.integration
class TestDelete:
    """Test deleting reports"""

    def test_delete_by_filter(self, mapper, db_session, stored_reports):
        assert mapper.delete({"month": "2024-02"}) == 2

        assert [r.external_id for r in mapper.list()] == ["mar-1", "jan-1"]
        assert db_session.query(ReportRecord).count() == 2

    def test_alignment_filters_do_not_affect_delete(self, mapper, stored_reports):
        assert mapper.delete({"organization": "google.com", "dkim": "fail"}) == 3
        assert [r.external_id for r in mapper.list()] == ["feb-2"]

    def test_delete_with_limit(self, mapper, db_session, stored_reports):
        deleted = mapper.delete({}, ReportOrder("begin_time", "ascent"), ReportLimit(0, 2))
        assert deleted == 2
        assert [r.external_id for r in mapper.list()] == ["mar-1", "feb-2"]
        assert db_session.query(ReportRecord).count() == 2

    def test_delete_all(self, mapper, db_session, stored_reports):
        assert mapper.delete() == 4
        assert db_session.query(Report).count() == 0
        assert db_session.query(ReportRecord).count() == 0


@pytest.fixture
def two_sessions(tmp_path):
    """Two independent sessions on one SQLite file"""
    engine = make_engine(f"sqlite:///{tmp_path / 'store.db'}")
    Base.metadata.create_all(bind=engine)
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    first, second = SessionLocal(), SessionLocal()

    yield first, second

    first.close()
    second.close()
    engine.dispose()


@pytest.mark.integration
class TestConcurrentSave:
    """Test two sessions adding the same new domain at the same time"""

    def save_while_other_session_commits(self, settings, two_sessions, other_report, report):
        """
        Save report on the second session; the first session stores
        other_report after the second one found no domain but before it adds one
        """
        first, second = two_sessions
        other = SqliteReportMapper(first, settings)
        mapper = SqliteReportMapper(second, settings)

        def count_domains(max=0):
            other.save(other_report)
            return 0

        with patch.object(mapper.domains, "count", side_effect=count_domains):
            return mapper.save(report)

    def test_same_report_is_a_duplicate(self, settings, two_sessions, report_factory):
        with pytest.raises(DuplicateReportError):
            self.save_while_other_session_commits(
                settings, two_sessions, report_factory(), report_factory()
            )

        second = two_sessions[1]
        assert second.query(Report).count() == 1
        assert second.query(Domain).count() == 1

    def test_other_report_uses_the_stored_domain(self, settings, two_sessions, report_factory):
        saved = self.save_while_other_session_commits(
            settings, two_sessions, report_factory(report_id="first"), report_factory(report_id="second")
        )

        assert saved.domain == "example.com"
        second = two_sessions[1]
        assert sorted(r.external_id for r in second.query(Report)) == ["first", "second"]
        assert second.query(Domain).count() == 1
