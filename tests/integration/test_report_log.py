"""Integration tests for the report log"""
import pytest
from datetime import datetime, timedelta, timezone

from dmarc_store.exceptions import FilterError, NotFoundError
from dmarc_store.filters import ReportLimit
from dmarc_store.mappers import get_mapper
from dmarc_store.parsers.dmarc_parser import parse_xml
from dmarc_store.schemas import ReportLogItem
from dmarc_store.services.report_log import ReportLog, clean_report_log

START = datetime(2024, 3, 1)


@pytest.fixture
def log_mapper(db_session, settings):
    return get_mapper(db_session, "report-log", settings)


@pytest.fixture
def five_days(log_mapper):
    """One entry per day from March 1st to March 5th, the third one failed"""
    for n in range(5):
        log_mapper.save(ReportLogItem(
            source="directory",
            filename=f"day{n + 1}.xml",
            event_time=START + timedelta(days=n),
            success=n != 2,
            message="Unknown tag: BOGUS" if n == 2 else None,
        ))


@pytest.mark.integration
class TestReportLogMapper:
    """Test storing and querying log entries"""

    def test_save_and_fetch(self, log_mapper, valid_xml):
        report = parse_xml(valid_xml)
        saved = log_mapper.save(ReportLogItem.succeeded("email", report, "report.xml.gz"))

        assert saved.id is not None
        assert saved.event_time is not None
        fetched = log_mapper.fetch(saved.id)
        assert fetched.domain == "example.com"
        assert fetched.external_id == "123456"
        assert fetched.filename == "report.xml.gz"
        assert fetched.source == "email"
        assert fetched.success is True
        assert fetched.message is None

    def test_failed_without_report(self, log_mapper):
        saved = log_mapper.save(ReportLogItem.failed("email", None, "broken.zip", "Empty zip file"))
        fetched = log_mapper.fetch(saved.id)
        assert (fetched.domain, fetched.external_id, fetched.success) == (None, None, False)
        assert fetched.message == "Empty zip file"

    def test_update(self, log_mapper):
        saved = log_mapper.save(ReportLogItem(source="directory", filename="a.xml", success=False))
        log_mapper.save(saved.model_copy(update={"message": "Retried"}))

        assert log_mapper.fetch(saved.id).message == "Retried"
        assert log_mapper.count() == 1

    def test_fetch_missing(self, log_mapper):
        with pytest.raises(NotFoundError):
            log_mapper.fetch(42)

    def test_update_missing(self, log_mapper):
        with pytest.raises(NotFoundError):
            log_mapper.save(ReportLogItem(id=42, source="directory"))

    def test_aware_event_time_is_stored_as_utc(self, log_mapper):
        aware = datetime(2024, 3, 1, 12, 0, tzinfo=timezone(timedelta(hours=2)))
        saved = log_mapper.save(ReportLogItem(source="directory", event_time=aware))
        assert log_mapper.fetch(saved.id).event_time == datetime(2024, 3, 1, 10, 0)

    def test_list_order(self, log_mapper, five_days):
        assert [i.filename for i in log_mapper.list()] == [f"day{n}.xml" for n in range(1, 6)]
        assert [i.filename for i in log_mapper.list(direction="descent")][0] == "day5.xml"

    def test_time_filter(self, log_mapper, five_days):
        filter = {"from_time": START + timedelta(days=1), "till_time": START + timedelta(days=3)}
        assert [i.filename for i in log_mapper.list(filter)] == ["day2.xml", "day3.xml"]
        assert log_mapper.count(filter) == 2

    def test_limit(self, log_mapper, five_days):
        items = log_mapper.list(limit=ReportLimit(1, 2))
        assert [i.filename for i in items] == ["day2.xml", "day3.xml"]
        assert log_mapper.count(limit=ReportLimit(0, 3)) == 3
        assert log_mapper.count(limit=ReportLimit(4, 3)) == 1

    def test_invalid_filter(self, log_mapper):
        with pytest.raises(FilterError, match="from_time"):
            log_mapper.list({"from_time": "2024-03-01"})
        with pytest.raises(FilterError):
            log_mapper.list(direction="sideways")

    def test_delete_with_limit_removes_the_oldest(self, log_mapper, five_days):
        assert log_mapper.delete(limit=ReportLimit(0, 2)) == 2
        assert [i.filename for i in log_mapper.list()] == ["day3.xml", "day4.xml", "day5.xml"]

    def test_delete_by_time(self, log_mapper, five_days):
        assert log_mapper.delete({"till_time": START + timedelta(days=3)}) == 3
        assert log_mapper.count() == 2


@pytest.mark.integration
class TestReportLogService:
    """Test paging and cleanup of the report log"""

    def test_pages(self, db_session, settings, five_days):
        log = ReportLog(db_session, settings=settings)
        log.set_max_count(2)
        log.set_order("descent")

        first = log.get_list(0)
        assert [i.filename for i in first.items] == ["day5.xml", "day4.xml"]
        assert first.more is True

        last = log.get_list(4)
        assert [i.filename for i in last.items] == ["day1.xml"]
        assert last.more is False

    def test_period(self, db_session, settings, five_days):
        log = ReportLog(db_session, START + timedelta(days=3), settings=settings)
        assert log.count() == 2
        assert [i.filename for i in log.get_list().items] == ["day4.xml", "day5.xml"]

    def test_invalid_order(self, db_session, settings):
        with pytest.raises(ValueError):
            ReportLog(db_session, settings=settings).set_order("random")

    def test_delete(self, db_session, settings, five_days):
        log = ReportLog(db_session, till_time=START + timedelta(days=2), settings=settings)
        assert log.delete() == 2
        assert ReportLog(db_session, settings=settings).count() == 3

    def test_clean_old_entries(self, db_session, settings, five_days):
        now = START + timedelta(days=7)
        # Entries of March 1st to 3rd are older than four days
        assert clean_report_log(db_session, 4, now=now, settings=settings) == 3
        assert ReportLog(db_session, settings=settings).count() == 2

    def test_clean_leaves_minimum(self, db_session, settings, five_days):
        now = START + timedelta(days=30)
        assert clean_report_log(db_session, 4, leave_minimum=2, now=now, settings=settings) == 3
        remaining = ReportLog(db_session, settings=settings).get_list().items
        assert [i.filename for i in remaining] == ["day4.xml", "day5.xml"]

    def test_clean_maximum(self, db_session, settings, five_days):
        now = START + timedelta(days=30)
        assert clean_report_log(db_session, 4, delete_maximum=1, now=now, settings=settings) == 1
        assert ReportLog(db_session, settings=settings).get_list().items[0].filename == "day2.xml"

    def test_clean_nothing_to_leave(self, db_session, settings, five_days):
        assert clean_report_log(db_session, 0, leave_minimum=5, now=START, settings=settings) == 0

    def test_clean_invalid_values(self, db_session, settings):
        with pytest.raises(ValueError, match="days_old"):
            clean_report_log(db_session, -1, settings=settings)
