"""
Report Fetching Service

Loads every report file of a source:
1. Unwraps the file (gzip, zip or plain XML)
2. Parses it with the DMARC parser
3. Saves the report through the report mapper
4. Tells the source whether the file was accepted or rejected
5. Writes the outcome to the report log

A bad file never stops the batch: parse, validation, domain and duplicate
errors become a per-file result. Storage errors stop the batch and
propagate because they need operator attention.
"""
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from dmarc_store.config import Settings, get_settings
from dmarc_store.exceptions import DmarcStoreError, StorageError, error_result
from dmarc_store.ingest.report_file import ReportFile, ReportSource
from dmarc_store.mappers import get_report_mapper
from dmarc_store.mappers.report_log import ReportLogMapper
from dmarc_store.parsers.dmarc_parser import parse_report
from dmarc_store.schemas import ReportLogItem

logger = logging.getLogger(__name__)


class ReportFetcher:
    """Load the report files of one source"""

    def __init__(
        self,
        db: Session,
        source: ReportSource,
        limit: Optional[int] = None,
        settings: Optional[Settings] = None
    ):
        """
        Initialize fetcher

        Args:
            db: Database session
            source: Source of report files
            limit: Maximum number of files to process, 0 for no limit;
                defaults to the fetcher_files_maximum setting
            settings: Application settings, defaults to get_settings()
        """
        settings = settings or get_settings()
        self.source = source
        self.limit = settings.fetcher_files_maximum if limit is None else limit
        self.mapper = get_report_mapper(db, settings)
        self.log = ReportLogMapper(db)

    def fetch(self) -> List[Dict[str, Any]]:
        """
        Process the files of the source

        Returns:
            One result per processed file
        """
        results = []
        for report_file in self.source:
            results.append(self._load(report_file))
            if self.limit > 0 and len(results) >= self.limit:
                break

        loaded = sum(1 for r in results if r["error_code"] == 0)
        logger.info(f"Fetched {len(results)} report files from {self.source.type} source, {loaded} loaded")
        return results

    def _load(self, report_file: ReportFile) -> Dict[str, Any]:
        report = None
        try:
            with report_file.datastream() as stream:
                report = parse_report(stream)
            self.mapper.save(report)
        except StorageError as e:
            self.source.rejected(report_file)
            try:
                self.log.save(ReportLogItem.failed(self.source.type, report, report_file.filename, e.message))
            except StorageError as log_error:
                logger.error(f"Failed to write the report log entry for {report_file.filename}: {log_error.message}")
            raise
        except DmarcStoreError as e:
            logger.warning(
                f"Failed to load report file {report_file.filename}: {e.message}",
                extra={"file_name": report_file.filename}
            )
            self.source.rejected(report_file)
            self.log.save(ReportLogItem.failed(self.source.type, report, report_file.filename, e.message))
            result = error_result(e, filename=report_file.filename)
            if report is not None:
                result["report_id"] = report.report_id
            return result

        self.source.accepted(report_file)
        self.log.save(ReportLogItem.succeeded(self.source.type, report, report_file.filename))
        logger.info(
            f"Loaded report {report.report_id} from {report_file.filename}",
            extra={"file_name": report_file.filename, "report_id": report.report_id,
                   "domain": report.domain, "records": len(report.records)}
        )
        return {
            "error_code": 0,
            "message": "The report is loaded successfully",
            "filename": report_file.filename,
            "report_id": report.report_id,
        }


def make_summary_result(results: List[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Collapse per-file results into one result

    A single result is returned unchanged. Otherwise the summary carries an
    overall message and the individual results.
    """
    r_count = len(results)
    if r_count == 1:
        return results[0]

    loaded = sum(1 for r in results if r.get("error_code", 0) == 0)
    if loaded == r_count:
        error_code = 0
        if r_count > 0:
            message = f"{r_count} report files have been loaded successfully"
        else:
            message = "There are no report files to load"
    else:
        error_code = -1
        if loaded > 0:
            message = f"Only {loaded} of the {r_count} report files have been loaded"
        else:
            message = f"None of the {r_count} report files has been loaded"

    summary = {"error_code": error_code, "message": message}
    if r_count > 0:
        summary["results"] = results
    return summary
