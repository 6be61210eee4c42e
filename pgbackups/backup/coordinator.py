"""
Run coordinator - backs up every configured site in order.

A failed site is reported and notified immediately; the run carries on with
the remaining sites. On the digest day the weekly digest is sent once all
sites are done.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Iterable, List, Optional

from pgbackups.config import Site
from pgbackups.notifications import is_digest_day, create_notifier
from pgbackups.status import StatusRecorder
from .executor import BackupPipeline, PipelineResult
from .sources import create_source
from .storage import create_storage


logger = logging.getLogger(__name__)

LOG_EXCERPT_LINES = 20


@dataclass
class RunSummary:
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    results: List[PipelineResult] = field(default_factory=list)

    @property
    def exit_code(self) -> int:
        return 1 if self.failed else 0

    def add(self, result: PipelineResult):
        self.total += 1
        if result.succeeded:
            self.succeeded += 1
        else:
            self.failed += 1
        self.results.append(result)


def select_sites(sites: Iterable[Site], site_filter: Optional[str] = None, smoke_test: bool = False) -> List[Site]:
    """
    Apply the restricted run modes.

    Args:
        sites: Sites in configuration order
        site_filter: Keep only sites whose container name contains this
        smoke_test: Keep only the first remaining site

    Returns:
        Selected sites, still in configuration order
    """
    selected = [
        site for site in sites
        if not site_filter or site_filter in site.source_ref
    ]
    if smoke_test:
        selected = selected[:1]
    return selected


class RunCoordinator:
    """
    Iterates sites through a BackupPipeline, one at a time.
    """

    def __init__(self, pipeline, recorder, notifier):
        """
        Args:
            pipeline: BackupPipeline
            recorder: StatusRecorder the pipeline writes to
            notifier: SESNotifier or NullNotifier
        """
        self.pipeline = pipeline
        self.recorder = recorder
        self.notifier = notifier

    def run(
        self,
        sites: Iterable[Site],
        site_filter: Optional[str] = None,
        smoke_test: bool = False,
        today: Optional[date] = None
    ) -> RunSummary:
        """
        Back up the selected sites and aggregate their outcomes.

        Returns:
            RunSummary with total/succeeded/failed in processing order
        """
        today = today or date.today()
        summary = RunSummary()

        selected = select_sites(sites, site_filter, smoke_test)
        if site_filter and not selected:
            logger.warning(f"No configured site matches: {site_filter}")
        if smoke_test:
            logger.info("Test mode: backing up the first site only")

        for site in selected:
            result = self.pipeline.run(site, today=today)
            summary.add(result)

            if not result.succeeded:
                self._notify_failure(result)

        self._log_summary(summary)

        if is_digest_day(today):
            logger.info("Sunday detected - sending weekly digest")
            self.send_digest(today)

        return summary

    def send_digest(self, today: Optional[date] = None):
        today = today or date.today()
        try:
            self.notifier.notify_digest(self.recorder.weekly(today), today - timedelta(days=7))
        except Exception as e:
            logger.error(f"Failed to send weekly digest: {e}")

    def _notify_failure(self, result: PipelineResult):
        try:
            self.notifier.notify_failure(
                result.site_id,
                str(result.error),
                result.logs[-LOG_EXCERPT_LINES:]
            )
        except Exception as e:
            logger.error(f"Failed to send failure notification for {result.site_id}: {e}")

    def _log_summary(self, summary: RunSummary):
        logger.info("BACKUP SUMMARY")
        logger.info(f"Total sites: {summary.total}")
        logger.info(f"Successful: {summary.succeeded}")
        if summary.failed:
            logger.error(f"Failed: {summary.failed}")
        else:
            logger.info(f"Failed: {summary.failed}")


def create_coordinator(config) -> RunCoordinator:
    """
    Wire a coordinator from app configuration.

    Args:
        config: Flask config mapping
    """
    recorder = StatusRecorder(config['STATUS_FILE'])
    pipeline = BackupPipeline(
        source=create_source(config),
        storage=create_storage(config),
        recorder=recorder,
        backup_dir=config['BACKUP_DIR'],
        min_dump_bytes=int(config.get('MIN_DUMP_BYTES') or 100)
    )
    return RunCoordinator(pipeline, recorder, create_notifier(config))
