"""
Sync log sink and the audit wrapper for orchestrator entry points.

Every public sync entry point is wrapped by ``audited``: the wrapper owns the
run summary, writes Started/outcome rows to the sync log and hands the finished
summary to the notifier. Logging and notification are best-effort and never
change the outcome of the run they describe.
"""

import logging
import functools
from typing import Callable, List

from directory_sync.delta_state import parse_timestamp
from directory_sync.errors import RunError
from directory_sync.models import SyncLogEntry, SyncRunSummary
from directory_sync.store import ListClient, StoreError

logger = logging.getLogger(__name__)

STARTED = 'Started'


class SyncLogSink:
    """Append-only sync log kept in a list of the record store."""

    def __init__(self, list_client: ListClient, list_name: str = 'SyncLog'):
        self.list_client = list_client
        self.list_name = list_name

    def log_event(self, run_id: str, status: str, message: str) -> None:
        try:
            self.list_client.add(self.list_name, {
                'Title': f"{run_id} - {status}",
                'SyncId': run_id,
                'Status': status,
                'Message': message
            })
        except (StoreError, OSError) as e:
            logger.warning(f"Failed to write sync log entry for {run_id}: {e}")

    def get_history(self, count: int = 10) -> List[SyncLogEntry]:
        """Return the most recent log entries, newest first; empty when the log is unreadable."""
        try:
            items = self.list_client.query(
                self.list_name,
                select=['Id', 'SyncId', 'Status', 'Message', 'Created'],
                order_by='Created desc',
                top=count
            )
        except (StoreError, OSError) as e:
            logger.warning(f"Failed to read sync history: {e}")
            return []

        return [
            SyncLogEntry(
                id=int(item.get('Id', 0)),
                sync_id=item.get('SyncId', ''),
                status=item.get('Status', ''),
                message=item.get('Message', ''),
                timestamp=parse_timestamp(item.get('Created'))
            )
            for item in items
        ]


def format_counters(summary: SyncRunSummary) -> str:
    return (f"Processed: {summary.total_processed}, Added: {summary.added}, Updated: {summary.updated}, "
            f"Deactivated: {summary.deactivated}, Skipped: {summary.skipped}, Errors: {summary.errors}")


def audited(mode: str) -> Callable:
    """
    Wrap an orchestrator entry point with run bookkeeping.

    The wrapped method receives the new summary as its first argument after
    ``self`` and fills it in. The wrapper stamps the final status. On a run
    error it stamps Failed, attaches the summary to the error and re-raises.
    """
    def decorator(method: Callable) -> Callable:
        @functools.wraps(method)
        def wrapper(self, *args, **kwargs) -> SyncRunSummary:
            summary = SyncRunSummary.start(mode, self.options.max_error_details)
            logger.info(f"Starting {mode} sync {summary.sync_id}")
            self._log_event(summary.sync_id, STARTED, f"{mode} sync started")

            try:
                method(self, summary, *args, **kwargs)
            except Exception as e:
                summary.fail(e)
                if isinstance(e, RunError):
                    e.summary = summary
                    summary.fallback_to_full = e.fallback_to_full
                logger.error(f"{mode} sync {summary.sync_id} failed: {e}")
                self._log_event(summary.sync_id, summary.status, f"{mode} sync failed: {e}")
                self._notify(summary)
                raise

            summary.complete()
            message = f"{mode} sync finished. {format_counters(summary)}"
            logger.info(f"{summary.sync_id}: {message} ({summary.runtime_seconds:.1f}s)")
            self._log_event(summary.sync_id, summary.status, message)
            self._notify(summary)
            return summary

        return wrapper

    return decorator
