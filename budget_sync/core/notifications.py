"""
Sync notifications

The scheduler reports failed and partial runs through a notifier. The default
one writes to the log; deployments can pass anything with the same two methods
(email, chat webhook, pager).
"""
import logging

from .models import SyncRun

logger = logging.getLogger(__name__)


class LoggingNotifier:
    """Notifier that only logs"""

    def notify_failure(self, tenant_id: str, detail):
        """
        Args:
            detail: The failed SyncRun, or the exception that aborted the job
        """
        if isinstance(detail, SyncRun):
            messages = '; '.join(e.get('error', '') for e in detail.errors) or 'unknown error'
            logger.error("Sync failed for tenant %s (%s): %s", tenant_id, detail.sync_id, messages)
        else:
            logger.error("Sync failed for tenant %s: %s", tenant_id, detail)

    def notify_partial(self, tenant_id: str, run: SyncRun):
        logger.warning(
            "Partial sync for tenant %s (%s): %d of %d rows had errors",
            tenant_id, run.sync_id, run.stats.errors, run.stats.total,
        )
