"""
Sync Scheduler

Runs each tenant's file sync on its cadence:
- one cron job per tenant, in the configured timezone
- a tenant never runs twice at once
- at most max_concurrent_jobs tenants run at once; ticks over the cap are skipped
- transient failures are retried with exponential backoff
- failed and partial runs go to the notifier
- stop_all() cancels timers and waits a grace period for in-flight runs
"""
import logging
import threading
import time
from dataclasses import dataclass, fields, replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from ..sources.base import cleanup_staging
from ..utils.settings import Settings
from .errors import BudgetSyncError, PersistenceUnavailable, SchedulerError
from .models import STATUS_FAILED, STATUS_PARTIAL, SyncConfig, SyncRun, utcnow
from .notifications import LoggingNotifier
from .orchestrator import TRIGGER_MANUAL, TRIGGER_SCHEDULE

logger = logging.getLogger(__name__)

CADENCE_CRON = {
    'hourly': '0 * * * *',
    'every_4_hours': '0 */4 * * *',
    'every_12_hours': '0 */12 * * *',
    'daily': '0 2 * * *',
    'manual': None,
}

STAGING_CLEANUP_JOB = 'budget-sync:staging-cleanup'
STAGING_CLEANUP_CRON = '0 3 * * *'

JOB_IDLE = 'idle'
JOB_RUNNING = 'running'
JOB_ERROR = 'error'

# Fields reconfigure() may change
RECONFIGURABLE = {f.name for f in fields(SyncConfig)} - {'tenant_id'}


def cadence_to_cron(cadence: str) -> Optional[str]:
    """Crontab expression for a cadence; None for manual-only"""
    if cadence not in CADENCE_CRON:
        raise SchedulerError(f"Unknown cadence: {cadence}")
    return CADENCE_CRON[cadence]


@dataclass
class ScheduledJob:
    tenant_id: str
    config: SyncConfig
    job_id: Optional[str] = None
    status: str = JOB_IDLE
    last_run: Optional[datetime] = None
    last_result: Optional[str] = None
    last_error: Optional[str] = None


class SyncScheduler:
    """Owns every tenant's scheduled sync job; create one per process"""

    def __init__(self,
                 orchestrator,
                 store=None,
                 settings: Optional[Settings] = None,
                 notifier=None,
                 scheduler=None,
                 sleep: Callable[[float], None] = time.sleep):
        """
        Args:
            orchestrator: FileSyncOrchestrator used for every run
            store: LedgerStore holding tenant configs (default: the orchestrator's)
            settings: Concurrency, retry and timezone settings
            notifier: Object with notify_failure / notify_partial (default: log only)
            scheduler: APScheduler scheduler (default: a BackgroundScheduler)
            sleep: Called between retries
        """
        self.orchestrator = orchestrator
        self.store = store if store is not None else orchestrator.store
        self.settings = settings or Settings()
        self.notifier = notifier or LoggingNotifier()
        self.max_concurrent_jobs = self.settings.max_concurrent_jobs
        self._sleep = sleep

        self._jobs: Dict[str, ScheduledJob] = {}
        self._running = set()
        self._lock = threading.RLock()
        self._idle = threading.Condition(self._lock)

        if scheduler is None:
            # Ticks over the cap must reach _execute_job to be skipped, not wait for a worker
            scheduler = BackgroundScheduler(
                executors={'default': ThreadPoolExecutor(self.max_concurrent_jobs * 2)},
                job_defaults={'coalesce': True, 'max_instances': 2},
                timezone=self.settings.timezone,
            )
        self._scheduler = scheduler

    # Lifecycle

    def initialize(self) -> int:
        """
        Schedule every enabled tenant config in the store and start the timers

        Returns:
            Number of jobs registered
        """
        logger.info("Initializing sync scheduler")
        configs = self.store.list_sync_configs(enabled_only=True)
        logger.info("Found %d tenants with sync enabled", len(configs))

        for config in configs:
            try:
                self.schedule_sync(config)
            except BudgetSyncError as e:
                logger.error("Failed to schedule sync for %s: %s", config.tenant_id, e)

        self.start()
        logger.info("Initialized %d scheduled jobs", len(self._jobs))
        return len(self._jobs)

    def start(self):
        if not self._scheduler.running:
            self._scheduler.start()

    def stop_all(self, grace_seconds: Optional[float] = None) -> List[str]:
        """
        Cancel all timers, then wait for in-flight runs to finish

        Args:
            grace_seconds: Longest wait (default: settings.shutdown_grace_seconds)

        Returns:
            Tenants still running when the grace period ran out
        """
        grace = self.settings.shutdown_grace_seconds if grace_seconds is None else grace_seconds

        with self._lock:
            logger.info("Stopping all %d jobs", len(self._jobs))
            for tenant_id in list(self._jobs):
                self._remove_timer(self._jobs.pop(tenant_id))
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)

        deadline = time.monotonic() + grace
        with self._idle:
            while self._running:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                logger.info("Waiting for %d jobs to complete", len(self._running))
                self._idle.wait(remaining)
            still_running = sorted(self._running)

        if still_running:
            logger.warning("%d jobs still running after %.0fs grace period: %s",
                           len(still_running), grace, ', '.join(still_running))
        logger.info("All jobs stopped")
        return still_running

    def schedule_staging_cleanup(self, staging_dir: str, older_than_days: int, cron: str = STAGING_CLEANUP_CRON):
        """Delete old staged downloads on a fixed schedule"""
        self._scheduler.add_job(
            cleanup_staging,
            CronTrigger.from_crontab(cron, timezone=self.settings.timezone),
            args=[staging_dir, older_than_days],
            id=STAGING_CLEANUP_JOB,
            name='Staging cleanup',
            replace_existing=True,
        )
        logger.info("Scheduled staging cleanup for %s (keep %d days)", staging_dir, older_than_days)

    # Job management

    def schedule_sync(self, config: SyncConfig):
        """Register (or replace) a tenant's job; manual cadence registers without a timer"""
        cron = cadence_to_cron(config.cadence)

        with self._lock:
            self.stop_sync(config.tenant_id)
            if not config.enabled:
                logger.info("Sync disabled for %s, not scheduling", config.tenant_id)
                return

            job = ScheduledJob(tenant_id=config.tenant_id, config=config)
            if cron is None:
                logger.info("Tenant %s is manual-only, no timer", config.tenant_id)
            else:
                job.job_id = f"budget-sync:{config.tenant_id}"
                self._scheduler.add_job(
                    self._execute_job,
                    CronTrigger.from_crontab(cron, timezone=self.settings.timezone),
                    args=[config.tenant_id, TRIGGER_SCHEDULE],
                    id=job.job_id,
                    name=f"Budget sync {config.tenant_id}",
                    replace_existing=True,
                )
                logger.info("Scheduled sync for %s (%s)", config.tenant_id, config.cadence)
            self._jobs[config.tenant_id] = job

    def stop_sync(self, tenant_id: str) -> bool:
        """Cancel a tenant's future ticks; an in-flight run is left to finish"""
        with self._lock:
            job = self._jobs.pop(tenant_id, None)
            if job is None:
                return False
            self._remove_timer(job)
        logger.info("Stopped sync for %s", tenant_id)
        return True

    def trigger_manual_sync(self, tenant_id: str) -> Optional[SyncRun]:
        """
        Run a tenant's sync now, in the calling thread

        Returns:
            The SyncRun, or None when the run was skipped (already running or at capacity)

        Raises:
            SchedulerError: tenant has no registered job
        """
        with self._lock:
            if tenant_id not in self._jobs:
                raise SchedulerError(f"No sync configuration found for {tenant_id}")
        logger.info("Manual sync triggered for %s", tenant_id)
        return self._execute_job(tenant_id, TRIGGER_MANUAL)

    def reconfigure(self, tenant_id: str, /, **changes) -> SyncConfig:
        """
        Change a tenant's sync config, persist it and reschedule

        Raises:
            SchedulerError: unknown tenant or unknown config field
        """
        unknown = set(changes) - RECONFIGURABLE
        if unknown:
            raise SchedulerError(f"Cannot reconfigure: {', '.join(sorted(unknown))}")

        with self._lock:
            job = self._jobs.get(tenant_id)
            current = job.config if job else self.store.get_sync_config(tenant_id)
        if current is None:
            raise SchedulerError(f"No sync configuration found for {tenant_id}")

        config = replace(current, **changes)
        cadence_to_cron(config.cadence)
        self.store.save_sync_config(config)
        self.schedule_sync(config)
        return config

    def enable_sync(self, tenant_id: str) -> SyncConfig:
        return self.reconfigure(tenant_id, enabled=True)

    def disable_sync(self, tenant_id: str) -> SyncConfig:
        return self.reconfigure(tenant_id, enabled=False)

    # Status

    def get_sync_status(self, tenant_id: str) -> Dict[str, Any]:
        with self._lock:
            job = self._jobs.get(tenant_id)
            if job is None:
                return {'scheduled': False}
            return self._describe(job)

    def get_all_jobs(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [self._describe(job) for job in self._jobs.values()]

    @property
    def running_tenants(self) -> List[str]:
        with self._lock:
            return sorted(self._running)

    def _describe(self, job: ScheduledJob) -> Dict[str, Any]:
        return {
            'tenant_id': job.tenant_id,
            'scheduled': True,
            'cadence': job.config.cadence,
            'status': job.status,
            'last_run': job.last_run,
            'next_run': self._next_run(job),
            'last_result': job.last_result,
            'last_error': job.last_error,
        }

    def _next_run(self, job: ScheduledJob) -> Optional[datetime]:
        if job.job_id is None:
            return None
        scheduled = self._scheduler.get_job(job.job_id)
        return getattr(scheduled, 'next_run_time', None) if scheduled else None

    def _remove_timer(self, job: ScheduledJob):
        if job.job_id is None:
            return
        try:
            self._scheduler.remove_job(job.job_id)
        except JobLookupError:
            pass

    # Execution

    def _execute_job(self, tenant_id: str, triggered_by: str) -> Optional[SyncRun]:
        with self._lock:
            job = self._jobs.get(tenant_id)
            if job is None:
                logger.error("Job not found for %s", tenant_id)
                return None
            if tenant_id in self._running:
                logger.info("Sync already running for %s, skipping", tenant_id)
                return None
            if len(self._running) >= self.max_concurrent_jobs:
                logger.info("Max concurrent jobs reached (%d), skipping %s",
                            self.max_concurrent_jobs, tenant_id)
                return None
            self._running.add(tenant_id)
            job.status = JOB_RUNNING
            job.last_run = utcnow()
            config = job.config

        logger.info("Starting sync for %s", tenant_id)
        run = None
        try:
            run = self._run_with_retry(config, triggered_by)
            job.status = JOB_IDLE
            job.last_result = run.status
            job.last_error = None
            logger.info("Sync completed for %s: %s", tenant_id, run.status)
        except Exception as e:
            logger.exception("Sync failed for %s", tenant_id)
            job.status = JOB_ERROR
            job.last_result = STATUS_FAILED
            job.last_error = str(e)
            self._notify('notify_failure', tenant_id, e)
        finally:
            with self._idle:
                self._running.discard(tenant_id)
                self._idle.notify_all()

        if run is not None:
            if run.status == STATUS_FAILED:
                self._notify('notify_failure', tenant_id, run)
            elif run.status == STATUS_PARTIAL:
                self._notify('notify_partial', tenant_id, run)
        return run

    def _run_with_retry(self, config: SyncConfig, triggered_by: str) -> SyncRun:
        max_retries = self.settings.max_retries
        attempt = 0
        while True:
            try:
                run = self.orchestrator.execute_file_sync(config, triggered_by=triggered_by)
            except PersistenceUnavailable:
                if attempt >= max_retries:
                    raise
                reason = 'ledger unavailable'
            else:
                if not run.transient or attempt >= max_retries:
                    return run
                reason = run.errors[-1].get('error', 'transient error') if run.errors else 'transient error'

            delay = self.settings.retry_base_delay * 2 ** attempt
            attempt += 1
            logger.warning("Sync for %s failed (%s); retry %d/%d in %.0fs",
                           config.tenant_id, reason, attempt, max_retries, delay)
            self._sleep(delay)

    def _notify(self, method: str, tenant_id: str, detail):
        try:
            getattr(self.notifier, method)(tenant_id, detail)
        except Exception:
            logger.exception("Notification hook failed for %s", tenant_id)
