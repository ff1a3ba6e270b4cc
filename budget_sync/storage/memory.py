"""
In-memory ledger store

Thread-safe dictionary-backed LedgerStore. Transactions snapshot the whole
state and restore it on failure, which is plenty for tests, dry runs and
single-process demos.
"""
import copy
import itertools
import threading
import uuid
from contextlib import contextmanager
from dataclasses import replace
from decimal import Decimal
from typing import Dict, List, Optional

from ..core.models import (
    STATUS_SUCCESS,
    AuditLogEntry,
    Budget,
    BudgetRecord,
    BudgetUtilization,
    SyncConfig,
    SyncRun,
    utcnow,
)
from .base import LedgerStore, check_changes


class InMemoryLedgerStore(LedgerStore):

    def __init__(self):
        self._lock = threading.RLock()
        self._budgets: Dict[str, Budget] = {}
        self._utilization: Dict[str, BudgetUtilization] = {}
        self._audit: List[AuditLogEntry] = []
        self._runs: List[SyncRun] = []
        self._configs: Dict[str, SyncConfig] = {}
        self._audit_ids = itertools.count(1)

    def _snapshot(self):
        return copy.deepcopy((self._budgets, self._utilization, self._audit, self._runs, self._configs))

    def _restore(self, snapshot):
        self._budgets, self._utilization, self._audit, self._runs, self._configs = snapshot

    @contextmanager
    def transaction(self):
        with self._lock:
            snapshot = self._snapshot()
            try:
                yield
            except BaseException:
                self._restore(snapshot)
                raise

    savepoint = transaction

    def list_budgets(self, tenant_id: str, include_deleted: bool = True) -> List[Budget]:
        with self._lock:
            return [copy.copy(b) for b in self._budgets.values()
                    if b.tenant_id == tenant_id and (include_deleted or not b.is_deleted)]

    def get_budget(self, budget_id: str) -> Optional[Budget]:
        with self._lock:
            budget = self._budgets.get(budget_id)
            return copy.copy(budget) if budget else None

    def create_budget(self, tenant_id: str, record: BudgetRecord) -> Budget:
        with self._lock:
            department, sub_category, fiscal_period = record.key
            for existing in self._budgets.values():
                if existing.tenant_id == tenant_id and existing.key == record.key:
                    raise ValueError(f"Budget already exists for {record.key}")
            now = utcnow()
            budget = Budget(
                budget_id=uuid.uuid4().hex,
                tenant_id=tenant_id,
                department=department,
                sub_category=sub_category,
                fiscal_period=fiscal_period,
                budgeted_amount=record.budgeted_amount,
                currency=record.currency,
                created_at=now,
                updated_at=now,
            )
            self._budgets[budget.budget_id] = budget
            self._utilization[budget.budget_id] = BudgetUtilization(budget.budget_id)
            return copy.copy(budget)

    def update_budget(self, budget_id: str, **changes) -> Budget:
        check_changes(changes)
        with self._lock:
            budget = self._budgets.get(budget_id)
            if budget is None:
                raise KeyError(f"Budget not found: {budget_id}")
            updated = replace(budget, updated_at=utcnow(), **changes)
            self._budgets[budget_id] = updated
            return copy.copy(updated)

    def get_utilization(self, budget_id: str) -> Optional[BudgetUtilization]:
        with self._lock:
            utilization = self._utilization.get(budget_id)
            return copy.copy(utilization) if utilization else None

    def set_utilization(self, budget_id: str, committed: Decimal, reserved: Decimal):
        """Stand-in for the approval workflow that owns utilization"""
        with self._lock:
            self._utilization[budget_id] = BudgetUtilization(budget_id, committed, reserved)

    def append_audit(self, entry: AuditLogEntry) -> AuditLogEntry:
        with self._lock:
            stored = replace(entry, entry_id=next(self._audit_ids))
            self._audit.append(stored)
            return stored

    def list_audit(self, tenant_id: str, budget_id: Optional[str] = None) -> List[AuditLogEntry]:
        with self._lock:
            return [e for e in self._audit
                    if e.tenant_id == tenant_id and (budget_id is None or e.budget_id == budget_id)]

    def save_sync_run(self, run: SyncRun) -> SyncRun:
        with self._lock:
            self._runs.append(copy.deepcopy(run))
            return run

    def list_sync_runs(self, tenant_id: str) -> List[SyncRun]:
        with self._lock:
            runs = [r for r in self._runs if r.tenant_id == tenant_id]
            return sorted(runs, key=lambda r: r.start_time, reverse=True)

    def get_last_successful_sync(self, tenant_id: str) -> Optional[SyncRun]:
        for run in self.list_sync_runs(tenant_id):
            if run.status == STATUS_SUCCESS:
                return run
        return None

    def save_sync_config(self, config: SyncConfig) -> SyncConfig:
        with self._lock:
            self._configs[config.tenant_id] = copy.deepcopy(config)
            return config

    def list_sync_configs(self, enabled_only: bool = True) -> List[SyncConfig]:
        with self._lock:
            return [copy.deepcopy(c) for c in self._configs.values() if c.enabled or not enabled_only]
