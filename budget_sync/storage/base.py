"""
Ledger store interface

The persistence collaborator the sync engine talks to. Implementations own
Budgets (with their 1:1 utilization rows), the audit log, sync run history and
tenant sync configs.
"""
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Iterator, List, Optional

from ..core.models import (
    AuditLogEntry,
    Budget,
    BudgetRecord,
    BudgetUtilization,
    SyncConfig,
    SyncRun,
)

# Columns the importer is allowed to change on an existing budget
UPDATABLE_FIELDS = ('budgeted_amount', 'currency', 'deleted_at')


class LedgerStore(ABC):
    """Abstract ledger persistence"""

    @abstractmethod
    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Unit of work: everything inside commits together or not at all"""

    @abstractmethod
    @contextmanager
    def savepoint(self) -> Iterator[None]:
        """Nested unit of work inside a transaction; failure undoes only this block"""

    @abstractmethod
    def list_budgets(self, tenant_id: str, include_deleted: bool = True) -> List[Budget]:
        ...

    @abstractmethod
    def get_budget(self, budget_id: str) -> Optional[Budget]:
        ...

    @abstractmethod
    def create_budget(self, tenant_id: str, record: BudgetRecord) -> Budget:
        """Insert a budget together with a zeroed utilization row"""

    @abstractmethod
    def update_budget(self, budget_id: str, **changes) -> Budget:
        """Change budgeted_amount, currency and/or deleted_at"""

    @abstractmethod
    def get_utilization(self, budget_id: str) -> Optional[BudgetUtilization]:
        ...

    @abstractmethod
    def append_audit(self, entry: AuditLogEntry) -> AuditLogEntry:
        ...

    @abstractmethod
    def list_audit(self, tenant_id: str, budget_id: Optional[str] = None) -> List[AuditLogEntry]:
        ...

    @abstractmethod
    def save_sync_run(self, run: SyncRun) -> SyncRun:
        ...

    @abstractmethod
    def list_sync_runs(self, tenant_id: str) -> List[SyncRun]:
        """Runs for a tenant, newest first"""

    @abstractmethod
    def get_last_successful_sync(self, tenant_id: str) -> Optional[SyncRun]:
        ...

    @abstractmethod
    def save_sync_config(self, config: SyncConfig) -> SyncConfig:
        ...

    @abstractmethod
    def list_sync_configs(self, enabled_only: bool = True) -> List[SyncConfig]:
        ...

    def get_sync_config(self, tenant_id: str) -> Optional[SyncConfig]:
        for config in self.list_sync_configs(enabled_only=False):
            if config.tenant_id == tenant_id:
                return config
        return None


def check_changes(changes: dict):
    unknown = set(changes) - set(UPDATABLE_FIELDS)
    if unknown:
        raise ValueError(f"Budget fields not updatable by sync: {', '.join(sorted(unknown))}")
    amount = changes.get('budgeted_amount')
    if amount is not None and not isinstance(amount, Decimal):
        raise TypeError('budgeted_amount must be a Decimal')
    deleted_at = changes.get('deleted_at')
    if deleted_at is not None and not isinstance(deleted_at, datetime):
        raise TypeError('deleted_at must be a datetime or None')
