"""
Budget reconciliation

Brings a tenant's ledger in line with one source snapshot: creates new keys,
updates changed amounts, revives keys that reappear and soft-deletes keys that
are gone. One import is one transaction; each record gets its own savepoint so
a bad record is reported without undoing the others.
"""
import logging
from decimal import Decimal
from typing import Any, Dict, Iterable, Optional, Sequence

from .errors import PersistenceUnavailable, ReconciliationError
from .models import (
    SYNC_CREATE,
    SYNC_REVIVE,
    SYNC_SOFT_DELETE,
    SYNC_UPDATE,
    AuditLogEntry,
    Budget,
    BudgetRecord,
    ImportResult,
    NaturalKey,
    utcnow,
)

logger = logging.getLogger(__name__)

CHANGED_BY = 'budget-sync'


def _budget_value(budget: Budget) -> Dict[str, Any]:
    return {
        'budgetedAmount': str(budget.budgeted_amount),
        'currency': budget.currency,
        'deletedAt': budget.deleted_at.isoformat() if budget.deleted_at else None,
    }


def check_record_shape(record: BudgetRecord) -> Optional[str]:
    """Reason the record cannot be imported, or None"""
    department, _, fiscal_period = record.key
    if not department:
        return 'Department is empty'
    if not fiscal_period:
        return 'Fiscal period is empty'
    amount = record.budgeted_amount
    if not isinstance(amount, Decimal) or not amount.is_finite():
        return f"Budgeted amount is not a finite number: {amount}"
    if not record.currency:
        return 'Currency is empty'
    return None


class BudgetImporter:
    """Applies budget records to the ledger through a LedgerStore"""

    def __init__(self, store):
        self.store = store

    def import_budgets(self,
                       tenant_id: str,
                       records: Sequence[BudgetRecord],
                       metadata: Optional[Dict[str, Any]] = None,
                       soft_delete_missing: bool = True,
                       protected_keys: Iterable[NaturalKey] = ()) -> ImportResult:
        """
        Reconcile the tenant's ledger against a full source snapshot

        Args:
            tenant_id: Tenant whose ledger is reconciled
            records: Every budget in the snapshot
            metadata: Run context (sync_id, source_type) recorded in audit reasons
            soft_delete_missing: Soft-delete ledger budgets absent from the snapshot
            protected_keys: Keys of source rows that were rejected before import;
                their budgets are kept as they are instead of being soft-deleted

        Returns:
            ImportResult with created/updated/unchanged/soft_deleted counts and
            per-record errors

        Raises:
            PersistenceUnavailable: the ledger cannot be reached; nothing is applied
        """
        metadata = metadata or {}
        reason = self._reason(metadata)
        result = ImportResult()
        seen = set(protected_keys)

        with self.store.transaction():
            existing = {b.key: b for b in self.store.list_budgets(tenant_id, include_deleted=True)}

            for record in records:
                seen.add(record.key)
                problem = check_record_shape(record)
                if problem:
                    result.errors.append(ReconciliationError(problem, record.to_dict()).to_dict())
                    continue

                try:
                    with self.store.savepoint():
                        outcome = self._apply(tenant_id, record, existing, reason)
                except PersistenceUnavailable:
                    raise
                except Exception as e:
                    logger.warning("Failed to import %s: %s", record.key, e)
                    result.errors.append(
                        ReconciliationError(f"Failed to import record: {e}", record.to_dict()).to_dict()
                    )
                    continue

                if outcome == SYNC_CREATE:
                    result.created += 1
                elif outcome in (SYNC_UPDATE, SYNC_REVIVE):
                    result.updated += 1
                else:
                    result.unchanged += 1

            if soft_delete_missing:
                for key, budget in existing.items():
                    if key in seen or budget.is_deleted:
                        continue
                    try:
                        with self.store.savepoint():
                            self._soft_delete(tenant_id, budget, reason)
                    except PersistenceUnavailable:
                        raise
                    except Exception as e:
                        logger.warning("Failed to soft-delete %s: %s", key, e)
                        result.errors.append(ReconciliationError(
                            f"Failed to soft-delete budget: {e}",
                            {'budgetId': budget.budget_id, 'key': list(key)},
                        ).to_dict())
                        continue
                    result.soft_deleted += 1

        if result.soft_deleted:
            logger.warning("Soft-deleted %d budgets for tenant %s absent from the source file",
                           result.soft_deleted, tenant_id)
        logger.info(
            "Import for tenant %s: %d created, %d updated, %d unchanged, %d soft-deleted, %d errors",
            tenant_id, result.created, result.updated, result.unchanged,
            result.soft_deleted, len(result.errors),
        )
        return result

    @staticmethod
    def _reason(metadata: Dict[str, Any]) -> str:
        parts = ['Budget sync']
        if metadata.get('sync_id'):
            parts.append(metadata['sync_id'])
        if metadata.get('source_type'):
            parts.append(f"from {metadata['source_type']}")
        if metadata.get('file_name'):
            parts.append(f"({metadata['file_name']})")
        return ' '.join(parts)

    def _apply(self, tenant_id: str, record: BudgetRecord,
               existing: Dict[tuple, Budget], reason: str) -> str:
        """Write one record; returns the audit action taken, or '' when unchanged"""
        budget = existing.get(record.key)

        if budget is None:
            created = self.store.create_budget(tenant_id, record)
            self._audit(tenant_id, created, SYNC_CREATE, None, _budget_value(created), reason)
            existing[record.key] = created
            return SYNC_CREATE

        if budget.is_deleted:
            revived = self.store.update_budget(
                budget.budget_id,
                budgeted_amount=record.budgeted_amount,
                currency=record.currency,
                deleted_at=None,
            )
            self._audit(tenant_id, revived, SYNC_REVIVE, _budget_value(budget), _budget_value(revived), reason)
            existing[record.key] = revived
            return SYNC_REVIVE

        if budget.budgeted_amount == record.budgeted_amount and budget.currency == record.currency:
            return ''

        updated = self.store.update_budget(
            budget.budget_id,
            budgeted_amount=record.budgeted_amount,
            currency=record.currency,
        )
        self._audit(tenant_id, updated, SYNC_UPDATE, _budget_value(budget), _budget_value(updated), reason)
        existing[record.key] = updated
        return SYNC_UPDATE

    def _soft_delete(self, tenant_id: str, budget: Budget, reason: str):
        deleted = self.store.update_budget(budget.budget_id, deleted_at=utcnow())
        self._audit(tenant_id, deleted, SYNC_SOFT_DELETE, _budget_value(budget), _budget_value(deleted),
                    f"{reason}: not present in source file")

    def _audit(self, tenant_id: str, budget: Budget, action: str,
               old_value: Optional[Dict[str, Any]], new_value: Dict[str, Any], reason: str):
        self.store.append_audit(AuditLogEntry(
            tenant_id=tenant_id,
            budget_id=budget.budget_id,
            action=action,
            old_value=old_value,
            new_value=new_value,
            changed_by=CHANGED_BY,
            reason=reason,
        ))
