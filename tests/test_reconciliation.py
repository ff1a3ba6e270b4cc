"""Tests for ledger reconciliation"""
from decimal import Decimal

import pytest

from budget_sync.core.errors import PersistenceUnavailable
from budget_sync.core.models import SYNC_CREATE, SYNC_REVIVE, SYNC_SOFT_DELETE, SYNC_UPDATE
from budget_sync.core.reconciliation import BudgetImporter
from budget_sync.storage.memory import InMemoryLedgerStore

from .conftest import record


@pytest.fixture
def importer(store):
    return BudgetImporter(store)


def budgets_by_department(store, tenant_id='acme'):
    return {b.department: b for b in store.list_budgets(tenant_id)}


def test_first_sync_creates_budget(importer, store):
    result = importer.import_budgets('acme', [record('Engineering', 500000)])

    assert (result.created, result.updated, result.unchanged, result.soft_deleted) == (1, 0, 0, 0)
    budget = budgets_by_department(store)['Engineering']
    assert budget.budgeted_amount == Decimal('500000')
    assert budget.sub_category is None

    utilization = store.get_utilization(budget.budget_id)
    assert utilization.committed_amount == 0
    assert utilization.reserved_amount == 0

    audit = store.list_audit('acme', budget.budget_id)
    assert [e.action for e in audit] == [SYNC_CREATE]


def test_changed_amount_updates_and_audits(importer, store):
    importer.import_budgets('acme', [record('Engineering', 500000)])
    result = importer.import_budgets('acme', [record('Engineering', 600000)],
                                     metadata={'sync_id': 'sync_2', 'source_type': 'sftp'})

    assert (result.created, result.updated, result.unchanged) == (0, 1, 0)
    budget = budgets_by_department(store)['Engineering']
    assert budget.budgeted_amount == Decimal('600000')

    update = store.list_audit('acme', budget.budget_id)[-1]
    assert update.action == SYNC_UPDATE
    assert update.old_value['budgetedAmount'] == '500000'
    assert update.new_value['budgetedAmount'] == '600000'
    assert 'sync_2' in update.reason


def test_currency_change_is_an_update(importer, store):
    importer.import_budgets('acme', [record('Sales', 100)])
    result = importer.import_budgets('acme', [record('Sales', 100, currency='EUR')])

    assert result.updated == 1
    assert budgets_by_department(store)['Sales'].currency == 'EUR'


def test_import_is_idempotent(importer, store):
    records = [
        record('Engineering', 500000, sub_category='Software'),
        record('Engineering', 200000),
        record('Sales', '250000.50', fiscal_period='FY2026'),
    ]
    first = importer.import_budgets('acme', records)
    audit_count = len(store.list_audit('acme'))
    second = importer.import_budgets('acme', records)

    assert first.created == 3
    assert (second.created, second.updated, second.soft_deleted) == (0, 0, 0)
    assert second.unchanged == len(records)
    assert len(store.list_audit('acme')) == audit_count


def test_absent_key_is_soft_deleted_then_revived(importer, store):
    importer.import_budgets('acme', [record('Engineering', 500000), record('Sales', 300000)])

    result = importer.import_budgets('acme', [record('Engineering', 500000)])
    assert result.soft_deleted == 1
    assert result.unchanged == 1
    sales = budgets_by_department(store)['Sales']
    assert sales.is_deleted

    again = importer.import_budgets('acme', [record('Engineering', 500000)])
    assert again.soft_deleted == 0

    revived = importer.import_budgets('acme', [record('Engineering', 500000), record('Sales', 350000)])
    assert revived.updated == 1
    assert revived.created == 0
    sales = budgets_by_department(store)['Sales']
    assert sales.deleted_at is None
    assert sales.budgeted_amount == Decimal('350000')

    actions = [e.action for e in store.list_audit('acme', sales.budget_id)]
    assert actions == [SYNC_CREATE, SYNC_SOFT_DELETE, SYNC_REVIVE]


def test_manually_created_budgets_are_soft_deleted(importer, store):
    store.create_budget('acme', record('Legal', 1000))
    result = importer.import_budgets('acme', [record('Engineering', 500000)])

    assert result.soft_deleted == 1
    assert budgets_by_department(store)['Legal'].is_deleted


def test_soft_delete_can_be_turned_off(importer, store):
    importer.import_budgets('acme', [record('Engineering', 1), record('Sales', 2)])
    result = importer.import_budgets('acme', [record('Engineering', 1)], soft_delete_missing=False)

    assert result.soft_deleted == 0
    assert not budgets_by_department(store)['Sales'].is_deleted


def test_protected_keys_are_not_soft_deleted(importer, store):
    importer.import_budgets('acme', [record('Engineering', 1), record('Sales', 2), record('Legal', 3)])
    result = importer.import_budgets('acme', [record('Engineering', 1)],
                                     protected_keys=[record('Sales', 0).key])

    assert result.soft_deleted == 1
    ledger = budgets_by_department(store)
    assert not ledger['Sales'].is_deleted
    assert ledger['Sales'].budgeted_amount == Decimal('2')
    assert ledger['Legal'].is_deleted


def test_utilization_is_never_touched(importer, store):
    importer.import_budgets('acme', [record('Engineering', 500000), record('Sales', 1000)])
    budgets = budgets_by_department(store)
    for budget in budgets.values():
        store.set_utilization(budget.budget_id, Decimal('1234.56'), Decimal('78.90'))

    importer.import_budgets('acme', [record('Engineering', 900000)])
    importer.import_budgets('acme', [record('Engineering', 900000), record('Sales', 5)])

    for budget in budgets.values():
        utilization = store.get_utilization(budget.budget_id)
        assert utilization.committed_amount == Decimal('1234.56')
        assert utilization.reserved_amount == Decimal('78.90')


def test_sub_category_is_part_of_the_key(importer, store):
    result = importer.import_budgets('acme', [
        record('Engineering', 100, sub_category='Software'),
        record('Engineering', 200, sub_category='Hardware'),
        record('Engineering', 300),
    ])
    assert result.created == 3


def test_tenants_are_isolated(importer, store):
    importer.import_budgets('acme', [record('Engineering', 1)])
    result = importer.import_budgets('globex', [record('Sales', 1)])

    assert result.soft_deleted == 0
    assert not budgets_by_department(store, 'acme')['Engineering'].is_deleted


def test_malformed_record_is_reported_and_still_counts_as_seen(importer, store):
    importer.import_budgets('acme', [record('Engineering', 1), record('Sales', 2)])
    result = importer.import_budgets('acme', [
        record('Engineering', 1),
        record('Sales', 'NaN'),
        record('', 5),
    ])

    assert len(result.errors) == 2
    assert result.errors[0]['code'] == 'RECONCILIATION_ERROR'
    assert result.errors[0]['record']['department'] == 'Sales'
    assert result.unchanged == 1
    assert result.soft_deleted == 0
    assert budgets_by_department(store)['Sales'].budgeted_amount == Decimal('2')


class FlakyStore(InMemoryLedgerStore):
    """Fails to create budgets for selected departments"""

    def __init__(self, failing=(), unavailable=()):
        super().__init__()
        self.failing = set(failing)
        self.unavailable = set(unavailable)

    def create_budget(self, tenant_id, record):
        if record.department in self.unavailable:
            raise PersistenceUnavailable('connection lost')
        budget = super().create_budget(tenant_id, record)
        if record.department in self.failing:
            raise ValueError('constraint violated')
        return budget


def test_failing_record_is_collected_without_losing_the_batch():
    store = FlakyStore(failing={'Broken'})
    result = BudgetImporter(store).import_budgets('acme', [
        record('Engineering', 1),
        record('Broken', 2),
        record('Sales', 3),
    ])

    assert result.created == 2
    assert len(result.errors) == 1
    assert 'constraint violated' in result.errors[0]['error']
    assert set(budgets_by_department(store)) == {'Engineering', 'Sales'}
    assert len(store.list_audit('acme')) == 2


def test_lost_ledger_rolls_back_the_whole_batch():
    store = FlakyStore(unavailable={'Sales'})
    importer = BudgetImporter(store)

    with pytest.raises(PersistenceUnavailable):
        importer.import_budgets('acme', [record('Engineering', 1), record('Sales', 2)])

    assert store.list_budgets('acme') == []
    assert store.list_audit('acme') == []
