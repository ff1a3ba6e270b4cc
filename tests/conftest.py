"""Shared fixtures for the budget sync tests"""
import csv
import os
import time
from decimal import Decimal

import pytest

from budget_sync.core.models import BudgetRecord, SyncConfig
from budget_sync.core.orchestrator import FileSyncOrchestrator
from budget_sync.storage.memory import InMemoryLedgerStore


KNOWN_DEPARTMENTS = ['Engineering', 'Sales', 'Marketing', 'Finance']


def write_csv(path, rows, mtime=None):
    """Write rows (first row = headers) to a CSV file, optionally backdating/forwarding its mtime"""
    with open(path, 'w', newline='', encoding='utf-8') as f:
        csv.writer(f).writerows(rows)
    if mtime is not None:
        os.utime(path, (mtime, mtime))
    return str(path)


def record(department, amount, fiscal_period='FY2025', sub_category=None, currency='USD'):
    return BudgetRecord(
        department=department,
        sub_category=sub_category,
        fiscal_period=fiscal_period,
        budgeted_amount=Decimal(str(amount)),
        currency=currency,
    )


@pytest.fixture
def store():
    return InMemoryLedgerStore()


@pytest.fixture
def upload_dir(tmp_path):
    path = tmp_path / 'uploads'
    path.mkdir()
    return path


@pytest.fixture
def staging_dir(tmp_path):
    return str(tmp_path / 'staging')


@pytest.fixture
def upload_config(upload_dir):
    return SyncConfig(
        tenant_id='acme',
        source_type='upload',
        source_config={'local_path': str(upload_dir)},
        known_departments=list(KNOWN_DEPARTMENTS),
    )


@pytest.fixture
def orchestrator(store, staging_dir):
    return FileSyncOrchestrator(store, staging_dir=staging_dir)


@pytest.fixture
def future():
    """An mtime safely after any checkpoint written during the test"""
    return time.time() + 3600
