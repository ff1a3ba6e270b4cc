"""
PostgreSQL ledger store

LedgerStore backed by the tables in db/schema.sql. A single connection is
shared behind a lock; nested transaction() / savepoint() calls become
SAVEPOINTs so one bad record can be rolled back without losing the batch.
"""
import json
import logging
import threading
import uuid
from contextlib import contextmanager
from decimal import Decimal
from typing import List, Optional

import psycopg2
from psycopg2.extras import Json, RealDictCursor

from ..core.errors import PersistenceUnavailable
from ..core.models import (
    STATUS_SUCCESS,
    AuditLogEntry,
    Budget,
    BudgetRecord,
    BudgetUtilization,
    SyncConfig,
    SyncRun,
    SyncStats,
    utcnow,
)
from ..utils.db_connection import get_db_connection
from .base import LedgerStore, check_changes

logger = logging.getLogger(__name__)

# Errors that mean the database is unreachable rather than the data being bad
CONNECTION_ERRORS = (psycopg2.OperationalError, psycopg2.InterfaceError)


def _json(value):
    return Json(value, dumps=lambda o: json.dumps(o, default=str))


class PostgresLedgerStore(LedgerStore):

    def __init__(self, conn=None):
        """
        Args:
            conn: Open psycopg2 connection (default: get_db_connection())
        """
        self._conn = conn
        self._lock = threading.RLock()
        self._depth = 0
        self._savepoints = 0

    @property
    def conn(self):
        if self._conn is None or self._conn.closed:
            try:
                self._conn = get_db_connection()
            except CONNECTION_ERRORS as e:
                raise PersistenceUnavailable(f"Cannot connect to ledger database: {e}") from e
        return self._conn

    def close(self):
        if self._conn is not None and not self._conn.closed:
            self._conn.close()

    @contextmanager
    def transaction(self):
        with self._lock:
            if self._depth > 0:
                with self.savepoint():
                    yield
                return
            conn = self.conn
            self._depth += 1
            try:
                yield
                conn.commit()
            except CONNECTION_ERRORS as e:
                self._safe_rollback()
                raise PersistenceUnavailable(str(e)) from e
            except BaseException:
                self._safe_rollback()
                raise
            finally:
                self._depth -= 1

    @contextmanager
    def savepoint(self):
        with self._lock:
            if self._depth == 0:
                with self.transaction():
                    yield
                return
            self._savepoints += 1
            name = f"sp_{self._savepoints}"
            self._execute(f"SAVEPOINT {name}")
            try:
                yield
            except CONNECTION_ERRORS:
                raise
            except BaseException:
                self._execute(f"ROLLBACK TO SAVEPOINT {name}")
                raise
            else:
                self._execute(f"RELEASE SAVEPOINT {name}")

    def _safe_rollback(self):
        try:
            self.conn.rollback()
        except CONNECTION_ERRORS:
            logger.warning('Rollback failed; connection already lost')

    def _execute(self, sql: str, params=None, fetch: Optional[str] = None):
        """
        Run one statement.

        Args:
            fetch: None, 'one' or 'all'

        Outside a transaction the statement is committed immediately.
        """
        with self._lock:
            conn = self.conn
            try:
                with conn.cursor(cursor_factory=RealDictCursor) as cursor:
                    cursor.execute(sql, params)
                    if fetch == 'one':
                        result = cursor.fetchone()
                    elif fetch == 'all':
                        result = cursor.fetchall()
                    else:
                        result = None
                if self._depth == 0:
                    conn.commit()
                return result
            except CONNECTION_ERRORS as e:
                raise PersistenceUnavailable(str(e)) from e
            except psycopg2.Error:
                if self._depth == 0:
                    conn.rollback()
                raise

    # Budgets

    @staticmethod
    def _budget(row) -> Budget:
        return Budget(
            budget_id=row['budget_id'],
            tenant_id=row['tenant_id'],
            department=row['department'],
            sub_category=row['sub_category'],
            fiscal_period=row['fiscal_period'],
            budgeted_amount=Decimal(row['budgeted_amount']),
            currency=row['currency'],
            created_at=row['created_at'],
            updated_at=row['updated_at'],
            deleted_at=row['deleted_at'],
        )

    def list_budgets(self, tenant_id: str, include_deleted: bool = True) -> List[Budget]:
        sql = "SELECT * FROM budgets WHERE tenant_id = %s"
        if not include_deleted:
            sql += " AND deleted_at IS NULL"
        rows = self._execute(sql + " ORDER BY department, sub_category, fiscal_period",
                             (tenant_id,), fetch='all')
        return [self._budget(r) for r in rows]

    def get_budget(self, budget_id: str) -> Optional[Budget]:
        row = self._execute("SELECT * FROM budgets WHERE budget_id = %s", (budget_id,), fetch='one')
        return self._budget(row) if row else None

    def create_budget(self, tenant_id: str, record: BudgetRecord) -> Budget:
        department, sub_category, fiscal_period = record.key
        now = utcnow()
        with self.transaction():
            row = self._execute(
                """
                INSERT INTO budgets (
                    budget_id, tenant_id, department, sub_category, fiscal_period,
                    budgeted_amount, currency, created_at, updated_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (uuid.uuid4().hex, tenant_id, department, sub_category, fiscal_period,
                 record.budgeted_amount, record.currency, now, now),
                fetch='one',
            )
            self._execute(
                "INSERT INTO budget_utilization (budget_id) VALUES (%s)",
                (row['budget_id'],),
            )
        return self._budget(row)

    def update_budget(self, budget_id: str, **changes) -> Budget:
        check_changes(changes)
        assignments = ', '.join(f"{column} = %s" for column in changes)
        params = list(changes.values()) + [utcnow(), budget_id]
        row = self._execute(
            f"UPDATE budgets SET {assignments}, updated_at = %s WHERE budget_id = %s RETURNING *",
            params,
            fetch='one',
        )
        if row is None:
            raise KeyError(f"Budget not found: {budget_id}")
        return self._budget(row)

    def get_utilization(self, budget_id: str) -> Optional[BudgetUtilization]:
        row = self._execute(
            "SELECT * FROM budget_utilization WHERE budget_id = %s", (budget_id,), fetch='one'
        )
        if row is None:
            return None
        return BudgetUtilization(
            budget_id=row['budget_id'],
            committed_amount=Decimal(row['committed_amount']),
            reserved_amount=Decimal(row['reserved_amount']),
        )

    # Audit log

    def append_audit(self, entry: AuditLogEntry) -> AuditLogEntry:
        row = self._execute(
            """
            INSERT INTO budget_audit_log (
                tenant_id, budget_id, action, old_value, new_value, changed_by, reason, created_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING entry_id
            """,
            (entry.tenant_id, entry.budget_id, entry.action, _json(entry.old_value),
             _json(entry.new_value), entry.changed_by, entry.reason, entry.timestamp),
            fetch='one',
        )
        entry.entry_id = row['entry_id']
        return entry

    def list_audit(self, tenant_id: str, budget_id: Optional[str] = None) -> List[AuditLogEntry]:
        sql = "SELECT * FROM budget_audit_log WHERE tenant_id = %s"
        params = [tenant_id]
        if budget_id is not None:
            sql += " AND budget_id = %s"
            params.append(budget_id)
        rows = self._execute(sql + " ORDER BY entry_id", params, fetch='all')
        return [
            AuditLogEntry(
                tenant_id=r['tenant_id'],
                budget_id=r['budget_id'],
                action=r['action'],
                old_value=r['old_value'],
                new_value=r['new_value'],
                changed_by=r['changed_by'],
                reason=r['reason'],
                timestamp=r['created_at'],
                entry_id=r['entry_id'],
            )
            for r in rows
        ]

    # Sync runs

    def save_sync_run(self, run: SyncRun) -> SyncRun:
        stats = run.stats
        self._execute(
            """
            INSERT INTO sync_runs (
                sync_id, tenant_id, status, start_time, end_time, duration_ms,
                total_rows, created_count, updated_count, unchanged_count,
                soft_deleted_count, error_count, errors, source_type, triggered_by,
                metadata, transient
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (run.sync_id, run.tenant_id, run.status, run.start_time, run.end_time, run.duration_ms,
             stats.total, stats.created, stats.updated, stats.unchanged, stats.soft_deleted,
             stats.errors, _json(run.errors), run.source_type, run.triggered_by,
             _json(run.metadata), run.transient),
        )
        return run

    @staticmethod
    def _sync_run(row) -> SyncRun:
        return SyncRun(
            sync_id=row['sync_id'],
            tenant_id=row['tenant_id'],
            status=row['status'],
            start_time=row['start_time'],
            end_time=row['end_time'],
            source_type=row['source_type'],
            triggered_by=row['triggered_by'],
            stats=SyncStats(
                total=row['total_rows'],
                created=row['created_count'],
                updated=row['updated_count'],
                unchanged=row['unchanged_count'],
                soft_deleted=row['soft_deleted_count'],
                errors=row['error_count'],
            ),
            errors=row['errors'] or [],
            metadata=row['metadata'] or {},
            duration_ms=row['duration_ms'],
            transient=row['transient'],
        )

    def list_sync_runs(self, tenant_id: str) -> List[SyncRun]:
        rows = self._execute(
            "SELECT * FROM sync_runs WHERE tenant_id = %s ORDER BY start_time DESC",
            (tenant_id,), fetch='all',
        )
        return [self._sync_run(r) for r in rows]

    def get_last_successful_sync(self, tenant_id: str) -> Optional[SyncRun]:
        row = self._execute(
            """
            SELECT * FROM sync_runs
            WHERE tenant_id = %s AND status = %s
            ORDER BY start_time DESC LIMIT 1
            """,
            (tenant_id, STATUS_SUCCESS), fetch='one',
        )
        return self._sync_run(row) if row else None

    # Sync configs

    def save_sync_config(self, config: SyncConfig) -> SyncConfig:
        self._execute(
            """
            INSERT INTO sync_configs (
                tenant_id, source_type, source_config, cadence, min_confidence,
                auto_apply_mapping, enabled, known_departments, strict_mapping,
                soft_delete_missing, updated_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, NOW())
            ON CONFLICT (tenant_id) DO UPDATE SET
                source_type = EXCLUDED.source_type,
                source_config = EXCLUDED.source_config,
                cadence = EXCLUDED.cadence,
                min_confidence = EXCLUDED.min_confidence,
                auto_apply_mapping = EXCLUDED.auto_apply_mapping,
                enabled = EXCLUDED.enabled,
                known_departments = EXCLUDED.known_departments,
                strict_mapping = EXCLUDED.strict_mapping,
                soft_delete_missing = EXCLUDED.soft_delete_missing,
                updated_at = NOW()
            """,
            (config.tenant_id, config.source_type, _json(config.source_config), config.cadence,
             config.min_confidence, config.auto_apply_mapping, config.enabled,
             _json(config.known_departments), config.strict_mapping, config.soft_delete_missing),
        )
        return config

    def list_sync_configs(self, enabled_only: bool = True) -> List[SyncConfig]:
        sql = "SELECT * FROM sync_configs"
        if enabled_only:
            sql += " WHERE enabled"
        rows = self._execute(sql + " ORDER BY tenant_id", fetch='all')
        return [
            SyncConfig(
                tenant_id=r['tenant_id'],
                source_type=r['source_type'],
                source_config=r['source_config'] or {},
                cadence=r['cadence'],
                min_confidence=float(r['min_confidence']),
                auto_apply_mapping=r['auto_apply_mapping'],
                enabled=r['enabled'],
                known_departments=r['known_departments'] or [],
                strict_mapping=r['strict_mapping'],
                soft_delete_missing=r['soft_delete_missing'],
            )
            for r in rows
        ]
