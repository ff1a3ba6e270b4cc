"""
File Sync Orchestrator

Runs one sync for one tenant, end to end:
1. Resolve the checkpoint (end of the last successful run)
2. Poll the tenant's file source for files changed since then
3. Parse the newest file (older files from the same poll are ignored)
4. Map columns and check the mapping is trustworthy
5. Validate rows and transform the valid ones into budget records
6. Reconcile the ledger
7. Record exactly one SyncRun, whatever happened
"""
import logging
import time
import uuid
from dataclasses import asdict
from typing import Any, Callable, Dict, List, Optional

from ..sources import create_source, newest_file
from ..sources.base import DEFAULT_STAGING_DIR, SAMPLE_ROWS
from .column_mapper import ColumnMapper
from .errors import (
    BudgetSyncError,
    EmptyOrUnparseable,
    LowMappingConfidence,
    PersistenceUnavailable,
    TransientSyncError,
)
from .models import (
    DEPARTMENT,
    STATUS_FAILED,
    STATUS_PARTIAL,
    STATUS_SUCCESS,
    MappingResult,
    ReceivedFile,
    SyncConfig,
    SyncRun,
    SyncStats,
    ValidationResult,
    utcnow,
)
from .reconciliation import BudgetImporter
from .row_validator import TenantValidationConfig, validate_budget_file
from .transform import row_keys, transform_rows

logger = logging.getLogger(__name__)

TRIGGER_SCHEDULE = 'schedule'
TRIGGER_MANUAL = 'manual'


def derive_status(error_count: int, total_rows: int) -> str:
    """success with no errors, partial while some rows survived, failed otherwise"""
    if error_count == 0:
        return STATUS_SUCCESS
    if error_count < total_rows:
        return STATUS_PARTIAL
    return STATUS_FAILED


def _file_metadata(file: ReceivedFile) -> Dict[str, Any]:
    metadata = {
        'file_name': file.file_name,
        'file_size': file.file_size,
        'received_at': file.received_at.isoformat(),
    }
    metadata.update(file.metadata)
    return metadata


def _mapping_metadata(mapping: MappingResult) -> Dict[str, Any]:
    return {
        'overall_confidence': round(mapping.overall_confidence, 4),
        'confidence_by_field': {k: round(v, 4) for k, v in mapping.confidence_by_field.items()},
        'column_map': mapping.column_map(),
        'unmapped_columns': mapping.unmapped_columns,
        'missing_required_fields': mapping.missing_required_fields,
        'typos': {m.source_column: m.suggested_correction for m in mapping.mappings if m.typo_detected},
        'file_type': mapping.file_type.likely_file_type if mapping.file_type else None,
    }


def _validation_metadata(validation: ValidationResult) -> Dict[str, Any]:
    return {
        'valid': validation.valid,
        'stats': asdict(validation.stats),
        'issues': [asdict(i) for i in validation.issues],
    }


def _rejected_rows(validation: ValidationResult) -> Dict[int, str]:
    """Row number -> combined error messages for rows the validator rejected"""
    reasons: Dict[int, List[str]] = {}
    for issue in validation.errors:
        if issue.row is not None:
            reasons.setdefault(issue.row, []).append(issue.message)
    return {row: '; '.join(messages) for row, messages in reasons.items()}


class FileSyncOrchestrator:
    """Executes file syncs against a ledger store"""

    def __init__(self,
                 store,
                 source_factory: Callable = create_source,
                 mapper: Optional[ColumnMapper] = None,
                 staging_dir: str = DEFAULT_STAGING_DIR,
                 supported_currencies: Optional[List[str]] = None):
        """
        Args:
            store: LedgerStore holding budgets, audit log and sync runs
            source_factory: (source_type, source_config, staging_dir) -> FileSource
            mapper: Column mapper (default: a fresh ColumnMapper)
            staging_dir: Where sources download files
            supported_currencies: Currencies the validator accepts
        """
        self.store = store
        self.source_factory = source_factory
        self.mapper = mapper or ColumnMapper()
        self.staging_dir = staging_dir
        self.supported_currencies = supported_currencies
        self.importer = BudgetImporter(store)

    def execute_file_sync(self, config: SyncConfig, triggered_by: str = TRIGGER_SCHEDULE) -> SyncRun:
        """
        Run one sync for a tenant

        Args:
            config: Tenant sync configuration
            triggered_by: 'schedule' or 'manual'

        Returns:
            The persisted SyncRun

        Raises:
            PersistenceUnavailable: the run could not be recorded
        """
        started = time.monotonic()
        run = SyncRun(
            sync_id=f"sync_{uuid.uuid4().hex[:12]}_{config.tenant_id}",
            tenant_id=config.tenant_id,
            status=STATUS_FAILED,
            start_time=utcnow(),
            end_time=utcnow(),
            source_type=config.source_type,
            triggered_by=triggered_by,
        )
        logger.info("Starting file sync %s for tenant %s", run.sync_id, config.tenant_id)

        try:
            self._run_pipeline(config, run)
        except BudgetSyncError as e:
            logger.error("Sync %s failed: %s", run.sync_id, e)
            run.status = STATUS_FAILED
            run.errors.append(e.to_dict())
            run.transient = isinstance(e, TransientSyncError)
        except Exception as e:
            logger.exception("Sync %s failed unexpectedly", run.sync_id)
            run.status = STATUS_FAILED
            run.errors.append({'code': 'UNEXPECTED_ERROR', 'error': str(e)})

        run.end_time = utcnow()
        run.duration_ms = int((time.monotonic() - started) * 1000)
        run.metadata['duration_ms'] = run.duration_ms

        try:
            self.store.save_sync_run(run)
        except PersistenceUnavailable:
            logger.error("Could not record sync run %s", run.sync_id)
            raise

        logger.info("Sync %s completed: %s (%d created, %d updated, %d unchanged, %d soft-deleted, %d errors)",
                    run.sync_id, run.status, run.stats.created, run.stats.updated,
                    run.stats.unchanged, run.stats.soft_deleted, run.stats.errors)
        return run

    def _run_pipeline(self, config: SyncConfig, run: SyncRun):
        last_success = self.store.get_last_successful_sync(config.tenant_id)
        checkpoint = last_success.end_time if last_success else None
        run.metadata['checkpoint'] = checkpoint.isoformat() if checkpoint else None
        logger.info("Last successful sync: %s", checkpoint.isoformat() if checkpoint else 'Never')

        source = self.source_factory(config.source_type, config.source_config, self.staging_dir)
        files = source.poll(checkpoint)
        run.metadata['files_found'] = len(files)

        if not files:
            logger.info("No new files found for tenant %s", config.tenant_id)
            run.status = STATUS_SUCCESS
            return

        latest = newest_file(files)
        ignored = [f.file_name for f in files if f is not latest]
        if ignored:
            logger.info("Ignoring older files from this poll: %s", ', '.join(ignored))
            run.metadata['ignored_files'] = ignored
        run.metadata.update(_file_metadata(latest))
        logger.info("Processing latest file: %s", latest.file_name)

        parsed = source.parse(latest)
        if not parsed.rows:
            raise EmptyOrUnparseable('File is empty or has no data rows')
        run.stats.total = len(parsed.rows)
        logger.info("Parsed %d rows", len(parsed.rows))

        mapping = self._map_columns(config, parsed.headers, parsed.rows)
        run.metadata['mapping'] = _mapping_metadata(mapping)

        validation = validate_budget_file(
            parsed.headers,
            parsed.rows,
            mapping,
            self._validation_config(config),
        )
        run.metadata['validation'] = _validation_metadata(validation)
        if validation.errors:
            logger.warning("Validation rejected %d rows", validation.stats.error_rows)

        parsed_records = parsed.records()
        records, row_errors = transform_rows(
            parsed_records,
            mapping.column_map(),
            skip_rows=_rejected_rows(validation),
        )
        run.errors.extend(e.to_dict() for e in row_errors)
        logger.info("Transformed %d budget records", len(records))

        if not records:
            run.stats.errors = len(row_errors)
            raise EmptyOrUnparseable(f"No valid budget rows in {latest.file_name}; ledger left unchanged")

        result = self.importer.import_budgets(
            config.tenant_id,
            records,
            metadata={
                'sync_id': run.sync_id,
                'source_type': config.source_type,
                'file_name': latest.file_name,
            },
            soft_delete_missing=config.soft_delete_missing,
            protected_keys=row_keys(parsed_records, mapping.column_map(), [e.row for e in row_errors]),
        )

        run.errors.extend(result.errors)
        run.stats = SyncStats(
            total=len(parsed.rows),
            created=result.created,
            updated=result.updated,
            unchanged=result.unchanged,
            soft_deleted=result.soft_deleted,
            errors=len(row_errors) + len(result.errors),
        )
        run.status = derive_status(run.stats.errors, run.stats.total)

    def _map_columns(self, config: SyncConfig, headers: List[str], rows: List[list]) -> MappingResult:
        known_values = {DEPARTMENT: list(config.known_departments)} if config.known_departments else None
        mapping = self.mapper.classify(
            headers,
            rows[:SAMPLE_ROWS],
            known_values=known_values,
            strict=config.strict_mapping,
        )
        logger.info("Mapping confidence: %d%%", round(mapping.overall_confidence * 100))
        for m in mapping.mappings:
            logger.debug("%s -> %s (%d%%)", m.source_column, m.target_field, round(m.confidence * 100))

        if mapping.missing_required_fields:
            raise LowMappingConfidence(
                f"Required fields could not be mapped: {', '.join(mapping.missing_required_fields)}. "
                f"Unmapped columns: {', '.join(mapping.unmapped_columns) or 'none'}",
                fields=mapping.missing_required_fields,
            )

        if mapping.overall_confidence < config.min_confidence and not config.auto_apply_mapping:
            weak = [m.target_field for m in mapping.mappings if m.confidence < config.min_confidence]
            raise LowMappingConfidence(
                f"Column mapping confidence ({mapping.overall_confidence:.0%}) is below threshold "
                f"({config.min_confidence:.0%}). Manual review required for: "
                f"{', '.join(weak) or 'all fields'}",
                fields=weak,
            )
        return mapping

    def _validation_config(self, config: SyncConfig) -> TenantValidationConfig:
        validation_config = TenantValidationConfig(departments=list(config.known_departments))
        if self.supported_currencies:
            validation_config.supported_currencies = list(self.supported_currencies)
        return validation_config
