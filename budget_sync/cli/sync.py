#!/usr/bin/env python3
"""
Budget sync CLI

    budget-sync analyze FILE            Show column mapping and validation for a file
    budget-sync run --tenant ID ...     Run one sync now
    budget-sync serve                   Run the scheduler until SIGINT/SIGTERM
"""
import argparse
import json
import signal
import sys
import threading
from pathlib import Path

from budget_sync.core.column_mapper import suggest_mappings
from budget_sync.core.errors import BudgetSyncError
from budget_sync.core.models import SOURCE_TYPES, SyncConfig
from budget_sync.core.orchestrator import TRIGGER_MANUAL, FileSyncOrchestrator
from budget_sync.core.row_validator import (
    TenantValidationConfig,
    generate_validation_summary,
    validate_budget_file,
)
from budget_sync.core.scheduler import CADENCE_CRON, SyncScheduler
from budget_sync.sources import create_source, parse_file
from budget_sync.sources.base import SAMPLE_ROWS, cleanup_staging
from budget_sync.storage import InMemoryLedgerStore, PostgresLedgerStore
from budget_sync.utils.settings import configure_logging, load_settings


def split_list(value: str):
    return [v.strip() for v in value.split(',') if v.strip()] if value else []


def print_mapping(mapping):
    """Print column mappings as a table"""
    print(f"\n{'Source column':<30} {'Field':<16} {'Confidence':>10}  Rationale")
    print("-" * 80)
    for m in mapping.mappings:
        flag = " 🔤" if m.typo_detected else ""
        print(f"{m.source_column[:30]:<30} {m.target_field:<16} {m.confidence:>10.0%}  {m.rationale}{flag}")
    for column in mapping.unmapped_columns:
        print(f"{column[:30]:<30} {'(unmapped)':<16}")
    print("-" * 80)
    print(f"Overall confidence: {mapping.overall_confidence:.0%}")
    if mapping.missing_required_fields:
        print(f"Missing required fields: {', '.join(mapping.missing_required_fields)}")
    if mapping.suggestions:
        print("\n💡 Suggestions:")
        for suggestion in mapping.suggestions:
            print(f"   {suggestion}")


def print_run(run):
    """Print a sync run summary"""
    icon = {'success': '✅', 'partial': '⚠️ ', 'failed': '❌'}.get(run.status, '•')
    print("\n" + "=" * 80)
    print(f"{icon} SYNC {run.status.upper()}: {run.sync_id}")
    print("=" * 80)
    print(f"Tenant:        {run.tenant_id}")
    print(f"Source:        {run.source_type}")
    print(f"File:          {run.metadata.get('file_name', '(no new files)')}")
    print(f"Duration:      {run.duration_ms} ms")
    print(f"Rows:          {run.stats.total}")
    print(f"Created:       {run.stats.created}")
    print(f"Updated:       {run.stats.updated}")
    print(f"Unchanged:     {run.stats.unchanged}")
    print(f"Soft-deleted:  {run.stats.soft_deleted}")
    print(f"Errors:        {run.stats.errors}")
    if run.errors:
        print("\nErrors:")
        for error in run.errors[:10]:
            row = f"Row {error['row']}: " if error.get('row') else ''
            print(f"   • {row}{error.get('error')}")
        if len(run.errors) > 10:
            print(f"   ... and {len(run.errors) - 10} more")
    print("=" * 80)


def cmd_analyze(args, settings) -> int:
    parsed = parse_file(args.file)
    print("=" * 80)
    print(f"🔍 ANALYZING {Path(args.file).name}")
    print("=" * 80)
    print(f"Columns: {len(parsed.headers)}   Rows: {len(parsed.rows)}")

    departments = split_list(args.departments)
    known_values = {'department': departments} if departments else None
    mapping = suggest_mappings(parsed.headers, parsed.rows[:SAMPLE_ROWS],
                               known_values=known_values, strict=args.strict)
    print_mapping(mapping)

    validation = validate_budget_file(
        parsed.headers, parsed.rows, mapping, TenantValidationConfig(departments=departments)
    )
    print("\n" + generate_validation_summary(validation))
    return 0 if validation.valid else 1


def build_config(args, store) -> SyncConfig:
    config = store.get_sync_config(args.tenant)
    if config is not None and not args.source:
        return config

    if not args.source:
        raise BudgetSyncError(f"No saved sync config for {args.tenant}; pass --source")

    source_config = {}
    if args.config:
        with open(args.config, 'r') as f:
            source_config = json.load(f)
    if args.path:
        source_config['local_path'] = args.path

    return SyncConfig(
        tenant_id=args.tenant,
        source_type=args.source,
        source_config=source_config,
        cadence=args.cadence,
        min_confidence=args.min_confidence,
        auto_apply_mapping=args.auto_apply,
        known_departments=split_list(args.departments),
        strict_mapping=args.strict,
        soft_delete_missing=not args.no_soft_delete,
    )


def cmd_run(args, settings) -> int:
    store = InMemoryLedgerStore() if args.dry_run else PostgresLedgerStore()
    config = build_config(args, store)
    if args.save:
        store.save_sync_config(config)
        print(f"💾 Saved sync config for {config.tenant_id}")

    orchestrator = FileSyncOrchestrator(store, staging_dir=settings.staging_dir)
    if args.dry_run:
        print("🧪 Dry run: using an empty in-memory ledger")
    run = orchestrator.execute_file_sync(config, triggered_by=TRIGGER_MANUAL)
    print_run(run)
    return 0 if run.status != 'failed' else 1


def cmd_test_source(args, settings) -> int:
    store = PostgresLedgerStore()
    config = store.get_sync_config(args.tenant)
    if config is None:
        raise BudgetSyncError(f"No saved sync config for {args.tenant}")
    source = create_source(config.source_type, config.source_config, settings.staging_dir)
    result = source.test_connection()
    print(f"{'✅' if result['success'] else '❌'} {result['message']}")
    return 0 if result['success'] else 1


def cmd_serve(args, settings) -> int:
    store = PostgresLedgerStore()
    orchestrator = FileSyncOrchestrator(store, staging_dir=settings.staging_dir)
    scheduler = SyncScheduler(orchestrator, store=store, settings=settings)

    print("=" * 80)
    print("🚀 BUDGET SYNC SCHEDULER")
    print("=" * 80)

    cleanup_staging(settings.staging_dir, settings.staging_retention_days)
    scheduler.schedule_staging_cleanup(settings.staging_dir, settings.staging_retention_days)
    count = scheduler.initialize()
    print(f"📅 {count} tenant jobs scheduled (max {settings.max_concurrent_jobs} concurrent)")
    for job in scheduler.get_all_jobs():
        print(f"   • {job['tenant_id']}: {job['cadence']} (next: {job['next_run'] or 'manual'})")

    stop = threading.Event()

    def handle_signal(signum, frame):
        print(f"\n🛑 {signal.Signals(signum).name} received, stopping all jobs...")
        stop.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    while not stop.wait(1):
        pass
    unfinished = scheduler.stop_all()
    store.close()
    if unfinished:
        print(f"⚠️  Still running at shutdown: {', '.join(unfinished)}")
        return 1
    print("✅ Scheduler stopped")
    return 0


def main():
    """Main CLI entry point"""
    parser = argparse.ArgumentParser(description='Budget file sync')
    subparsers = parser.add_subparsers(dest='command', required=True)

    analyze = subparsers.add_parser('analyze', help='Show column mapping and validation for a file')
    analyze.add_argument('file', help='CSV or Excel budget file')
    analyze.add_argument('--departments', help='Comma-separated known departments')
    analyze.add_argument('--strict', action='store_true', help='Drop mappings below 70%% confidence')

    run = subparsers.add_parser('run', help='Run one sync now')
    run.add_argument('--tenant', required=True, help='Tenant ID')
    run.add_argument('--source', choices=SOURCE_TYPES,
                     help='Source type (default: saved tenant config)')
    run.add_argument('--config', help='JSON file with source settings (host, bucket_name, ...)')
    run.add_argument('--path', help='Upload directory for --source upload')
    run.add_argument('--cadence', default='manual', choices=list(CADENCE_CRON))
    run.add_argument('--min-confidence', type=float, default=None, help='Mapping confidence threshold')
    run.add_argument('--auto-apply', action='store_true', help='Apply mappings below the threshold')
    run.add_argument('--departments', help='Comma-separated known departments')
    run.add_argument('--strict', action='store_true', help='Drop mappings below 70%% confidence')
    run.add_argument('--no-soft-delete', action='store_true',
                     help='Keep ledger budgets that are missing from the file')
    run.add_argument('--save', action='store_true', help='Save this config for the tenant')
    run.add_argument('--dry-run', action='store_true', help='Use an in-memory ledger')

    test_source = subparsers.add_parser('test-source', help="Check a tenant's source is reachable")
    test_source.add_argument('--tenant', required=True, help='Tenant ID')

    subparsers.add_parser('serve', help='Run scheduled syncs until interrupted')

    args = parser.parse_args()
    settings = load_settings()
    configure_logging(settings.log_level)
    if getattr(args, 'min_confidence', 0) is None:
        args.min_confidence = settings.min_confidence

    commands = {
        'analyze': cmd_analyze,
        'run': cmd_run,
        'test-source': cmd_test_source,
        'serve': cmd_serve,
    }
    try:
        sys.exit(commands[args.command](args, settings))
    except BudgetSyncError as e:
        print(f"\n❌ {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
