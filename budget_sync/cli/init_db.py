#!/usr/bin/env python3
"""
Database initialization script

Creates the budget ledger and sync tables.
"""
import sys
from pathlib import Path

import psycopg2

from budget_sync.utils.db_connection import get_db_connection


SCHEMA_FILE = Path(__file__).parent.parent / "db" / "schema.sql"

TABLES = ['budgets', 'budget_utilization', 'budget_audit_log', 'sync_runs', 'sync_configs']


def run_sql_file(conn, sql_file: Path, description: str):
    """Execute a SQL file"""
    print(f"\n📄 {description}")
    print(f"   File: {sql_file}")
    
    with open(sql_file, 'r') as f:
        sql = f.read()
    
    cursor = conn.cursor()
    try:
        cursor.execute(sql)
        conn.commit()
        print(f"   ✅ Success")
    except psycopg2.Error as e:
        conn.rollback()
        print(f"   ❌ Error: {e}")
        raise
    finally:
        cursor.close()


def print_summary(conn):
    """Print row counts for every sync table"""
    cursor = conn.cursor()
    
    print("\n" + "=" * 80)
    print("📊 DATABASE SUMMARY")
    print("=" * 80)
    
    for table in TABLES:
        cursor.execute(f"SELECT COUNT(*) FROM {table}")
        print(f"{table}: {cursor.fetchone()[0]}")
    
    cursor.execute("SELECT COUNT(*) FROM sync_configs WHERE enabled")
    print(f"\nTenants with sync enabled: {cursor.fetchone()[0]}")
    
    print("=" * 80)
    
    cursor.close()


def main():
    """Main initialization function"""
    print("=" * 80)
    print("🚀 BUDGET SYNC DATABASE INITIALIZATION")
    print("=" * 80)
    
    if not SCHEMA_FILE.exists():
        print(f"\n❌ Missing schema file: {SCHEMA_FILE}")
        sys.exit(1)
    
    # Connect to database
    print("\n🔌 Connecting to database...")
    try:
        conn = get_db_connection()
        print("   ✅ Connected")
    except psycopg2.Error as e:
        print(f"   ❌ Connection failed: {e}")
        print("\nCheck DB_HOST, DB_PORT, DB_NAME, DB_USER and DB_PASSWORD in .env")
        sys.exit(1)
    
    try:
        run_sql_file(conn, SCHEMA_FILE, "Creating ledger and sync schema")
        print_summary(conn)
        
        print("\n✅ Database initialization complete!")
        print("\nNext steps:")
        print("  1. Check a file:     budget-sync analyze /path/to/budget.xlsx")
        print("  2. Run a sync:       budget-sync run --tenant acme --source upload --path /data/acme")
        print("  3. Start scheduler:  budget-sync serve")
        
    except psycopg2.Error as e:
        print(f"\n❌ Initialization failed: {e}")
        sys.exit(1)
    finally:
        conn.close()


if __name__ == "__main__":
    main()
