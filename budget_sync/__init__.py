"""
Budget Sync

Pulls budget spreadsheets from customer SFTP servers, S3 buckets or uploads,
works out which column is which, validates the rows and reconciles them into
the budget ledger on a per-tenant schedule.
"""

__version__ = "1.0.0"
