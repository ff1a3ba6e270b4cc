"""Ledger persistence"""
from .base import LedgerStore
from .memory import InMemoryLedgerStore
from .postgres import PostgresLedgerStore

__all__ = ['LedgerStore', 'InMemoryLedgerStore', 'PostgresLedgerStore']
