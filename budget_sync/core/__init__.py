"""
Budget sync engine: column mapping, validation, reconciliation and scheduling
"""
from .column_mapper import ColumnMapper, suggest_mappings
from .reconciliation import BudgetImporter
from .row_validator import validate_budget_file
from .similarity import similarity_score

__all__ = [
    'BudgetImporter',
    'ColumnMapper',
    'similarity_score',
    'suggest_mappings',
    'validate_budget_file',
]
