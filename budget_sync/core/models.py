"""
Budget Sync data structures

Canonical fields, mapping results, ledger entities and sync run records shared
by the mapper, validator, importer, orchestrator and scheduler.
"""
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple


# Canonical fields every source column is classified into
DEPARTMENT = 'department'
SUB_CATEGORY = 'subCategory'
FISCAL_PERIOD = 'fiscalPeriod'
BUDGETED_AMOUNT = 'budgetedAmount'
CURRENCY = 'currency'

REQUIRED_FIELDS = [DEPARTMENT, FISCAL_PERIOD, BUDGETED_AMOUNT]
OPTIONAL_FIELDS = [SUB_CATEGORY, CURRENCY]
ALL_FIELDS = REQUIRED_FIELDS + OPTIONAL_FIELDS

DEFAULT_CURRENCY = 'USD'

# Sync run statuses
STATUS_SUCCESS = 'success'
STATUS_PARTIAL = 'partial'
STATUS_FAILED = 'failed'

# Source types
SOURCE_SFTP = 'sftp'
SOURCE_S3 = 's3'
SOURCE_UPLOAD = 'upload'
SOURCE_TYPES = [SOURCE_SFTP, SOURCE_S3, SOURCE_UPLOAD]

# Audit actions written by the importer
SYNC_CREATE = 'SYNC_CREATE'
SYNC_UPDATE = 'SYNC_UPDATE'
SYNC_REVIVE = 'SYNC_REVIVE'
SYNC_SOFT_DELETE = 'SYNC_SOFT_DELETE'

NaturalKey = Tuple[str, Optional[str], str]


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime"""
    return datetime.now(timezone.utc)


def make_key(department: str, sub_category: Optional[str], fiscal_period: str) -> NaturalKey:
    """
    Build the natural key (department, sub_category, fiscal_period).

    Values are trimmed and an empty sub-category collapses to None so that
    "Engineering,,FY2025" and "Engineering,None,FY2025" are the same budget.
    """
    sub = (sub_category or '').strip() or None
    return ((department or '').strip(), sub, (fiscal_period or '').strip())


@dataclass
class ColumnMapping:
    """One source column classified as a canonical field"""
    source_column: str
    target_field: str
    confidence: float
    rationale: str
    sample_values: List[str] = field(default_factory=list)
    alternates: List[str] = field(default_factory=list)
    typo_detected: bool = False
    suggested_correction: Optional[str] = None
    matched_synonym: str = ''


@dataclass
class FileTypeDetection:
    """Keyword-based guess at what kind of spreadsheet this is"""
    likely_file_type: str  # 'budget', 'payroll', 'expenses', 'invoice', 'unknown'
    confidence: float
    budget_confidence: float
    warnings: List[str] = field(default_factory=list)
    detected_keywords: Dict[str, List[str]] = field(default_factory=dict)


@dataclass
class MappingResult:
    """All mappings for a file plus what could not be mapped"""
    mappings: List[ColumnMapping]
    unmapped_columns: List[str]
    missing_required_fields: List[str]
    confidence_by_field: Dict[str, float]
    overall_confidence: float
    suggestions: List[str] = field(default_factory=list)
    file_type: Optional[FileTypeDetection] = None

    def column_map(self) -> Dict[str, str]:
        """Map of canonical field -> source column"""
        return {m.target_field: m.source_column for m in self.mappings}

    def get(self, target_field: str) -> Optional[ColumnMapping]:
        for mapping in self.mappings:
            if mapping.target_field == target_field:
                return mapping
        return None


@dataclass
class ValidationIssue:
    severity: str  # 'error', 'warning', 'info'
    field: str
    message: str
    code: str
    row: Optional[int] = None
    suggestion: Optional[str] = None


@dataclass
class ValidationStats:
    total_rows: int = 0
    valid_rows: int = 0
    error_rows: int = 0
    warning_rows: int = 0


@dataclass
class ValidationResult:
    valid: bool
    issues: List[ValidationIssue]
    stats: ValidationStats

    @property
    def errors(self) -> List[ValidationIssue]:
        return [i for i in self.issues if i.severity == 'error']

    @property
    def warnings(self) -> List[ValidationIssue]:
        return [i for i in self.issues if i.severity == 'warning']

    def error_row_numbers(self) -> List[int]:
        """1-based data row numbers carrying at least one error"""
        return sorted({i.row for i in self.errors if i.row is not None})


@dataclass
class BudgetRecord:
    """Source-side budget row after transformation (never persisted directly)"""
    department: str
    fiscal_period: str
    budgeted_amount: Decimal
    currency: str = DEFAULT_CURRENCY
    sub_category: Optional[str] = None

    @property
    def key(self) -> NaturalKey:
        return make_key(self.department, self.sub_category, self.fiscal_period)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'department': self.department,
            'subCategory': self.sub_category,
            'fiscalPeriod': self.fiscal_period,
            'budgetedAmount': str(self.budgeted_amount),
            'currency': self.currency,
        }


@dataclass
class Budget:
    """Ledger entity, identified by (tenant_id, natural key)"""
    budget_id: str
    tenant_id: str
    department: str
    sub_category: Optional[str]
    fiscal_period: str
    budgeted_amount: Decimal
    currency: str
    created_at: datetime
    updated_at: datetime
    deleted_at: Optional[datetime] = None

    @property
    def key(self) -> NaturalKey:
        return make_key(self.department, self.sub_category, self.fiscal_period)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


@dataclass
class BudgetUtilization:
    """In-flight spend against a budget, owned by the approval workflow"""
    budget_id: str
    committed_amount: Decimal = Decimal('0')
    reserved_amount: Decimal = Decimal('0')


@dataclass
class AuditLogEntry:
    """Append-only record of one ledger mutation"""
    tenant_id: str
    budget_id: str
    action: str
    old_value: Optional[Dict[str, Any]]
    new_value: Optional[Dict[str, Any]]
    changed_by: str
    reason: str
    timestamp: datetime = field(default_factory=utcnow)
    entry_id: Optional[int] = None


@dataclass
class ImportResult:
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    soft_deleted: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class SyncStats:
    total: int = 0
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    soft_deleted: int = 0
    errors: int = 0


@dataclass
class SyncRun:
    """One orchestrator invocation; immutable once written"""
    sync_id: str
    tenant_id: str
    status: str
    start_time: datetime
    end_time: datetime
    source_type: str
    triggered_by: str
    stats: SyncStats = field(default_factory=SyncStats)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    duration_ms: int = 0
    transient: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ReceivedFile:
    """A file fetched from a source into local staging"""
    file_name: str
    file_path: str
    file_size: int
    received_at: datetime
    source: str
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SyncConfig:
    """Per-tenant sync configuration"""
    tenant_id: str
    source_type: str
    source_config: Dict[str, Any] = field(default_factory=dict)
    cadence: str = 'daily'
    min_confidence: float = 0.7
    auto_apply_mapping: bool = False
    enabled: bool = True
    known_departments: List[str] = field(default_factory=list)
    strict_mapping: bool = False
    soft_delete_missing: bool = True
