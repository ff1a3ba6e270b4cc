"""
Budget File Validator

Checks mapped spreadsheet rows before they reach the ledger and explains every
problem with a row number and a suggestion, so operators can fix the source
file without guesswork.
"""
import re
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, List, Optional, Sequence, Union

from .models import (
    BUDGETED_AMOUNT,
    CURRENCY,
    DEPARTMENT,
    FISCAL_PERIOD,
    REQUIRED_FIELDS,
    SUB_CATEGORY,
    ColumnMapping,
    MappingResult,
    ValidationIssue,
    ValidationResult,
    ValidationStats,
)
from .similarity import best_match
from .transform import cell_text, parse_amount

LARGE_AMOUNT_THRESHOLD = 100_000_000

# (label, pattern) for every fiscal period format the ledger understands
FISCAL_PERIOD_FORMATS = [
    ('FY2025', re.compile(r'^FY(\d{4})$')),
    ('FY25', re.compile(r'^FY(\d{2})$')),
    ('Q1-2025', re.compile(r'^Q[1-4]-(\d{4})$')),
    ('FY2025-Q1', re.compile(r'^FY(\d{4})-Q[1-4]$')),
    ('2025-Q1', re.compile(r'^(\d{4})-Q[1-4]$')),
    ('2025', re.compile(r'^(\d{4})$')),
]


@dataclass
class TenantValidationConfig:
    """Tenant-specific inputs to validation"""
    departments: List[str] = field(default_factory=list)
    supported_currencies: List[str] = field(default_factory=lambda: ['USD', 'GBP', 'EUR'])
    large_amount_threshold: int = LARGE_AMOUNT_THRESHOLD


def fiscal_period_format(period: str) -> Optional[str]:
    """Label of the format a period matches, or None"""
    for label, pattern in FISCAL_PERIOD_FORMATS:
        if pattern.match(period):
            return label
    return None


def fiscal_period_year(period: str) -> Optional[int]:
    """Four-digit year a fiscal period refers to, if one can be found"""
    for label, pattern in FISCAL_PERIOD_FORMATS:
        match = pattern.match(period)
        if match:
            year = int(match.group(1))
            return 2000 + year if label == 'FY25' else year
    loose = re.search(r'(20\d{2})', period) or re.search(r'FY\s*(\d{2})\b', period, re.IGNORECASE)
    if loose:
        year = int(loose.group(1))
        return 2000 + year if year < 100 else year
    return None


def validate_budget_file(headers: Sequence[str],
                         rows: Sequence[Sequence],
                         mappings: Union[MappingResult, Sequence[ColumnMapping]],
                         tenant_config: Optional[TenantValidationConfig] = None,
                         today: Optional[date] = None) -> ValidationResult:
    """
    Validate mapped budget data

    Args:
        headers: Header row
        rows: Data rows aligned with headers (header row excluded)
        mappings: Accepted column mappings
        tenant_config: Known departments and supported currencies
        today: Reference date for the coverage check (default: today)

    Returns:
        ValidationResult; row numbers are 1-based data rows
    """
    config = tenant_config or TenantValidationConfig()
    if isinstance(mappings, MappingResult):
        mappings = mappings.mappings
    headers = [str(h).strip() for h in headers]
    non_empty_rows = [(n, row) for n, row in enumerate(rows, start=1)
                      if any(cell_text(cell) for cell in row)]

    issues: List[ValidationIssue] = []
    mapped_fields = {m.target_field for m in mappings}
    for required in REQUIRED_FIELDS:
        if required not in mapped_fields:
            issues.append(ValidationIssue(
                severity='error',
                field=required,
                message=f'Required field "{required}" is not mapped',
                suggestion=f"Add a column with {required} data, or manually map an existing column",
                code='MISSING_REQUIRED_FIELD',
            ))

    if issues:
        return ValidationResult(
            valid=False,
            issues=issues,
            stats=ValidationStats(
                total_rows=len(non_empty_rows),
                valid_rows=0,
                error_rows=len(non_empty_rows),
                warning_rows=0,
            ),
        )

    index: Dict[str, int] = {}
    for mapping in mappings:
        if mapping.source_column in headers:
            index[mapping.target_field] = headers.index(mapping.source_column)

    def cell(row: Sequence, target_field: str) -> str:
        pos = index.get(target_field)
        if pos is None or pos >= len(row):
            return ''
        return cell_text(row[pos])

    stats = ValidationStats(total_rows=len(non_empty_rows))

    for row_number, row in non_empty_rows:
        row_issues = _check_row(row_number, row, cell, index, config)

        if any(i.severity == 'error' for i in row_issues):
            stats.error_rows += 1
        elif any(i.severity == 'warning' for i in row_issues):
            stats.warning_rows += 1
        else:
            stats.valid_rows += 1
        issues.extend(row_issues)

    periods = [(n, cell(row, FISCAL_PERIOD)) for n, row in non_empty_rows]
    periods = [(n, p) for n, p in periods if p]

    consistency = _check_period_consistency([p for _, p in periods])
    if consistency:
        issues.append(consistency)

    issues.extend(_find_duplicates(non_empty_rows, cell))

    coverage = _check_period_coverage([p for _, p in periods], today or date.today())
    if coverage:
        issues.append(coverage)

    return ValidationResult(
        valid=not any(i.severity == 'error' for i in issues),
        issues=issues,
        stats=stats,
    )


def _check_row(row_number, row, cell, index, config: TenantValidationConfig) -> List[ValidationIssue]:
    issues = []

    department = cell(row, DEPARTMENT)
    if not department:
        issues.append(ValidationIssue(
            'error', DEPARTMENT, 'Department is empty', 'EMPTY_DEPARTMENT', row_number,
            'Ensure every row has a department name'))
    elif config.departments and department not in config.departments:
        closest, _ = best_match(department, config.departments)
        issues.append(ValidationIssue(
            'warning', DEPARTMENT, f'Department "{department}" not found in your system',
            'UNKNOWN_DEPARTMENT', row_number,
            f'Did you mean "{closest}"?' if closest else
            f"Known departments: {', '.join(config.departments)}"))

    period = cell(row, FISCAL_PERIOD)
    if not period:
        issues.append(ValidationIssue(
            'error', FISCAL_PERIOD, 'Fiscal period is empty', 'EMPTY_FISCAL_PERIOD', row_number,
            'Add a fiscal period (e.g., FY2025, Q1-2025)'))
    elif fiscal_period_format(period) is None:
        examples = ', '.join(label for label, _ in FISCAL_PERIOD_FORMATS)
        issues.append(ValidationIssue(
            'warning', FISCAL_PERIOD, f'Fiscal period "{period}" format not recognized',
            'INVALID_FISCAL_PERIOD_FORMAT', row_number, f"Use standard formats: {examples}"))

    raw_amount = cell(row, BUDGETED_AMOUNT)
    try:
        amount = parse_amount(raw_amount)
    except ValueError:
        issues.append(ValidationIssue(
            'error', BUDGETED_AMOUNT, f'Budget amount "{raw_amount}" is not a valid number',
            'INVALID_AMOUNT', row_number, 'Use numeric values only (e.g., 500000 or 500,000)'))
    else:
        if amount is None:
            issues.append(ValidationIssue(
                'error', BUDGETED_AMOUNT, 'Budget amount is empty', 'EMPTY_AMOUNT', row_number,
                'Enter a numeric amount (e.g., 500000)'))
        elif amount <= 0:
            issues.append(ValidationIssue(
                'error', BUDGETED_AMOUNT, f'Budget amount {amount} must be positive',
                'NEGATIVE_AMOUNT', row_number, 'Budget amounts should be greater than 0'))
        elif amount > config.large_amount_threshold:
            issues.append(ValidationIssue(
                'warning', BUDGETED_AMOUNT, f'Budget amount {amount:,} is very large',
                'LARGE_AMOUNT', row_number, 'Verify this amount is correct'))

    if CURRENCY in index:
        currency = cell(row, CURRENCY).upper()
        if currency and currency not in config.supported_currencies:
            issues.append(ValidationIssue(
                'warning', CURRENCY, f'Currency "{currency}" may not be supported',
                'UNSUPPORTED_CURRENCY', row_number,
                f"Use {', '.join(config.supported_currencies)}"))

    return issues


def _check_period_consistency(periods: List[str]) -> Optional[ValidationIssue]:
    formats = []
    for period in periods:
        label = fiscal_period_format(period) or 'unknown'
        if label not in formats:
            formats.append(label)

    if len(formats) > 1:
        return ValidationIssue(
            'warning', FISCAL_PERIOD,
            f"Multiple fiscal period formats detected: {', '.join(formats)}",
            'INCONSISTENT_FISCAL_PERIOD_FORMAT',
            suggestion='Use one consistent format throughout your file')
    return None


def _find_duplicates(rows, cell) -> List[ValidationIssue]:
    issues = []
    seen: Dict[tuple, int] = {}
    for row_number, row in rows:
        key = (cell(row, DEPARTMENT), cell(row, SUB_CATEGORY), cell(row, FISCAL_PERIOD))
        if key in seen:
            issues.append(ValidationIssue(
                'error', 'duplicate', row=row_number,
                message='Duplicate budget found (same department + fiscal period + sub-category)',
                suggestion=f"First occurrence at row {seen[key]}. Combine these entries or remove duplicate.",
                code='DUPLICATE_BUDGET'))
        else:
            seen[key] = row_number
    return issues


def _check_period_coverage(periods: List[str], today: date) -> Optional[ValidationIssue]:
    if not periods:
        return None
    years = {fiscal_period_year(p) for p in periods}
    current, upcoming = today.year, today.year + 1
    if current in years and upcoming in years:
        return None

    distinct = list(dict.fromkeys(periods))
    return ValidationIssue(
        'warning', FISCAL_PERIOD,
        f"Budget coverage incomplete. Found periods: {', '.join(distinct)}",
        'INCOMPLETE_FISCAL_PERIOD_COVERAGE',
        suggestion=f'Include budgets for both {current} and {upcoming} to avoid "no budget found" errors')


def generate_validation_summary(result: ValidationResult) -> str:
    """User-friendly text summary of a validation result"""
    stats = result.stats
    if result.valid and not result.issues:
        return f"✅ All {stats.total_rows} rows validated successfully! Ready to import."

    errors, warnings = result.errors, result.warnings
    lines = []

    if errors:
        lines.append(f"❌ {len(errors)} error(s) found. Please fix these before importing:")
        lines.append('')
        for issue in errors[:5]:
            lines.extend(_issue_lines(issue))
        if len(errors) > 5:
            lines.append(f"  ... and {len(errors) - 5} more errors")

    if warnings:
        lines.append('')
        lines.append(f"⚠️  {len(warnings)} warning(s) found. Review recommended:")
        lines.append('')
        for issue in warnings[:3]:
            lines.extend(_issue_lines(issue))
        if len(warnings) > 3:
            lines.append(f"  ... and {len(warnings) - 3} more warnings")

    lines.append('')
    lines.append('📊 Validation Stats:')
    lines.append(f"  • Total rows: {stats.total_rows}")
    lines.append(f"  • Valid rows: {stats.valid_rows} ✅")
    if stats.warning_rows:
        lines.append(f"  • Rows with warnings: {stats.warning_rows} ⚠️")
    if stats.error_rows:
        lines.append(f"  • Rows with errors: {stats.error_rows} ❌")
    return '\n'.join(lines)


def _issue_lines(issue: ValidationIssue) -> List[str]:
    prefix = f"Row {issue.row}: " if issue.row else ''
    lines = [f"  • {prefix}{issue.message}"]
    if issue.suggestion:
        lines.append(f"    💡 {issue.suggestion}")
    return lines
