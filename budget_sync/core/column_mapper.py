"""
Column Mapping Engine

Classifies arbitrary spreadsheet headers as canonical budget fields using:
- Exact synonym match (confidence 1.0)
- Substring containment in either direction (confidence 0.9)
- Fuzzy edit-distance match (similarity >= 0.75, confidence = similarity)
- Sample-value shape checks that can raise a header score
- Typo detection against the tenant's known departments

The classifier is deterministic: the same headers and samples always produce
the same mappings, and every mapping carries a rationale explaining it.
"""
import logging
import re
from dataclasses import dataclass
from functools import cmp_to_key
from typing import Dict, List, Optional, Sequence, Tuple

from .models import (
    ALL_FIELDS,
    BUDGETED_AMOUNT,
    CURRENCY,
    DEPARTMENT,
    FISCAL_PERIOD,
    REQUIRED_FIELDS,
    SUB_CATEGORY,
    ColumnMapping,
    FileTypeDetection,
    MappingResult,
)
from .similarity import best_match, similarity_score

logger = logging.getLogger(__name__)


EXACT_CONFIDENCE = 1.0
SUBSTRING_CONFIDENCE = 0.9
FUZZY_THRESHOLD = 0.75
HEADER_WEIGHT = 0.6
VALUE_WEIGHT = 0.4
MIN_VALUE_MATCH_RATE = 0.5
TYPO_THRESHOLD = 0.8
TYPO_CONFIDENCE_CAP = 0.7
STRICT_MIN_CONFIDENCE = 0.7
LOW_CONFIDENCE = 0.7
TIE_TOLERANCE = 0.05
MAX_ALTERNATES = 3
MIN_ALTERNATE_CONFIDENCE = 0.4

# Synonym dictionary per canonical field
FIELD_PATTERNS: Dict[str, List[str]] = {
    DEPARTMENT: [
        'department', 'dept', 'dpt', 'division', 'div', 'team',
        'business unit', 'bu', 'organization', 'org', 'org unit',
        'cost center', 'cc', 'organizational unit', 'unit',
        'cost centre', 'organizational structure', 'hierarchy',
    ],
    SUB_CATEGORY: [
        'subcategory', 'sub-category', 'sub category', 'subcat',
        'budget category', 'expense category', 'expense type',
        'category', 'cat', 'type', 'account', 'gl account',
        "what we're spending on", 'spending on', 'expense',
        'sub type', 'subtype', 'budget type', 'spend category',
        'account name', 'expense account', 'line item',
    ],
    FISCAL_PERIOD: [
        'fiscal period', 'time period', 'period', 'when',
        'fiscal year', 'fy', 'quarter', 'q', 'year', 'fiscal',
        'time', 'date', 'reporting period', 'budget period',
        'fiscal yr', 'f/y', 'fiscal quarter', 'fiscal qtr',
        'budget year', 'planning period',
    ],
    BUDGETED_AMOUNT: [
        'budgeted amount', 'budget', 'amount', 'how much', 'total',
        'allocated', 'allocation', 'value', 'plan amount',
        'budget amt', 'budget amount', 'planned amount',
        'planned budget', 'budgeted', 'budget value',
        'plan', 'target', 'forecast', 'budget_amount',
    ],
    CURRENCY: [
        'currency', 'curr', 'ccy', 'money type', 'currency code',
        'currency type', 'denomination', 'curr code',
        'iso currency', 'currency_code',
    ],
}

# Value shapes used to confirm a header guess (sub-category has none)
VALUE_PATTERNS: Dict[str, re.Pattern] = {
    DEPARTMENT: re.compile(
        r'^(engineering|eng|sales|marketing|mkt|finance|fin|hr|human|operations'
        r'|ops|it|legal|customer|product|admin)', re.IGNORECASE),
    FISCAL_PERIOD: re.compile(r'^(FY|Q[1-4]|20\d{2}|\d{4})', re.IGNORECASE),
    BUDGETED_AMOUNT: re.compile(r'^[\$£€¥]?\s*\d+[\d,.]*'),
    CURRENCY: re.compile(r'^(USD|GBP|EUR|JPY|CAD|AUD|CHF|CNY|INR)$', re.IGNORECASE),
}

# Fields whose sample values are checked against tenant-known values
TYPO_CHECKED_FIELDS = (DEPARTMENT,)

FILE_TYPE_KEYWORDS: Dict[str, List[str]] = {
    'budget': [
        'budget', 'budgeted', 'allocated', 'allocation', 'fiscal', 'planned',
        'forecast', 'department', 'cost center', 'opex', 'capex',
        'q1', 'q2', 'q3', 'q4', 'fy',
    ],
    'payroll': [
        'salary', 'payroll', 'employee', 'emp', 'wage', 'compensation', 'bonus',
        'gross pay', 'net pay', 'deduction', 'tax', 'social security', 'benefits',
        'employee id', 'emp id', 'hourly rate', 'overtime', 'timesheet',
    ],
    'expenses': [
        'expense', 'reimbursement', 'receipt', 'claim', 'vendor', 'merchant',
        'transaction', 'card', 'credit card', 'purchase date', 'submitted by',
        'approver', 'expense report',
    ],
    'invoice': [
        'invoice', 'bill', 'po number', 'purchase order', 'supplier', 'vendor',
        'due date', 'payment terms', 'line item', 'quantity', 'unit price',
        'invoice number', 'invoice date', 'total due', 'amount due',
    ],
}


@dataclass
class HeaderMatch:
    """Outcome of matching one header against one field's synonyms"""
    strategy: str  # 'exact', 'substring', 'fuzzy'
    synonym: str
    score: float


@dataclass
class TypoCheck:
    has_typo: bool
    suggestion: Optional[str] = None
    confidence: float = 0.0


def normalize_header(header) -> str:
    return str(header if header is not None else '').strip().lower()


def match_header(header: str, synonyms: Sequence[str]) -> Optional[HeaderMatch]:
    """
    Match a header against a synonym list.

    Tries exact, then substring (either direction), then fuzzy similarity.

    Returns:
        HeaderMatch, or None when the header has no dictionary hit at all
    """
    norm = normalize_header(header)
    if not norm:
        return None

    for synonym in synonyms:
        if norm == synonym.lower():
            return HeaderMatch('exact', synonym, EXACT_CONFIDENCE)

    for synonym in synonyms:
        syn = synonym.lower()
        if syn in norm or norm in syn:
            return HeaderMatch('substring', synonym, SUBSTRING_CONFIDENCE)

    synonym, score = best_match(norm, synonyms)
    if synonym is not None and score >= FUZZY_THRESHOLD:
        return HeaderMatch('fuzzy', synonym, score)

    return None


def detect_typo(value: str, known_values: Sequence[str]) -> TypoCheck:
    """
    Check whether a value looks like a misspelling of a known value.

    similarity >= 0.8 without an exact (case-insensitive) match is a typo;
    the suggestion is the best-scoring known value.
    """
    value_norm = str(value).strip().lower()
    for known in known_values:
        if value_norm == str(known).strip().lower():
            return TypoCheck(has_typo=False, confidence=1.0)

    suggestion, score = best_match(value, known_values)
    if suggestion is not None and score >= TYPO_THRESHOLD:
        return TypoCheck(has_typo=True, suggestion=suggestion, confidence=score)

    return TypoCheck(has_typo=False)


def value_match_rate(target_field: str, values: Sequence[str]) -> float:
    """Share of non-empty values matching the field's value shape"""
    pattern = VALUE_PATTERNS.get(target_field)
    if pattern is None or not values:
        return 0.0
    matches = sum(1 for v in values if pattern.search(v))
    return matches / len(values)


def detect_file_type(headers: Sequence[str], sample_rows: Sequence[Sequence]) -> FileTypeDetection:
    """
    Guess whether this spreadsheet is a budget at all.

    Scores keyword hits for budget, payroll, expenses and invoice files. The
    result is advisory and only feeds the suggestions list.
    """
    cells = [str(h) for h in headers]
    for row in sample_rows:
        cells.extend(str(v) for v in row if v not in (None, ''))
    all_text = ' '.join(cells).lower()

    scores = {file_type: 0 for file_type in FILE_TYPE_KEYWORDS}
    detected = {'budget': [], 'nonBudget': []}

    for file_type, keywords in FILE_TYPE_KEYWORDS.items():
        for keyword in keywords:
            if re.search(r'\b' + re.escape(keyword) + r'\b', all_text):
                scores[file_type] += 1
                bucket = 'budget' if file_type == 'budget' else 'nonBudget'
                detected[bucket].append(keyword)

    max_score = max(scores.values())
    non_budget_total = scores['payroll'] + scores['expenses'] + scores['invoice']
    warnings = []
    found = ', '.join(detected['nonBudget'][:5])

    if max_score == 0:
        likely, confidence = 'unknown', 0.0
        warnings.append('Unable to determine file type - no recognizable keywords found')
    elif scores['budget'] >= max(scores['payroll'], scores['expenses'], scores['invoice']):
        likely, confidence = 'budget', min(scores['budget'] / 5, 1.0)
        if non_budget_total > 0:
            warnings.append(
                f"File appears to be a budget file, but also contains {non_budget_total} "
                f"non-budget keyword(s). Please verify this is the correct file."
            )
    elif scores['payroll'] > scores['budget'] and scores['payroll'] > scores['invoice']:
        likely, confidence = 'payroll', min(scores['payroll'] / 5, 1.0)
        warnings.append(f"⚠️  This looks like a PAYROLL file, not a budget file. Found keywords: {found}")
    elif scores['invoice'] > scores['budget'] and scores['invoice'] >= scores['expenses']:
        likely, confidence = 'invoice', min(scores['invoice'] / 5, 1.0)
        warnings.append(f"⚠️  This looks like an INVOICE file, not a budget file. Found keywords: {found}")
    else:
        likely, confidence = 'expenses', min(scores['expenses'] / 5, 1.0)
        warnings.append(f"⚠️  This looks like an EXPENSES file, not a budget file. Found keywords: {found}")

    budget_confidence = 0.0
    if scores['budget'] > 0:
        budget_confidence = min(scores['budget'] / max(non_budget_total or 1, 3), 1.0)

    return FileTypeDetection(
        likely_file_type=likely,
        confidence=confidence,
        budget_confidence=budget_confidence,
        warnings=warnings,
        detected_keywords=detected,
    )


class ColumnMapper:
    """
    Maps source columns to canonical budget fields
    """

    def __init__(self, field_patterns: Optional[Dict[str, List[str]]] = None):
        self.field_patterns = field_patterns or FIELD_PATTERNS
        self.stats = {
            'mapped': 0,
            'unmapped': 0,
            'typos': 0,
            'by_field': {},
        }

    def score_field(self,
                    header: str,
                    target_field: str,
                    sample_values: List[str],
                    known_values: Optional[Dict[str, List[str]]] = None) -> Optional[ColumnMapping]:
        """
        Score one header against one canonical field

        Args:
            header: Source column header
            target_field: Canonical field to test
            sample_values: Non-empty sample values from the column
            known_values: Optional tenant-known values per field

        Returns:
            Candidate ColumnMapping, or None when the header has no hit
        """
        match = match_header(header, self.field_patterns.get(target_field, []))
        if match is None:
            return None

        confidence = match.score
        if match.strategy == 'exact':
            rationale = f'Header "{header}" matches synonym "{match.synonym}" exactly'
        elif match.strategy == 'substring':
            rationale = f'Header "{header}" contains or is contained in synonym "{match.synonym}"'
        else:
            rationale = (f'Header "{header}" is similar to synonym "{match.synonym}" '
                         f'({match.score:.0%} similarity)')

        rate = value_match_rate(target_field, sample_values)
        if rate >= MIN_VALUE_MATCH_RATE:
            confidence = max(confidence, HEADER_WEIGHT * match.score + VALUE_WEIGHT * rate)
            rationale += f' and {rate:.0%} of sample values match the {target_field} pattern'

        typo_detected = False
        suggested_correction = None
        known = (known_values or {}).get(target_field)
        if target_field in TYPO_CHECKED_FIELDS and known and sample_values:
            check = detect_typo(sample_values[0], known)
            if check.has_typo:
                typo_detected = True
                suggested_correction = check.suggestion
                confidence = min(confidence, TYPO_CONFIDENCE_CAP)
                rationale += f'; value "{sample_values[0]}" looks like a typo of "{check.suggestion}"'

        return ColumnMapping(
            source_column=header,
            target_field=target_field,
            confidence=min(confidence, 1.0),
            rationale=rationale,
            sample_values=sample_values[:3],
            typo_detected=typo_detected,
            suggested_correction=suggested_correction,
            matched_synonym=match.synonym,
        )

    def detect_field(self,
                     header: str,
                     sample_values: List[str],
                     known_values: Optional[Dict[str, List[str]]] = None) -> Optional[ColumnMapping]:
        """
        Pick the best canonical field for a header.

        Highest confidence wins; near-ties go to the longer (more specific)
        synonym. The runners-up are kept as alternates.
        """
        candidates = []
        for target_field in ALL_FIELDS:
            candidate = self.score_field(header, target_field, sample_values, known_values)
            if candidate is not None:
                candidates.append(candidate)

        if not candidates:
            return None

        ranked = sorted(candidates, key=cmp_to_key(_compare_candidates))

        best = ranked[0]
        best.alternates = [
            c.target_field for c in ranked[1:1 + MAX_ALTERNATES]
            if c.confidence > MIN_ALTERNATE_CONFIDENCE
        ]
        return best

    def classify(self,
                 headers: Sequence[str],
                 sample_rows: Sequence[Sequence],
                 known_values: Optional[Dict[str, List[str]]] = None,
                 strict: bool = False) -> MappingResult:
        """
        Classify every column of a file

        Args:
            headers: Header row
            sample_rows: Data rows (lists aligned with headers) used as samples
            known_values: Optional tenant-known values per field, e.g.
                {'department': ['Engineering', 'Sales']}
            strict: Drop accepted mappings below 0.7 confidence

        Returns:
            MappingResult; each canonical field is mapped at most once
        """
        headers = [str(h).strip() if h is not None else '' for h in headers]
        best_by_column: List[Tuple[int, ColumnMapping]] = []
        unmapped = set()

        for index, header in enumerate(headers):
            samples = _column_samples(sample_rows, index)
            mapping = self.detect_field(header, samples, known_values)
            if mapping is None:
                unmapped.add(index)
            else:
                best_by_column.append((index, mapping))

        # Greedy assignment: strongest headers claim their field first
        best_by_column.sort(key=lambda item: (-item[1].confidence, item[0]))
        claimed: Dict[str, int] = {}
        accepted: Dict[int, ColumnMapping] = {}

        for index, mapping in best_by_column:
            if strict and mapping.confidence < STRICT_MIN_CONFIDENCE:
                unmapped.add(index)
                continue
            if mapping.target_field in claimed:
                logger.debug("Column %r lost %s to column %r", headers[index],
                             mapping.target_field, headers[claimed[mapping.target_field]])
                unmapped.add(index)
                continue
            claimed[mapping.target_field] = index
            accepted[index] = mapping

        mappings = [accepted[i] for i in sorted(accepted)]
        unmapped_columns = [headers[i] for i in sorted(unmapped)]
        mapped_fields = {m.target_field for m in mappings}
        missing = [f for f in REQUIRED_FIELDS if f not in mapped_fields]

        overall = sum(m.confidence for m in mappings) / len(mappings) if mappings else 0.0
        by_field = {m.target_field: m.confidence for m in mappings}
        file_type = detect_file_type(headers, sample_rows)

        self._record_stats(mappings, unmapped_columns)

        return MappingResult(
            mappings=mappings,
            unmapped_columns=unmapped_columns,
            missing_required_fields=missing,
            confidence_by_field=by_field,
            overall_confidence=overall,
            suggestions=generate_suggestions(mappings, missing, unmapped_columns, overall, file_type),
            file_type=file_type,
        )

    def _record_stats(self, mappings: List[ColumnMapping], unmapped_columns: List[str]):
        self.stats['mapped'] += len(mappings)
        self.stats['unmapped'] += len(unmapped_columns)
        for mapping in mappings:
            self.stats['by_field'][mapping.target_field] = \
                self.stats['by_field'].get(mapping.target_field, 0) + 1
            if mapping.typo_detected:
                self.stats['typos'] += 1


def _compare_candidates(a: ColumnMapping, b: ColumnMapping) -> int:
    if abs(a.confidence - b.confidence) > TIE_TOLERANCE:
        return -1 if a.confidence > b.confidence else 1
    return len(b.matched_synonym) - len(a.matched_synonym)


def _column_samples(rows: Sequence[Sequence], index: int) -> List[str]:
    samples = []
    for row in rows:
        if index < len(row) and row[index] is not None:
            value = str(row[index]).strip()
            if value:
                samples.append(value)
    return samples


def generate_suggestions(mappings: List[ColumnMapping],
                         missing_fields: List[str],
                         unmapped_columns: List[str],
                         overall_confidence: float,
                         file_type: Optional[FileTypeDetection] = None) -> List[str]:
    """Human-readable hints for the operator reviewing a mapping"""
    suggestions = []

    if file_type is not None:
        suggestions.extend(file_type.warnings)
        if file_type.likely_file_type not in ('budget', 'unknown'):
            suggestions.append(
                f"🚨 CRITICAL: This appears to be a {file_type.likely_file_type.upper()} file "
                f"(confidence: {file_type.confidence:.0%}). Budget files should contain columns "
                f"like department, fiscal period, and budget amounts."
            )

    if missing_fields:
        suggestions.append(
            f"⚠️  Missing required fields: {', '.join(missing_fields)}. Please map these manually."
        )
        if unmapped_columns:
            suggestions.append(
                f"💡 Unmapped columns available: {', '.join(unmapped_columns)}. "
                f"Check if any of these contain the missing fields."
            )

    low = [m.source_column for m in mappings if m.confidence < LOW_CONFIDENCE]
    if low:
        suggestions.append(f"⚠️  Low confidence detected for: {', '.join(low)}. Please review these mappings.")

    for mapping in mappings:
        if mapping.typo_detected:
            suggestions.append(
                f'🔤 Possible typo in "{mapping.source_column}" values. '
                f'Did you mean "{mapping.suggested_correction}"?'
            )

    fields = {m.target_field for m in mappings}
    if CURRENCY not in fields and BUDGETED_AMOUNT in fields:
        suggestions.append("ℹ️  No currency column detected. Currency will default to USD.")
    if SUB_CATEGORY not in fields:
        suggestions.append(
            "ℹ️  No sub-category column detected. Budgets will be tracked at department level only."
        )

    if overall_confidence >= 0.9:
        suggestions.append(f"✅ High confidence mappings ({overall_confidence:.0%}). Ready to proceed!")
    elif overall_confidence >= LOW_CONFIDENCE:
        suggestions.append(
            f"⚠️  Medium confidence mappings ({overall_confidence:.0%}). Review recommended before proceeding."
        )
    else:
        suggestions.append(f"❌ Low confidence mappings ({overall_confidence:.0%}). Manual review required.")

    return suggestions


def suggest_mappings(headers: Sequence[str],
                     sample_rows: Sequence[Sequence],
                     known_values: Optional[Dict[str, List[str]]] = None,
                     strict: bool = False) -> MappingResult:
    """Classify columns with a default ColumnMapper"""
    return ColumnMapper().classify(headers, sample_rows, known_values=known_values, strict=strict)
