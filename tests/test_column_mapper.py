"""Tests for the column mapping engine"""
import pytest

from budget_sync.core.column_mapper import (
    ColumnMapper,
    TYPO_CONFIDENCE_CAP,
    _compare_candidates,
    detect_file_type,
    detect_typo,
    match_header,
    suggest_mappings,
)
from budget_sync.core.models import (
    BUDGETED_AMOUNT,
    CURRENCY,
    DEPARTMENT,
    FISCAL_PERIOD,
    REQUIRED_FIELDS,
    SUB_CATEGORY,
    ColumnMapping,
)


def test_short_headers_map_all_required_fields():
    result = suggest_mappings(['Dept', 'FY', 'Budget'], [['Engineering', 'FY2025', '500000']])

    assert result.column_map() == {
        DEPARTMENT: 'Dept',
        FISCAL_PERIOD: 'FY',
        BUDGETED_AMOUNT: 'Budget',
    }
    assert all(m.confidence >= 0.75 for m in result.mappings)
    assert result.missing_required_fields == []
    assert result.unmapped_columns == []


@pytest.mark.parametrize('header, target_field', [
    ('Department', DEPARTMENT),
    ('Sub Category', SUB_CATEGORY),
    ('Fiscal Year', FISCAL_PERIOD),
    ('Amount', BUDGETED_AMOUNT),
    ('Currency', CURRENCY),
])
def test_exact_synonym_scores_one(header, target_field):
    result = suggest_mappings([header], [])

    mapping = result.get(target_field)
    assert mapping is not None
    assert mapping.source_column == header
    assert mapping.confidence == 1.0


def test_exact_header_stays_one_with_unmatched_values():
    result = suggest_mappings(['Department'], [['???'], ['42']])
    assert result.get(DEPARTMENT).confidence == 1.0


@pytest.mark.parametrize('header', ['Notes', 'Comments', 'Owner Email'])
def test_header_without_any_match_is_unmapped(header):
    result = suggest_mappings(['Dept', header], [['Sales', 'anything']])

    assert header in result.unmapped_columns
    assert all(m.source_column != header for m in result.mappings)


@pytest.mark.parametrize('headers', [
    ['Dept', 'Notes'],
    ['FY', 'Budget'],
    ['Currency'],
    [],
])
def test_missing_required_fields_is_required_minus_mapped(headers):
    result = suggest_mappings(headers, [])

    mapped = {m.target_field for m in result.mappings}
    assert result.missing_required_fields == [f for f in REQUIRED_FIELDS if f not in mapped]


def test_typo_in_header_and_value():
    result = suggest_mappings(
        ['Departmnet', 'FY', 'Budget'],
        [['Enginering', 'FY2025', '500000']],
        known_values={DEPARTMENT: ['Engineering', 'Sales', 'Marketing']},
    )

    mapping = result.get(DEPARTMENT)
    assert mapping.source_column == 'Departmnet'
    assert mapping.typo_detected is True
    assert mapping.suggested_correction == 'Engineering'
    assert mapping.confidence <= TYPO_CONFIDENCE_CAP
    assert 'typo' in mapping.rationale
    assert any('Did you mean "Engineering"' in s for s in result.suggestions)


def test_each_field_is_claimed_once():
    result = suggest_mappings(['Budget', 'Amount', 'Dept', 'FY'],
                              [['500000', '400000', 'Sales', 'FY2025']])

    assert result.column_map()[BUDGETED_AMOUNT] == 'Budget'
    assert 'Amount' in result.unmapped_columns
    targets = [m.target_field for m in result.mappings]
    assert len(targets) == len(set(targets))


def test_stronger_later_column_claims_the_field():
    result = suggest_mappings(['Dept Name', 'Department'], [])

    assert result.column_map()[DEPARTMENT] == 'Department'
    assert result.unmapped_columns == ['Dept Name']


def test_mappings_follow_header_order():
    result = suggest_mappings(['Amount', 'Department', 'Fiscal Year'], [])
    assert [m.source_column for m in result.mappings] == ['Amount', 'Department', 'Fiscal Year']


def test_values_raise_a_substring_match():
    header_only = suggest_mappings(['Owning Team'], [])
    with_values = suggest_mappings(['Owning Team'], [['Engineering'], ['Sales']])

    assert header_only.get(DEPARTMENT).confidence == pytest.approx(0.9)
    assert with_values.get(DEPARTMENT).confidence == pytest.approx(0.6 * 0.9 + 0.4 * 1.0)


@pytest.mark.parametrize('short_confidence, long_confidence', [
    (0.900, 0.895),
    (0.94, 0.90),
    (0.90, 0.94),
])
def test_near_tie_prefers_longer_synonym(short_confidence, long_confidence):
    short = ColumnMapping('x', DEPARTMENT, short_confidence, '', matched_synonym='bu')
    long = ColumnMapping('x', FISCAL_PERIOD, long_confidence, '', matched_synonym='budget period')

    assert _compare_candidates(long, short) < 0
    assert _compare_candidates(short, long) > 0


@pytest.mark.parametrize('weak_confidence', [0.9, 0.94])
def test_clear_winner_ignores_synonym_length(weak_confidence):
    strong = ColumnMapping('x', DEPARTMENT, 1.0, '', matched_synonym='bu')
    weak = ColumnMapping('x', FISCAL_PERIOD, weak_confidence, '', matched_synonym='budget period')
    assert _compare_candidates(strong, weak) < 0


@pytest.mark.parametrize('header, strategy', [
    ('dept', 'exact'),
    ('Dept Name', 'substring'),
    ('Deparment', 'fuzzy'),
])
def test_match_header_strategies(header, strategy):
    match = match_header(header, ['department', 'dept'])
    assert match.strategy == strategy


def test_match_header_empty():
    assert match_header('   ', ['department']) is None


@pytest.mark.parametrize('value, expected_typo, expected_suggestion', [
    ('engineering', False, None),
    ('Enginering', True, 'Engineering'),
    ('Salse', False, None),
    ('Legal', False, None),
])
def test_detect_typo(value, expected_typo, expected_suggestion):
    check = detect_typo(value, ['Engineering', 'Sales', 'Marketing'])
    assert check.has_typo is expected_typo
    assert check.suggestion == expected_suggestion


def test_payroll_file_is_flagged():
    headers = ['Employee ID', 'Salary', 'Bonus', 'Tax']
    rows = [['E1', '100000', '5000', '2000']]

    detection = detect_file_type(headers, rows)
    assert detection.likely_file_type == 'payroll'

    result = suggest_mappings(headers, rows)
    assert any('CRITICAL' in s and 'PAYROLL' in s for s in result.suggestions)


def test_budget_file_detected():
    detection = detect_file_type(['Department', 'Fiscal Year', 'Budget'], [['Sales', 'FY2025', '1000']])
    assert detection.likely_file_type == 'budget'
    assert detection.warnings == []


def test_suggestions_for_default_fields():
    result = suggest_mappings(['Dept', 'FY', 'Budget'], [['Engineering', 'FY2025', '500000']])

    assert any('default to USD' in s for s in result.suggestions)
    assert any('sub-category' in s for s in result.suggestions)
    assert any('High confidence' in s for s in result.suggestions)


def test_mapper_keeps_stats():
    mapper = ColumnMapper()
    mapper.classify(['Dept', 'FY', 'Budget', 'Notes'], [['Sales', 'FY2025', '10', 'n/a']])

    assert mapper.stats['mapped'] == 3
    assert mapper.stats['unmapped'] == 1
    assert mapper.stats['by_field'][DEPARTMENT] == 1
