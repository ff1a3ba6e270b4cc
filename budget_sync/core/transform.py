"""
Row transformation

Turns parsed spreadsheet rows into BudgetRecords using an accepted column
mapping. Rows that cannot produce every required value are dropped and
reported; they never stop the rest of the file.
"""
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple, Union

from .errors import RowTransformError
from .models import (
    BUDGETED_AMOUNT,
    CURRENCY,
    DEFAULT_CURRENCY,
    DEPARTMENT,
    FISCAL_PERIOD,
    SUB_CATEGORY,
    BudgetRecord,
    NaturalKey,
    make_key,
)

_AMOUNT_STRIP = str.maketrans('', '', '$€£¥, \t')


def cell_text(value: Any) -> str:
    """Cell value as trimmed text; integral floats lose their '.0'"""
    if value is None:
        return ''
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def parse_amount(value: Any) -> Optional[Decimal]:
    """
    Parse an amount cell to Decimal.

    Removes currency symbols, thousands separators and whitespace.

    Returns:
        Decimal, or None for an empty cell

    Raises:
        ValueError: value is not a finite number
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError(f"Could not parse amount: {value}")
    if isinstance(value, (int, float, Decimal)):
        amount = Decimal(str(value))
    else:
        cleaned = str(value).translate(_AMOUNT_STRIP)
        if not cleaned:
            return None
        try:
            amount = Decimal(cleaned)
        except InvalidOperation:
            raise ValueError(f"Could not parse amount: {value}")
    if not amount.is_finite():
        raise ValueError(f"Amount is not finite: {value}")
    return amount


def transform_rows(rows: Sequence[Dict[str, Any]],
                   column_map: Dict[str, str],
                   skip_rows: Union[Sequence[int], Mapping[int, str]] = ()) -> Tuple[List[BudgetRecord], List[RowTransformError]]:
    """
    Transform header-keyed rows into budget records

    Args:
        rows: Parsed data rows (header -> cell value)
        column_map: Canonical field -> source column
        skip_rows: 1-based row numbers already rejected by validation, or a
            mapping of row number to the reason it was rejected

    Returns:
        (records, errors) where errors holds one RowTransformError per dropped row
    """
    records = []
    errors = []
    if isinstance(skip_rows, Mapping):
        skip = dict(skip_rows)
    else:
        skip = {n: 'Row failed validation' for n in skip_rows}

    def value_of(row: Dict[str, Any], target_field: str) -> str:
        column = column_map.get(target_field)
        return cell_text(row.get(column)) if column is not None else ''

    for row_number, row in enumerate(rows, start=1):
        if row_number in skip:
            errors.append(RowTransformError(row_number, skip[row_number]))
            continue

        department = value_of(row, DEPARTMENT)
        fiscal_period = value_of(row, FISCAL_PERIOD)
        missing = [name for name, value in ((DEPARTMENT, department), (FISCAL_PERIOD, fiscal_period))
                   if not value]
        if missing:
            errors.append(RowTransformError(
                row_number, f"Missing required value for {', '.join(missing)}", field=missing[0]))
            continue

        amount_column = column_map.get(BUDGETED_AMOUNT)
        try:
            amount = parse_amount(row.get(amount_column)) if amount_column else None
        except ValueError as e:
            errors.append(RowTransformError(row_number, str(e), field=BUDGETED_AMOUNT))
            continue
        if amount is None:
            errors.append(RowTransformError(
                row_number, f"Missing required value for {BUDGETED_AMOUNT}", field=BUDGETED_AMOUNT))
            continue

        records.append(BudgetRecord(
            department=department,
            sub_category=value_of(row, SUB_CATEGORY) or None,
            fiscal_period=fiscal_period,
            budgeted_amount=amount,
            currency=(value_of(row, CURRENCY) or DEFAULT_CURRENCY).upper(),
        ))

    return records, errors


def row_keys(rows: Sequence[Dict[str, Any]],
             column_map: Dict[str, str],
             row_numbers: Iterable[int]) -> Set[NaturalKey]:
    """
    Natural keys named by the given 1-based rows

    Rows without a department or fiscal period identify no budget and are
    left out.
    """
    keys = set()
    for row_number in row_numbers:
        if not 1 <= row_number <= len(rows):
            continue
        row = rows[row_number - 1]
        department, sub_category, fiscal_period = (
            cell_text(row.get(column_map[name])) if name in column_map else ''
            for name in (DEPARTMENT, SUB_CATEGORY, FISCAL_PERIOD)
        )
        if department and fiscal_period:
            keys.add(make_key(department, sub_category, fiscal_period))
    return keys
