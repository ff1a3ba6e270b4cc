"""
Spreadsheet parsers

Reads CSV, .xlsx and .xls files into a header row plus data rows aligned with
it. Fully blank rows are dropped; nothing else is interpreted here.
"""
import csv
import logging
import os
import zipfile
from dataclasses import dataclass, field
from typing import Any, Dict, List

import openpyxl
import xlrd
from openpyxl.utils.exceptions import InvalidFileException

from ..core.errors import EmptyOrUnparseable, UnsupportedFileType

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = ('.csv', '.xlsx', '.xls')


@dataclass
class ParsedFile:
    """Header row and data rows of the first sheet of a file"""
    headers: List[str]
    rows: List[List[Any]] = field(default_factory=list)

    def records(self) -> List[Dict[str, Any]]:
        """Rows keyed by header"""
        return [dict(zip(self.headers, row)) for row in self.rows]


def file_extension(file_name: str) -> str:
    return os.path.splitext(file_name)[1].lower()


def is_supported_file(file_name: str) -> bool:
    return file_extension(file_name) in SUPPORTED_EXTENSIONS


def _is_blank(row) -> bool:
    return all(cell is None or str(cell).strip() == '' for cell in row)


def _build(table: List[List[Any]], file_name: str) -> ParsedFile:
    table = [row for row in table if not _is_blank(row)]
    if not table:
        raise EmptyOrUnparseable(f"File has no header row: {file_name}")

    headers = ['' if h is None else str(h).strip() for h in table[0]]
    width = len(headers)
    rows = []
    for row in table[1:]:
        row = list(row[:width])
        row.extend([''] * (width - len(row)))
        rows.append(row)
    return ParsedFile(headers=headers, rows=rows)


def parse_csv(file_path: str) -> ParsedFile:
    try:
        with open(file_path, newline='', encoding='utf-8-sig') as f:
            table = [row for row in csv.reader(f)]
    except (UnicodeDecodeError, csv.Error) as e:
        raise EmptyOrUnparseable(f"CSV parse failed: {e}") from e
    parsed = _build(table, file_path)
    logger.info("Parsed CSV %s: %d rows", os.path.basename(file_path), len(parsed.rows))
    return parsed


def parse_xlsx(file_path: str) -> ParsedFile:
    try:
        workbook = openpyxl.load_workbook(file_path, read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError) as e:
        raise EmptyOrUnparseable(f"Excel parse failed: {e}") from e
    try:
        sheet = workbook.worksheets[0]
        table = [list(row) for row in sheet.iter_rows(values_only=True)]
    finally:
        workbook.close()
    parsed = _build(table, file_path)
    logger.info("Parsed Excel %s: %d rows", os.path.basename(file_path), len(parsed.rows))
    return parsed


def parse_xls(file_path: str) -> ParsedFile:
    try:
        workbook = xlrd.open_workbook(file_path)
    except xlrd.XLRDError as e:
        raise EmptyOrUnparseable(f"Excel parse failed: {e}") from e
    sheet = workbook.sheet_by_index(0)
    table = []
    for r in range(sheet.nrows):
        row = []
        for value in sheet.row_values(r):
            if isinstance(value, float) and value.is_integer():
                value = int(value)
            row.append(value)
        table.append(row)
    parsed = _build(table, file_path)
    logger.info("Parsed Excel %s: %d rows", os.path.basename(file_path), len(parsed.rows))
    return parsed


PARSERS = {
    '.csv': parse_csv,
    '.xlsx': parse_xlsx,
    '.xls': parse_xls,
}


def parse_file(file_path: str, file_name: str = None) -> ParsedFile:
    """
    Parse a budget spreadsheet by extension

    Args:
        file_path: Local path to the file
        file_name: Original name, if the staged path carries a prefix

    Raises:
        UnsupportedFileType: extension is not .csv, .xlsx or .xls
        EmptyOrUnparseable: file cannot be read or has no header row
    """
    ext = file_extension(file_name or file_path)
    parser = PARSERS.get(ext)
    if parser is None:
        raise UnsupportedFileType(f"Unsupported file format: {ext or '(none)'}")
    return parser(file_path)
