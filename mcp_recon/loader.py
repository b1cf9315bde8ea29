"""
Source Loader for loan reconciliation exports

Reads a ``.csv`` or ``.xlsx`` reconciliation sheet into ``LoanRecord``s.
Malformed rows are logged and skipped; a file that yields no usable record
at all raises ``LoadError``.

Expected columns (header names are matched loosely, e.g. "Loan ID",
"loan_id" and "LoanID" are the same column):
    LoanID, BorrowerName, Servicer_LoanAmount, FNMA_LoanAmount,
    DifferenceAmount, ReconciledStatus
"""

import csv
import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from loguru import logger
from openpyxl import load_workbook

from .models import LoanRecord


class LoadError(RuntimeError):
    """The source could not produce any usable records."""


# ---------------------------------------------------------------------------
# Column mapping
# ---------------------------------------------------------------------------

# field name -> normalized header spellings
_COLUMN_ALIASES: Dict[str, Tuple[str, ...]] = {
    "loan_id":              ("loanid", "loan", "loannumber", "id"),
    "borrower_name":        ("borrowername", "borrower", "customername", "name"),
    "servicer_loan_amount": ("servicerloanamount", "serviceramount", "servicer"),
    "fnma_loan_amount":     ("fnmaloanamount", "fnmaamount", "fnma"),
    "difference_amount":    ("differenceamount", "difference", "diff"),
    "reconciled_status":    ("reconciledstatus", "status", "reconciled"),
}

# Positional fallback when the header row is not recognised
_POSITIONAL_FIELDS: Tuple[str, ...] = tuple(_COLUMN_ALIASES)

_EXCEL_SUFFIXES = {".xlsx", ".xlsm"}


def _normalise_header(name: Any) -> str:
    return re.sub(r"[^a-z0-9]", "", str(name or "").lower())


def _map_columns(header: Sequence[Any]) -> Dict[str, int]:
    """Map record field names to column indices for a header row."""
    normalised = [_normalise_header(h) for h in header]
    mapping: Dict[str, int] = {}
    for field_name, aliases in _COLUMN_ALIASES.items():
        for alias in aliases:
            if alias in normalised:
                mapping[field_name] = normalised.index(alias)
                break

    if "loan_id" not in mapping:
        logger.warning("Header row not recognised, falling back to positional columns")
        return {name: i for i, name in enumerate(_POSITIONAL_FIELDS)}
    return mapping


# ---------------------------------------------------------------------------
# Cell parsing
# ---------------------------------------------------------------------------

def parse_amount(value: Any) -> Optional[Decimal]:
    """
    Parse a currency cell. Accepts numbers, "$1,234.50" and "(1,234.50)".
    Returns None for a blank cell; raises ValueError for garbage.
    """
    if value is None:
        return None
    # Excel booleans are ints to isinstance
    if isinstance(value, bool):
        raise ValueError(f"invalid amount {value!r}")

    text = str(value).strip()
    if not text:
        return None
    negative = text.startswith("(") and text.endswith(")")
    cleaned = text.strip("()").replace("$", "").replace(",", "").strip()
    try:
        amount = Decimal(cleaned)
    except InvalidOperation:
        raise ValueError(f"invalid amount {text!r}") from None
    if not amount.is_finite():
        raise ValueError(f"invalid amount {text!r}")
    return -amount if negative else amount


def _cell(row: Sequence[Any], index: Optional[int]) -> Any:
    if index is None or index >= len(row):
        return None
    return row[index]


def _text(value: Any) -> str:
    return "" if value is None else str(value).strip()


def row_to_record(row: Sequence[Any], columns: Dict[str, int]) -> LoanRecord:
    """Convert one data row to a LoanRecord. Raises ValueError if malformed."""
    loan_id = _text(_cell(row, columns.get("loan_id")))
    if not loan_id:
        raise ValueError("missing loan id")

    servicer = parse_amount(_cell(row, columns.get("servicer_loan_amount"))) or Decimal("0")
    fnma = parse_amount(_cell(row, columns.get("fnma_loan_amount"))) or Decimal("0")
    difference = parse_amount(_cell(row, columns.get("difference_amount")))
    if difference is None:
        difference = servicer - fnma

    return LoanRecord(
        loan_id=loan_id,
        borrower_name=_text(_cell(row, columns.get("borrower_name"))),
        servicer_loan_amount=servicer,
        fnma_loan_amount=fnma,
        difference_amount=difference,
        reconciled_status=_text(_cell(row, columns.get("reconciled_status"))),
    )


# ---------------------------------------------------------------------------
# Row readers
# ---------------------------------------------------------------------------

def _iter_csv_rows(path: Path) -> Iterator[List[Any]]:
    with open(path, newline="", encoding="utf-8-sig", errors="replace") as fh:
        yield from csv.reader(fh)


def _iter_excel_rows(path: Path) -> Iterator[Tuple[Any, ...]]:
    workbook = load_workbook(path, read_only=True, data_only=True)
    try:
        sheet = workbook.worksheets[0]
        yield from sheet.iter_rows(values_only=True)
    finally:
        workbook.close()


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

@dataclass
class LoadResult:
    records: List[LoanRecord] = field(default_factory=list)
    skipped_rows: int = 0
    source: Optional[Path] = None

    def __len__(self) -> int:
        return len(self.records)


def parse_rows(rows: Iterable[Sequence[Any]]) -> LoadResult:
    """
    Parse a header row followed by data rows.

    Blank rows are ignored; malformed rows are logged and counted.
    """
    result = LoadResult()
    iterator = iter(rows)
    header = next(iterator, None)
    if header is None:
        return result
    columns = _map_columns(header)

    # row 1 is the header
    for row_number, row in enumerate(iterator, start=2):
        if not any(_text(v) for v in row):
            continue
        try:
            result.records.append(row_to_record(row, columns))
        except (ValueError, TypeError, InvalidOperation) as exc:
            result.skipped_rows += 1
            logger.warning(f"Error parsing row {row_number}: {exc}")
    return result


def load_records(path: Path) -> LoadResult:
    """
    Load every parseable record from a reconciliation export.

    Raises:
        LoadError: the file is missing, unreadable, of an unsupported type,
            or contains no usable records.
    """
    path = Path(path)
    if not path.exists():
        raise LoadError(f"Source file not found: {path}")

    suffix = path.suffix.lower()
    if suffix == ".csv":
        rows = _iter_csv_rows(path)
    elif suffix in _EXCEL_SUFFIXES:
        rows = _iter_excel_rows(path)
    else:
        raise LoadError(f"Unsupported source type '{suffix}' (expected .csv or .xlsx)")

    logger.info(f"Starting to load source file: {path}")
    try:
        result = parse_rows(rows)
    except Exception as exc:
        raise LoadError(f"Could not read {path}: {exc}") from exc
    result.source = path

    if not result.records:
        raise LoadError(f"No usable records in {path} ({result.skipped_rows} rows skipped)")

    logger.info(
        f"Loaded {len(result.records)} records from {path.name}"
        + (f" ({result.skipped_rows} malformed rows skipped)" if result.skipped_rows else "")
    )
    return result
