import math
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Iterable, Optional

from openpyxl import load_workbook
from rapidfuzz.distance import Levenshtein

from models import Month
from schemas import MonthlyAmountRow, ParsedSheet


MONTH_COLUMN = "Month"
AMOUNT_COLUMN = "Amount"
REQUIRED_COLUMNS = (MONTH_COLUMN, AMOUNT_COLUMN)

# signed 64-bit, the range of the amount_cents column
MAX_CENTS = 2**63 - 1
MIN_CENTS = -(2**63)

_MONTH_ALIASES: dict[str, Month] = {}
for _month in Month:
    _MONTH_ALIASES[_month.value.lower()] = _month
    _MONTH_ALIASES[_month.value[:3].lower()] = _month
_MONTH_ALIASES["sept"] = Month.september


def required_columns_message() -> str:
    return "Invalid Excel format. Required columns: " + ", ".join(REQUIRED_COLUMNS)


def parse_month(value: Any) -> Optional[Month]:
    """
    Resolve a spreadsheet cell to a calendar month.

    Accepts month names and three-letter abbreviations in any case, numbers
    1-12, dates, and names one typo away from exactly one month. Returns None
    for anything else.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (datetime, date)):
        return Month.from_ordinal(value.month)
    if isinstance(value, (int, float, Decimal)):
        if isinstance(value, float) and not math.isfinite(value):
            return None
        if value != int(value) or not 1 <= int(value) <= 12:
            return None
        return Month.from_ordinal(int(value))

    text = str(value).strip()
    if not text:
        return None
    lowered = text.lower()
    if lowered in _MONTH_ALIASES:
        return _MONTH_ALIASES[lowered]
    if lowered.isdigit():
        number = int(lowered)
        return Month.from_ordinal(number) if 1 <= number <= 12 else None
    if len(lowered) < 4:
        return None

    best_distance: Optional[int] = None
    best: list[Month] = []
    for month in Month:
        dist = int(Levenshtein.distance(lowered, month.value.lower()))
        if best_distance is None or dist < best_distance:
            best_distance = dist
            best = [month]
        elif dist == best_distance:
            best.append(month)
    if best_distance is not None and best_distance <= 1 and len(best) == 1:
        return best[0]
    return None


def parse_amount(value: Any) -> int:
    """Coerce a cell to signed cents; raises ValueError when it is not a number."""
    if value is None or isinstance(value, bool):
        raise ValueError("Invalid amount")
    if isinstance(value, Decimal):
        amount = value
    elif isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            raise ValueError("Invalid amount")
        amount = Decimal(str(value))
    else:
        clean = str(value).strip()
        for symbol in ("€", "$", "£", " ", "\u00a0"):
            clean = clean.replace(symbol, "")
        clean = clean.replace(",", ".")
        if clean.count(".") > 1:
            parts = clean.split(".")
            clean = "".join(parts[:-1]) + "." + parts[-1]
        if not clean:
            raise ValueError("Invalid amount")
        try:
            amount = Decimal(clean)
        except InvalidOperation as exc:
            raise ValueError("Invalid amount") from exc
    if not amount.is_finite():
        raise ValueError("Invalid amount")
    try:
        cents = int((amount * 100).quantize(Decimal("1")))
    except ArithmeticError as exc:
        raise ValueError("Invalid amount") from exc
    if not MIN_CENTS <= cents <= MAX_CENTS:
        raise ValueError("Amount out of range")
    return cents


def _header_index(header: Iterable[Any]) -> dict[str, int]:
    index: dict[str, int] = {}
    for position, cell in enumerate(header):
        if cell is None:
            continue
        key = str(cell).strip().lower()
        if key and key not in index:
            index[key] = position
    return index


def _is_blank(cell: Any) -> bool:
    return cell is None or (isinstance(cell, str) and not cell.strip())


def parse_rows(rows: Iterable[tuple[Any, ...]]) -> ParsedSheet:
    """
    Turn raw sheet rows (header first) into monthly amounts.

    Rows with an unusable Month or a non-numeric Amount are dropped and
    counted in ``skipped``; fully blank rows are ignored. Raises ValueError
    when the header is missing a required column.
    """
    iterator = iter(rows)
    header = next(iterator, None)
    if header is None:
        raise ValueError(required_columns_message())
    columns = _header_index(header)
    month_pos = columns.get(MONTH_COLUMN.lower())
    amount_pos = columns.get(AMOUNT_COLUMN.lower())
    if month_pos is None or amount_pos is None:
        raise ValueError(required_columns_message())

    parsed: list[MonthlyAmountRow] = []
    skipped = 0
    for raw in iterator:
        if raw is None or all(_is_blank(cell) for cell in raw):
            continue
        month_cell = raw[month_pos] if month_pos < len(raw) else None
        amount_cell = raw[amount_pos] if amount_pos < len(raw) else None
        month = parse_month(month_cell)
        try:
            amount_cents = parse_amount(amount_cell)
        except ValueError:
            amount_cents = None
        if month is None or amount_cents is None:
            skipped += 1
            continue
        parsed.append(MonthlyAmountRow(month=month, amount_cents=amount_cents))
    return ParsedSheet(rows=parsed, skipped=skipped)


def parse_workbook(path: Path) -> ParsedSheet:
    """Read the first sheet of an .xlsx file; raises ValueError if unreadable."""
    try:
        wb = load_workbook(path, read_only=True, data_only=True)
    except Exception as exc:
        raise ValueError(f"Could not read spreadsheet: {exc}") from exc
    try:
        if not wb.worksheets:
            raise ValueError(required_columns_message())
        ws = wb.worksheets[0]
        return parse_rows(ws.iter_rows(values_only=True))
    except ValueError:
        raise
    except Exception as exc:
        # sheet XML is parsed lazily while rows are read
        raise ValueError(f"Could not read spreadsheet: {exc}") from exc
    finally:
        wb.close()
