from __future__ import annotations

import logging
import math
import re
from collections.abc import Callable
from datetime import date, datetime
from typing import Any

from dateutil import parser as date_parser

"""Total coercion functions from spreadsheet cells to store values.

Every function accepts ``None | str | int | float | bool`` and never raises:
malformed input degrades to ``None`` (logged at DEBUG). The one exception is
``day_first_date``, which hands back the original value when no parser can
make sense of it, so an odd date survives instead of disappearing.
"""

__all__ = [
    "COERCIONS",
    "currency",
    "integer",
    "boolean_to_int",
    "day_first_date",
    "identity",
    "render_cell",
]

logger = logging.getLogger(__name__)

EMPTY_MARKER = "(empty)"

_CURRENCY_SYMBOLS = re.compile(r"KSh|[$€£¥]", re.IGNORECASE)
_WHITESPACE = re.compile(r"\s+")
_ERROR_MARKERS = ("#", "VALUE", "ERROR")
_DMY = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})$")
_ISO_DATE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})(?:[T ].*)?$")

_TRUE_WORDS = frozenset({"true", "yes", "1"})
_FALSE_WORDS = frozenset({"false", "no", "0", EMPTY_MARKER})


def currency(value: Any) -> float | None:
    """Parse a currency-formatted cell into a float.

    >>> currency("KSh 1,234.56")
    1234.56
    >>> currency("#VALUE!") is None
    True
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    text = str(value).strip()
    if not text:
        return None
    upper = text.upper()
    if any(marker in upper for marker in _ERROR_MARKERS):
        logger.debug(f"currency: spreadsheet error marker {text!r} -> None")
        return None
    cleaned = _WHITESPACE.sub("", _CURRENCY_SYMBOLS.sub("", text).replace(",", ""))
    if not cleaned:
        return None
    try:
        number = float(cleaned)
    except ValueError:
        logger.debug(f"currency: unparseable {text!r} -> None")
        return None
    return number if math.isfinite(number) else None


def integer(value: Any) -> int | None:
    number = currency(value)
    if number is None:
        return None
    return int(number)  # 小数部は切り捨て


def boolean_to_int(value: Any) -> int | None:
    """Map yes/no style answers to 1 / 0.

    ``true|yes|1`` -> 1, ``false|no|0|(empty)`` -> 0 (case-insensitive),
    anything else falls back to ``integer``.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return int(value) if math.isfinite(value) else None
    text = str(value).strip()
    if not text:
        return None
    lowered = text.lower()
    if lowered in _TRUE_WORDS:
        return 1
    if lowered in _FALSE_WORDS:
        return 0
    return integer(text)


def day_first_date(value: Any) -> date | Any | None:
    """Parse a date cell, reading ``DD/MM/YYYY`` day-first.

    Order: explicit ``DD/MM/YYYY``, ISO ``YYYY-MM-DD``, then dateutil with
    ``dayfirst=True``. If dateutil fails too the original value is returned
    unchanged.

    >>> day_first_date("15/05/2022")
    datetime.date(2022, 5, 15)
    >>> day_first_date("invalid-date")
    'invalid-date'
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if not text or text == EMPTY_MARKER:
        return None

    m = _DMY.match(text)
    if m:
        day, month, year = (int(g) for g in m.groups())
        try:
            return date(year, month, day)
        except ValueError:
            logger.debug(f"date: {text!r} is not a valid DD/MM/YYYY date")

    m = _ISO_DATE.match(text)
    if m:
        # dateutil の dayfirst は ISO 形式の月日も入れ替えるため先に処理
        year, month, day = (int(g) for g in m.groups())
        try:
            return date(year, month, day)
        except ValueError:
            logger.debug(f"date: {text!r} is not a valid ISO date")

    try:
        return date_parser.parse(text, dayfirst=True).date()
    except (ValueError, OverflowError) as exc:
        logger.debug(f"date: unparseable {text!r} kept as-is ({exc})")
        return value


def identity(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    text = str(value).strip()
    if not text or text == EMPTY_MARKER:
        return None
    return text


COERCIONS: dict[str, Callable[[Any], Any]] = {
    "currency": currency,
    "number": currency,
    "integer": integer,
    "boolean_to_int": boolean_to_int,
    "date": day_first_date,
    "identity": identity,
}


def render_cell(value: Any) -> str:
    """Render a store value for a USER_ENTERED sheet write."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.strftime("%d/%m/%Y")
    if isinstance(value, float):
        if not math.isfinite(value):
            return ""
        return str(int(value)) if value.is_integer() else repr(value)
    return str(value)
