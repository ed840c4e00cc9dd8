"""
Defensive extraction of CRM property values.

The CRM returns every property as a string or null. Values are
normalised to one of: str, float, datetime.date, or "" for anything
missing or unparseable. Extraction never raises.
"""

from __future__ import annotations

import logging
import math
import re
from datetime import date, datetime, timezone
from typing import Any
from zoneinfo import ZoneInfo

logger = logging.getLogger(__name__)

# Epoch-millisecond timestamps outside 2000-01-01..2100-01-01 are junk
MIN_EPOCH_MS = 946_684_800_000
MAX_EPOCH_MS = 4_102_444_800_000

_DATE_ONLY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_EPOCH_RE = re.compile(r"^-?\d+(\.\d+)?$")


def extract_text(value: Any) -> str:
    """Null becomes the empty string; everything else its text."""
    if value is None:
        return ""
    return str(value).strip()


def extract_number(value: Any) -> float | str:
    """Parse a number, or return "" when the value is not numeric."""
    if value is None or isinstance(value, bool):
        return ""
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        text = str(value).strip().replace(",", "")
        if not text:
            return ""
        try:
            number = float(text)
        except ValueError:
            return ""
    if math.isnan(number) or math.isinf(number):
        return ""
    return number


def extract_date(value: Any, tz: ZoneInfo | None = None) -> date | str:
    """
    Normalise a CRM date to a calendar date in ``tz``.

    Accepts YYYY-MM-DD, epoch milliseconds within 2000..2100, or an
    ISO-8601 datetime (a trailing 'Z' is UTC). Anything else is "".
    """
    if value is None or isinstance(value, bool):
        return ""
    if isinstance(value, datetime):
        return _localise(value, tz).date()
    if isinstance(value, date):
        return value

    text = str(value).strip()
    if not text:
        return ""

    if _DATE_ONLY_RE.match(text):
        try:
            return date.fromisoformat(text)
        except ValueError:
            return ""

    if _EPOCH_RE.match(text):
        millis = float(text)
        if not MIN_EPOCH_MS <= millis <= MAX_EPOCH_MS:
            logger.debug("Discarding out-of-range timestamp %s", text)
            return ""
        moment = datetime.fromtimestamp(millis / 1000, tz=timezone.utc)
        return _localise(moment, tz).date()

    parsed = extract_datetime(text, tz)
    return parsed.date() if parsed else ""


def extract_datetime(value: Any, tz: ZoneInfo | None = None) -> datetime | None:
    """Parse an ISO-8601 or epoch-ms timestamp, or None."""
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    if _EPOCH_RE.match(text):
        millis = float(text)
        if not MIN_EPOCH_MS <= millis <= MAX_EPOCH_MS:
            return None
        return _localise(datetime.fromtimestamp(millis / 1000, tz=timezone.utc), tz)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return _localise(parsed, tz)


def _localise(moment: datetime, tz: ZoneInfo | None) -> datetime:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(tz) if tz is not None else moment


def normalise_properties(
    raw: dict[str, Any] | None,
    kinds: dict[str, str],
    tz: ZoneInfo | None = None,
) -> dict[str, Any]:
    """
    Normalise a CRM property bag.

    Args:
        raw: The record's "properties" object
        kinds: Property name -> column kind (date / number / anything else)
        tz: Timezone dates are expressed in

    Returns:
        Every property in ``raw`` plus every property in ``kinds``,
        normalised by kind. Missing properties become "".
    """
    raw = raw or {}
    result: dict[str, Any] = {}
    for name in set(raw) | set(kinds):
        value = raw.get(name)
        kind = kinds.get(name, "text")
        if kind == "date":
            result[name] = extract_date(value, tz)
        elif kind == "number":
            result[name] = extract_number(value)
        else:
            result[name] = extract_text(value)
    return result
