"""Parsers that turn raw registry records into local model attributes."""

import logging
import re
import unicodedata
from datetime import date, datetime
from typing import Any, Optional

from rostersync.services.registry import first_field

logger = logging.getLogger(__name__)

# Field-name variants seen in registry payloads, in lookup order
NAME_FIELDS = ("name", "title")
FIRST_NAME_FIELDS = ("first-name", "firstName", "first_name")
LAST_NAME_FIELDS = ("last-name", "lastName", "last_name")
JERSEY_FIELDS = ("jersey-number", "jerseyNumber", "jersey_number", "shirt-number")
START_DATE_FIELDS = ("start-date", "startDate", "start_date")
END_DATE_FIELDS = ("end-date", "endDate", "end_date")
CURRENT_SEASON_FIELDS = ("is-current-season", "isCurrentSeason", "is_current_season", "current")


def normalize_name(name: Optional[str]) -> str:
    """Normalize a display name for duplicate detection: no accents, lowercase, single spaces."""
    if not name:
        return ""
    decomposed = unicodedata.normalize("NFKD", name)
    stripped = "".join(c for c in decomposed if not unicodedata.combining(c))
    return re.sub(r"[^a-z0-9]+", " ", stripped.lower()).strip()


def remote_id(record: dict) -> str:
    """The registry id of a record, as a string."""
    value = record.get("id")
    if value is None or value == "":
        raise ValueError("Remote record has no id")
    return str(value)


def _text(value: Any) -> str:
    return str(value).strip() if value is not None else ""


def _parse_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        logger.debug(f"Ignoring non-numeric value {value!r}")
        return None


def _parse_date(value: Any) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, date):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00")).date()
    except ValueError:
        logger.debug(f"Ignoring unparseable date {value!r}")
        return None


def _parse_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes")
    return bool(value)


def parse_group(record: dict) -> dict[str, Any]:
    """Registry group -> Team attributes."""
    name = _text(first_field(record, NAME_FIELDS))
    if not name:
        raise ValueError(f"Group {record.get('id')} has no name")
    return {"name": name}


def parse_contact(record: dict) -> dict[str, Any]:
    """Registry contact -> Player attributes."""
    first_name = _text(first_field(record, FIRST_NAME_FIELDS))
    last_name = _text(first_field(record, LAST_NAME_FIELDS))

    if not first_name and not last_name:
        # Some accounts only return a combined display name
        full_name = _text(first_field(record, NAME_FIELDS))
        first_name, _, last_name = full_name.partition(" ")

    if not first_name and not last_name:
        raise ValueError(f"Contact {record.get('id')} has no name")

    return {
        "first_name": first_name or last_name,
        "last_name": last_name if first_name else "",
        "jersey_number": _parse_int(first_field(record, JERSEY_FIELDS)),
    }


def parse_season(record: dict) -> dict[str, Any]:
    """Registry season -> Season attributes."""
    name = _text(first_field(record, NAME_FIELDS))
    if not name:
        raise ValueError(f"Season {record.get('id')} has no name")
    return {
        "name": name,
        "start_date": _parse_date(first_field(record, START_DATE_FIELDS)),
        "end_date": _parse_date(first_field(record, END_DATE_FIELDS)),
        "is_current": _parse_bool(first_field(record, CURRENT_SEASON_FIELDS)),
    }
