"""
importer.py
Presence import from the access-control Excel export (columns Quand / Quoi / Qui).
"""

from __future__ import annotations

import logging
import re
from datetime import date, datetime, timedelta

import pandas as pd
from supabase import Client

import db
from models import IMPORT_PRESENCE_TYPES, ImportResult

log = logging.getLogger(__name__)

EXCEL_EPOCH = datetime(1899, 12, 30)
FR_DATETIME = re.compile(r"^(\d{2})/(\d{2})/(\d{2}|\d{4})\s+(\d{2}):(\d{2})$")


def _blank(value) -> bool:
    if value is None:
        return True
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


def _badge(value) -> str:
    if _blank(value):
        return ""
    # numeric badge cells come back as floats
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value).strip()


def parse_cell_datetime(value) -> datetime | None:
    """
    Excel cells arrive as datetimes, serial day numbers, or French-formatted text
    ("dd/mm/yy HH:MM" or "dd/mm/yyyy HH:MM"). Result is naive wall-clock time.
    """
    if isinstance(value, datetime):
        return value.to_pydatetime() if isinstance(value, pd.Timestamp) else value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return EXCEL_EPOCH + timedelta(seconds=round(float(value) * 86400))
    if isinstance(value, str):
        text = value.strip()
        m = FR_DATETIME.match(text)
        if m:
            dd, mm, yy, hh, mi = m.groups()
            year = int(yy) + 2000 if len(yy) == 2 else int(yy)
            try:
                return datetime(year, int(mm), int(dd), int(hh), int(mi))
            except ValueError:
                return None
        try:
            return datetime.fromisoformat(text)
        except ValueError:
            return None
    return None


def parse_presence_rows(df: pd.DataFrame) -> ImportResult:
    """Keep badge/remote-control rows with a badge and a readable date; count the rest."""
    counts = {"filtered_type": 0, "no_badge": 0, "no_date": 0, "unparsable_date": 0}
    payload: list[dict] = []

    for row in df.to_dict(orient="records"):
        quoi = "" if _blank(row.get("Quoi")) else str(row.get("Quoi")).strip()
        if quoi not in IMPORT_PRESENCE_TYPES:
            counts["filtered_type"] += 1
            continue
        badge_id = _badge(row.get("Qui"))
        if not badge_id:
            counts["no_badge"] += 1
            continue
        quand = row.get("Quand")
        if _blank(quand):
            counts["no_date"] += 1
            continue
        at = parse_cell_datetime(quand)
        if at is None:
            counts["unparsable_date"] += 1
            continue
        payload.append({"badgeId": badge_id, "timestamp": at.astimezone().isoformat()})

    return ImportResult(total_rows=len(df), kept=len(payload), payload=payload, **counts)


def read_presence_workbook(file) -> pd.DataFrame:
    """First sheet of an .xlsx/.xls file (path or file-like)."""
    return pd.read_excel(file, sheet_name=0)


def import_presences(client: Client, file) -> tuple[ImportResult, int]:
    """Parse the workbook and upsert the kept rows. Returns (parse result, rows upserted)."""
    result = parse_presence_rows(read_presence_workbook(file))
    log.info(
        "presence import: %d rows, %d kept, %d other type, %d no badge, %d no date, %d unreadable",
        result.total_rows, result.kept, result.filtered_type, result.no_badge,
        result.no_date, result.unparsable_date,
    )
    if not result.payload:
        return result, 0
    return result, db.upsert_presences(client, result.payload)
