"""
utils.py
Validation, dates, member search/filters, exports.
"""

from __future__ import annotations

import json
import re
import unicodedata
from datetime import date, datetime, time, timedelta

import pandas as pd

from models import CALENDAR_YEAR, SUBSCRIPTION_MONTHS, SUBSCRIPTION_TYPES

RECENT_BADGES_LIMIT = 20

MEMBER_FILTERS = {
    "active": "Active",
    "men": "Men",
    "women": "Women",
    "students": "Students",
    "expired": "Expired",
    "recent": "Recent badges",
    "no_certificate": "No certificate",
}


def parse_iso(d: str) -> date:
    return date.fromisoformat(d)


def parse_timestamp(value) -> datetime | None:
    """
    Parse a backend timestamp into a naive local datetime.
    Aware values are converted to local time first. Returns None when unparseable.
    """
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        dt = datetime.combine(value, time())
    elif isinstance(value, str) and value.strip():
        try:
            dt = datetime.fromisoformat(value.strip())
        except ValueError:
            return None
    else:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone().replace(tzinfo=None)
    return dt


def parse_date(value) -> date | None:
    """Lenient date parsing shared by every view. Returns None when unparseable."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return date.fromisoformat(value.strip())
    except ValueError:
        ts = parse_timestamp(value)
        return ts.date() if ts else None


def add_months(start: date, months: int) -> date:
    """
    Add months while keeping day in valid range (e.g., Jan 31 + 1 month => Feb 28/29).
    """
    y = start.year + (start.month - 1 + months) // 12
    m = (start.month - 1 + months) % 12 + 1
    # last day of target month
    if m == 12:
        next_month = date(y + 1, 1, 1)
    else:
        next_month = date(y, m + 1, 1)
    last_day = next_month - timedelta(days=1)
    day = min(start.day, last_day.day)
    return date(y, m, day)


def calc_end_date(start_date_iso: str, subscription_type: str) -> str:
    start = parse_iso(start_date_iso)
    if subscription_type == CALENDAR_YEAR:
        return date(start.year, 12, 31).isoformat()
    months = SUBSCRIPTION_MONTHS.get(subscription_type, 1)
    end = add_months(start, months) - timedelta(days=1)
    return end.isoformat()


def subscription_period(start: date, subscription_type: str) -> tuple[date, date]:
    """Start and end dates to store; a calendar-year subscription covers Jan 1 to Dec 31."""
    if subscription_type == CALENDAR_YEAR:
        start = date(start.year, 1, 1)
    return start, parse_iso(calc_end_date(start.isoformat(), subscription_type))


def is_expired(member: dict, today: date | None = None) -> bool:
    # endDate is the last day of access: expired from the following day
    end = parse_date(member.get("endDate"))
    if end is None:
        return True
    return end < (today or date.today())


def infer_status(member: dict, today: date | None = None) -> str:
    return "expired" if is_expired(member, today) else "active"


def age_from_birthdate(birthdate, today: date | None = None) -> int | None:
    born = parse_date(birthdate)
    if born is None:
        return None
    days = ((today or date.today()) - born).days
    return int(days // 365.25)


def full_name(member: dict | None) -> str:
    if not member:
        return ""
    return f"{member.get('firstName') or ''} {member.get('name') or ''}".strip()


def initials(member: dict | None) -> str:
    member = member or {}
    a = (member.get("firstName") or "").strip()[:1]
    b = (member.get("name") or "").strip()[:1]
    return (a + b).upper() or "?"


def validate_member_inputs(form: dict) -> list[str]:
    errors: list[str] = []
    if not (form.get("name") or "").strip():
        errors.append("Last name is required.")
    if not (form.get("firstName") or "").strip():
        errors.append("First name is required.")
    if form.get("subscriptionType") not in SUBSCRIPTION_TYPES:
        errors.append("Unknown subscription type.")
    email = (form.get("email") or "").strip()
    if email and not re.fullmatch(r"[^@\s]+@[^@\s]+\.[^@\s]+", email):
        errors.append("Email address is not valid.")
    sd = parse_date(form.get("startDate"))
    ed = parse_date(form.get("endDate"))
    if sd is None or ed is None:
        errors.append("Start/end dates must be valid ISO dates (YYYY-MM-DD).")
    elif ed < sd:
        errors.append("End date must not be before start date.")
    return errors


def validate_password(password: str, confirm: str) -> list[str]:
    errors: list[str] = []
    if password != confirm:
        errors.append("Passwords do not match.")
    if len(password) < 6:
        errors.append("Password must be at least 6 characters.")
    return errors


def sanitize_file_name(name: str) -> str:
    ascii_name = unicodedata.normalize("NFD", name)
    ascii_name = "".join(c for c in ascii_name if not unicodedata.combining(c))
    ascii_name = re.sub(r"\s+", "_", ascii_name)
    return re.sub(r"[^a-zA-Z0-9_.-]", "", ascii_name)


# ---------- Member search & filters ----------

def normalize_text(s) -> str:
    text = unicodedata.normalize("NFD", str(s or "").lower())
    return "".join(c for c in text if not unicodedata.combining(c))


def _token_to_regex(token: str) -> re.Pattern | None:
    t = normalize_text(token.strip())
    if not t:
        return None
    anchored_start = t.startswith("^")
    if anchored_start:
        t = t[1:]
    anchored_end = t.endswith("$")
    if anchored_end:
        t = t[:-1]
    body = "".join(".*" if c == "*" else "." if c == "?" else re.escape(c) for c in t)
    if not anchored_start:
        body = ".*" + body
    if not anchored_end:
        body = body + ".*"
    return re.compile("^" + body + "$", re.DOTALL)


def parse_search(search: str) -> list[list[re.Pattern]]:
    """
    Split a search string into OR-clauses of AND-ed token patterns.
    Tokens support `*` (any chars), `?` (one char) and `^`/`$` anchors.
    """
    raw = (search or "").strip()
    if not raw:
        return []
    clauses = []
    for clause in re.split(r"\s+OR\s+", raw, flags=re.IGNORECASE):
        patterns = [p for p in (_token_to_regex(tok) for tok in clause.split()) if p]
        if patterns:
            clauses.append(patterns)
    return clauses


def matches_search(member: dict, clauses: list[list[re.Pattern]]) -> bool:
    if not clauses:
        return True
    fields = [member.get(k) for k in ("name", "firstName", "badgeId", "email", "mobile")]
    haystack = normalize_text(" ".join(str(f) for f in fields if f))
    return any(all(p.search(haystack) for p in tokens) for tokens in clauses)


def normalize_files(files) -> list[dict]:
    """Members store files as a list or as its JSON encoding."""
    if isinstance(files, list):
        return files
    if isinstance(files, str) and files.strip():
        try:
            decoded = json.loads(files)
        except ValueError:
            return []
        return decoded if isinstance(decoded, list) else []
    return []


def member_has_files(member: dict) -> bool:
    files = member.get("files")
    if isinstance(files, dict):
        return bool(files)
    return bool(normalize_files(files))


def latest_members(members: list[dict], limit: int) -> list[dict]:
    """Members with the highest badge numbers, i.e. the most recently registered."""
    with_badge = [m for m in members if m.get("badge_number") is not None]
    with_badge.sort(key=lambda m: m["badge_number"], reverse=True)
    return with_badge[:limit]


def filter_members(
    members: list[dict],
    search: str = "",
    active_filter: str | None = None,
    sort_asc: bool = True,
    today: date | None = None,
) -> list[dict]:
    today = today or date.today()

    if active_filter == "recent":
        # Most recently assigned badges, regardless of the search
        return latest_members(members, RECENT_BADGES_LIMIT)

    clauses = parse_search(search)
    result = [m for m in members if matches_search(m, clauses)]

    if active_filter == "men":
        result = [m for m in result if m.get("gender") == "Homme" and not is_expired(m, today)]
    elif active_filter == "women":
        result = [m for m in result if m.get("gender") == "Femme" and not is_expired(m, today)]
    elif active_filter == "students":
        result = [m for m in result if m.get("etudiant") and not is_expired(m, today)]
    elif active_filter == "expired":
        result = [m for m in result if is_expired(m, today)]
    elif active_filter == "no_certificate":
        result = [m for m in result if not is_expired(m, today) and not member_has_files(m)]
    else:
        result = [m for m in result if not is_expired(m, today)]

    result.sort(key=lambda m: normalize_text(m.get("name")), reverse=not sort_asc)
    return result


# ---------- Periods ----------

def period_range(period: str, base: date) -> tuple[datetime, datetime]:
    """Align a week (Monday start), month or year around `base`; end is inclusive."""
    if period == "week":
        start = base - timedelta(days=base.weekday())
        end = start + timedelta(days=6)
    elif period == "month":
        start = base.replace(day=1)
        end = add_months(start, 1) - timedelta(days=1)
    else:
        start = date(base.year, 1, 1)
        end = date(base.year, 12, 31)
    return datetime.combine(start, time.min), datetime.combine(end, time.max)


def shift_period(period: str, start: date, direction: int) -> tuple[datetime, datetime]:
    if period == "week":
        base = start + timedelta(weeks=direction)
    elif period == "month":
        base = add_months(start, direction)
    else:
        base = date(start.year + direction, 1, 1)
    return period_range(period, base)


def report_period(shortcut: str, today: date | None = None) -> tuple[date, date]:
    today = today or date.today()
    if shortcut == "last_year":
        return date(today.year - 1, 1, 1), date(today.year - 1, 12, 31)
    if shortcut == "current_month":
        first = today.replace(day=1)
        return first, add_months(first, 1) - timedelta(days=1)
    return date(today.year, 1, 1), date(today.year, 12, 31)


# ---------- Exports ----------

def members_to_csv_bytes(rows) -> bytes:
    df = pd.DataFrame([dict(r) for r in rows])
    # photos can be inline data URLs; tokens are credentials
    df = df.drop(columns=["photo", "invitation_token"], errors="ignore")
    return df.to_csv(index=False).encode("utf-8")


def payments_to_csv_bytes(rows) -> bytes:
    flat = []
    for r in rows:
        row = {k: v for k, v in dict(r).items() if k != "member"}
        row["member"] = full_name(r.get("member"))
        flat.append(row)
    df = pd.DataFrame(flat)
    return df.to_csv(index=False).encode("utf-8")
