"""
models.py
Lightweight domain helpers (subscription types, enums, dataclasses).
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import date, datetime

# Subscription durations in months (used for endDate auto-calculation).
# "Année civile" always ends on Dec 31 of the start year.
SUBSCRIPTION_MONTHS = {
    "Mensuel": 1,
    "Trimestriel": 3,
    "Semestriel": 6,
    "Annuel": 12,
    "Année civile": 12,
}
CALENDAR_YEAR = "Année civile"
SUBSCRIPTION_TYPES = list(SUBSCRIPTION_MONTHS.keys())

GENDERS = ["Homme", "Femme"]

PAYMENT_METHODS = ["espèces", "carte", "chèque", "autre"]
# Legacy spellings found in older rows
PAYMENT_METHOD_ALIASES = {"especes": "espèces", "cheque": "chèque"}

INVITATION_STATUSES = {
    "not_invited": "Not invited",
    "pending": "Pending",
    "accepted": "Accepted",
    "expired": "Expired",
}

ADMIN_ROLE = "admin"
USER_ROLE = "user"
USER_ROLES = {USER_ROLE: "User", ADMIN_ROLE: "Administrator"}

# Storage buckets
DOCUMENTS_BUCKET = "documents"
PHOTO_BUCKET = "photo"

# Excel access-control export: rows kept on import
IMPORT_PRESENCE_TYPES = {"Badges ou Telecommandes", "CleMobil"}

# Report time slots, in display order: (label, first hour, last hour exclusive)
TIME_SLOTS = [
    ("Matin (5h-9h)", 5, 9),
    ("Matinée (9h-12h)", 9, 12),
    ("Midi (12h-14h)", 12, 14),
    ("Après-midi (14h-18h)", 14, 18),
    ("Soirée (18h-22h)", 18, 22),
    ("Nuit (22h-5h)", 22, 5),
]

WEEKDAYS = ["Lundi", "Mardi", "Mercredi", "Jeudi", "Vendredi", "Samedi", "Dimanche"]


@dataclass(frozen=True)
class Presence:
    badge_id: str
    at: datetime
    id: int | None = None


@dataclass(frozen=True)
class TopMember:
    member_id: int | None
    badge_id: str
    label: str
    count: int


@dataclass(frozen=True)
class ImportResult:
    total_rows: int = 0
    kept: int = 0
    filtered_type: int = 0
    no_badge: int = 0
    no_date: int = 0
    unparsable_date: int = 0
    payload: list[dict] = field(default_factory=list)


@dataclass(frozen=True)
class AttendanceSummary:
    total_visits: int
    unique_days: int
    avg_visits_per_day: float
    peak_hour: int  # -1 when there are no visits
    peak_day: str
    first_visit: datetime | None
    last_visit: datetime | None
    hourly: list[int]
    weekly: list[int]  # Monday first
    daily: dict[date, int]
