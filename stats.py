"""
stats.py
Attendance and payment aggregations over rows already fetched from the backend.
Every function is a single pass (or a sort) over plain lists; nothing here talks
to the backend.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta

import pandas as pd

from models import (
    PAYMENT_METHOD_ALIASES,
    PAYMENT_METHODS,
    TIME_SLOTS,
    WEEKDAYS,
    AttendanceSummary,
    Presence,
    TopMember,
)
from utils import full_name, is_expired, normalize_text, parse_date, parse_timestamp

log = logging.getLogger(__name__)

TOP_MEMBERS = 10
TOP_HOURS = 5
RECENT_PRESENCES = 10


def to_presences(rows) -> list[Presence]:
    """Parse presence rows, skipping those without a readable timestamp."""
    out = []
    for row in rows:
        at = parse_timestamp(row.get("timestamp"))
        if at is None:
            log.debug("skipping presence with invalid timestamp: %r", row.get("timestamp"))
            continue
        out.append(Presence(badge_id=str(row.get("badgeId") or ""), at=at, id=row.get("id")))
    return out


def in_period(presences: list[Presence], start: date, end: date) -> list[Presence]:
    return [p for p in presences if start <= p.at.date() <= end]


def count_by_hour(presences: list[Presence]) -> list[int]:
    hours = [0] * 24
    for p in presences:
        hours[p.at.hour] += 1
    return hours


def count_by_weekday(presences: list[Presence]) -> dict[str, int]:
    counts = dict.fromkeys(WEEKDAYS, 0)
    for p in presences:
        counts[WEEKDAYS[p.at.weekday()]] += 1
    return counts


def count_by_date(presences: list[Presence]) -> dict[date, int]:
    counts: dict[date, int] = {}
    for p in presences:
        d = p.at.date()
        counts[d] = counts.get(d, 0) + 1
    return counts


def count_by_month(presences: list[Presence]) -> dict[str, int]:
    counts: dict[str, int] = {}
    for p in presences:
        key = p.at.strftime("%Y-%m")
        counts[key] = counts.get(key, 0) + 1
    return dict(sorted(counts.items()))


def slot_for_hour(hour: int) -> str:
    for label, first, last in TIME_SLOTS:
        if first < last and first <= hour < last:
            return label
    # the night slot wraps around midnight
    return TIME_SLOTS[-1][0]


def count_by_time_slot(presences: list[Presence]) -> dict[str, int]:
    counts = {label: 0 for label, _, _ in TIME_SLOTS}
    for p in presences:
        counts[slot_for_hour(p.at.hour)] += 1
    return counts


def _top(counts: dict, n: int) -> list[tuple]:
    # sorted() is stable: ties keep first-encounter order
    return sorted(counts.items(), key=lambda kv: kv[1], reverse=True)[:n]


def top_members(presences: list[Presence], members: list[dict], n: int = TOP_MEMBERS) -> list[TopMember]:
    by_badge = {m["badgeId"]: m for m in members if m.get("badgeId")}
    counts: dict = {}
    seen: dict = {}
    for p in presences:
        member = by_badge.get(p.badge_id)
        if member is None:
            continue
        key = member.get("id", p.badge_id)
        counts[key] = counts.get(key, 0) + 1
        seen.setdefault(key, member)
    return [
        TopMember(
            member_id=seen[key].get("id"),
            badge_id=seen[key].get("badgeId"),
            label=full_name(seen[key]) or seen[key].get("badgeId"),
            count=count,
        )
        for key, count in _top(counts, n)
    ]


def top_hours(presences: list[Presence], n: int = TOP_HOURS) -> list[tuple[int, int]]:
    counts: dict[int, int] = {}
    for p in presences:
        counts[p.at.hour] = counts.get(p.at.hour, 0) + 1
    return _top(counts, n)


def member_counters(members: list[dict], today: date | None = None) -> dict:
    today = today or date.today()
    counters = {"total": len(members), "active": 0, "expired": 0, "men": 0, "women": 0,
                "students": 0, "expired_members": []}
    for m in members:
        if is_expired(m, today):
            counters["expired"] += 1
            counters["expired_members"].append(
                {"id": m.get("id"), "name": m.get("name"), "firstName": m.get("firstName"),
                 "endDate": m.get("endDate")}
            )
        else:
            counters["active"] += 1
        if m.get("gender") == "Homme":
            counters["men"] += 1
        elif m.get("gender") == "Femme":
            counters["women"] += 1
        if m.get("etudiant"):
            counters["students"] += 1
    return counters


def attendance_last_days(presences: list[Presence], today: date | None = None,
                         days: int = 7) -> list[tuple[date, int]]:
    today = today or date.today()
    start = today - timedelta(days=days - 1)
    counts = count_by_date(in_period(presences, start, today))
    return [(start + timedelta(days=i), counts.get(start + timedelta(days=i), 0)) for i in range(days)]


def recent_presences(presences: list[Presence], members: list[dict],
                     limit: int = RECENT_PRESENCES) -> list[dict]:
    """Latest check-ins with the member they belong to (None for unknown badges)."""
    by_badge = {m["badgeId"]: m for m in members if m.get("badgeId")}
    latest = sorted(presences, key=lambda p: p.at, reverse=True)[:limit]
    return [
        {"id": p.id, "at": p.at, "badgeId": p.badge_id, "member": by_badge.get(p.badge_id)}
        for p in latest
    ]


def period_stats(presences: list[Presence], start: date, end: date) -> dict:
    """Planning summary over [start, end]; averages are over every day in the period."""
    inside = in_period(presences, start, end)
    n_days = max((end - start).days + 1, 1)
    daily: dict[date, set] = {}
    per_day_presences: dict[date, int] = {}
    for p in inside:
        d = p.at.date()
        daily.setdefault(d, set()).add(p.badge_id)
        per_day_presences[d] = per_day_presences.get(d, 0) + 1

    busiest = {"day": None, "members": 0, "presences": 0}
    for i in range(n_days):
        d = start + timedelta(days=i)
        members_that_day = len(daily.get(d, ()))
        if members_that_day > busiest["members"]:
            busiest = {"day": d, "members": members_that_day, "presences": per_day_presences[d]}

    return {
        "total_presences": len(inside),
        "unique_members": len({p.badge_id for p in inside}),
        "avg_presences_per_day": round(len(inside) / n_days, 1),
        "avg_members_per_day": round(sum(len(s) for s in daily.values()) / n_days, 1),
        "busiest_day": busiest,
    }


def planning_members(presences: list[Presence], members: list[dict], name_filter: str = "",
                     badge_filter: str = "") -> list[dict]:
    """Members seen in `presences`, most recently seen first, then by name."""
    last_seen: dict[str, datetime] = {}
    for p in presences:
        if p.badge_id and (p.badge_id not in last_seen or p.at > last_seen[p.badge_id]):
            last_seen[p.badge_id] = p.at

    result = [m for m in members if m.get("badgeId") in last_seen]
    result.sort(key=lambda m: normalize_text(m.get("name")))
    result.sort(key=lambda m: last_seen[m["badgeId"]], reverse=True)

    if name_filter.strip():
        needle = name_filter.strip().lower()
        result = [m for m in result if needle in f"{m.get('name') or ''} {m.get('firstName') or ''}".lower()]
    if badge_filter.strip():
        result = [m for m in result if badge_filter.strip() in (m.get("badgeId") or "")]
    return result


def paginate(items: list, page: int, page_size: int) -> tuple[list, int]:
    total_pages = max(1, -(-len(items) // page_size))
    page = min(max(1, page), total_pages)
    start = (page - 1) * page_size
    return items[start:start + page_size], total_pages


def attendance_summary(presences: list[Presence]) -> AttendanceSummary:
    """Personal attendance figures for one member."""
    if not presences:
        return AttendanceSummary(0, 0, 0, -1, "", None, None, [0] * 24, [0] * 7, {})

    hourly = count_by_hour(presences)
    weekly = list(count_by_weekday(presences).values())
    daily = dict(sorted(count_by_date(presences).items(), reverse=True))
    ats = [p.at for p in presences]
    return AttendanceSummary(
        total_visits=len(presences),
        unique_days=len(daily),
        avg_visits_per_day=round(len(presences) / len(daily), 1),
        peak_hour=hourly.index(max(hourly)),
        peak_day=WEEKDAYS[weekly.index(max(weekly))],
        first_visit=min(ats),
        last_visit=max(ats),
        hourly=hourly,
        weekly=weekly,
        daily=daily,
    )


# ---------- Reports ----------

def build_report_data(members: list[dict], presences: list[Presence], start: date, end: date) -> dict:
    """
    Client-side counterpart of the generate_stats_report RPC, with the same keys,
    so the statistics page and the PDF can share one shape.
    """
    inside = in_period(presences, start, end)
    by_badge = {m["badgeId"]: m for m in members if m.get("badgeId")}
    active_badges = {p.badge_id for p in inside if p.badge_id in by_badge}
    active = [by_badge[b] for b in active_badges]
    total = len(members)

    genders: dict[str, int] = {}
    for m in active:
        label = m.get("gender") or "Non renseigné"
        genders[label] = genders.get(label, 0) + 1
    students = sum(1 for m in active if m.get("etudiant"))

    return {
        "total_presences": len(inside),
        "membres_actifs": len(active),
        "total_membres": total,
        "taux_activation": round(len(active) * 100 / total, 1) if total else 0,
        "top_10_assidus": [
            {"membre": t.label, "presences": t.count} for t in top_members(inside, members)
        ],
        "repartition_genre": genders,
        "repartition_etudiant": {"Étudiants": students, "Non-étudiants": len(active) - students},
        "frequentation_jours": [
            {"jour": day, "presences": n} for day, n in count_by_weekday(inside).items()
        ],
        "frequentation_plages": count_by_time_slot(inside),
        "evolution_mensuelle": count_by_month(inside),
    }


# ---------- Payments ----------

def _amount(payment: dict) -> float:
    try:
        return float(payment.get("amount") or 0)
    except (TypeError, ValueError):
        return 0.0


def is_overdue(payment: dict, today: date | None = None) -> bool:
    if payment.get("is_paid"):
        return False
    expected = parse_date(payment.get("encaissement_prevu"))
    return expected is not None and expected < (today or date.today())


def payment_status(payment: dict, today: date | None = None) -> str:
    if payment.get("is_paid"):
        return "paid"
    return "overdue" if is_overdue(payment, today) else "pending"


def payment_summary(payments: list[dict], today: date | None = None) -> dict:
    today = today or date.today()
    summary = {
        "total_expected": 0.0, "total_received": 0.0, "total_pending": 0.0, "total_overdue": 0.0,
        "paid_count": 0, "pending_count": 0, "overdue_count": 0,
        "by_method": dict.fromkeys(PAYMENT_METHODS, 0.0),
    }
    for p in payments:
        amount = _amount(p)
        summary["total_expected"] += amount
        status = payment_status(p, today)
        if status == "paid":
            summary["total_received"] += amount
            summary["paid_count"] += 1
            method = PAYMENT_METHOD_ALIASES.get(p.get("method"), p.get("method"))
            if method in summary["by_method"]:
                summary["by_method"][method] += amount
        elif status == "overdue":
            summary["total_overdue"] += amount
            summary["overdue_count"] += 1
        else:
            summary["total_pending"] += amount
            summary["pending_count"] += 1
    expected = summary["total_expected"]
    summary["collection_rate"] = summary["total_received"] * 100 / expected if expected else 0.0
    return summary


def enrich_members_with_payments(members: list[dict], payments: list[dict],
                                 today: date | None = None) -> list[dict]:
    today = today or date.today()
    by_member: dict = {}
    for p in payments:
        by_member.setdefault(p.get("member_id"), []).append(p)

    out = []
    for m in members:
        own = by_member.get(m.get("id"), [])
        total_due = sum(_amount(p) for p in own)
        paid = [p for p in own if p.get("is_paid")]
        total_paid = sum(_amount(p) for p in paid)
        statuses = {payment_status(p, today) for p in own}
        if not own:
            overall = "no_payments"
        elif "overdue" in statuses:
            overall = "overdue"
        elif "pending" in statuses:
            overall = "pending"
        else:
            overall = "paid"
        paid_dates = [d for d in (parse_date(p.get("date_paiement")) for p in paid) if d]
        out.append({
            **m,
            "payments": own,
            "total_due": total_due,
            "total_paid": total_paid,
            "progress": total_paid * 100 / total_due if total_due else 0.0,
            "overall_status": overall,
            "last_payment_date": max(paid_dates) if paid_dates else None,
        })
    return out


def revenue_by_month(payments: list[dict]) -> pd.DataFrame:
    df = pd.DataFrame(payments)
    if df.empty or "is_paid" not in df.columns or "date_paiement" not in df.columns:
        return pd.DataFrame(columns=["month", "revenue"])
    df = df[df["is_paid"].fillna(False).astype(bool)]
    df = df.assign(
        month=pd.to_datetime(df["date_paiement"], errors="coerce", utc=True).dt.strftime("%Y-%m"),
        revenue=pd.to_numeric(df["amount"], errors="coerce").fillna(0.0),
    ).dropna(subset=["month"])
    if df.empty:
        return pd.DataFrame(columns=["month", "revenue"])
    out = df.groupby("month", as_index=False)["revenue"].sum()
    return out.sort_values("month", ascending=False).reset_index(drop=True)
