"""
db.py
Supabase helpers: client construction, error wrapping, table CRUD and RPC calls.
The client is always passed in explicitly.
"""

from __future__ import annotations

import logging
from datetime import date, datetime

import httpx
from supabase import Client, PostgrestAPIError, create_client
from supabase.lib.client_options import ClientOptions

from config import Settings
from models import USER_ROLE, USER_ROLES
from utils import normalize_files

log = logging.getLogger(__name__)

PAGE_SIZE = 1000
UPSERT_CHUNK_SIZE = 500
DUPLICATE_KEY = "23505"

# Everything except the photo column, which can hold large inline images
MEMBER_LIST_COLUMNS = (
    "id,name,firstName,birthdate,gender,address,phone,mobile,email,"
    "subscriptionType,startDate,endDate,badgeId,badge_number,files,etudiant,"
    "user_id,invitation_status,invited_at"
)
PAYMENT_SELECT = "*, member:members(id, name, firstName, badgeId)"
NULLABLE_MEMBER_DATES = ("birthdate", "startDate", "endDate")


class BackendError(Exception):
    """A backend call failed; `message` is safe to show to the user."""

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.message = message
        self.code = code


def create_backend_client(settings: Settings) -> Client:
    return create_client(
        settings.supabase_url,
        settings.supabase_key,
        options=ClientOptions(auto_refresh_token=True, persist_session=False),
    )


def execute(query, action: str):
    try:
        return query.execute()
    except PostgrestAPIError as e:
        log.error("%s failed (%s): %s", action, e.code, e.message)
        raise BackendError(e.message or str(e), e.code) from e
    except httpx.HTTPError as e:
        log.error("%s failed: %s", action, e)
        raise BackendError(f"Network error: {e}") from e


def friendly_message(exc: Exception) -> str:
    """Pick a friendlier sentence for common backend failures."""
    msg = getattr(exc, "message", None) or str(exc)
    low = msg.lower()
    if "network error" in low or "failed to fetch" in low or "connect" in low:
        return "Cannot reach the database. Check your connection and retry."
    if "jwt" in low or "token is expired" in low:
        return "Your session has expired. Please sign in again."
    if "permission denied" in low or "row-level security" in low:
        return "You are not allowed to perform this action."
    if "duplicate key" in low:
        return "This record already exists."
    if "invalid login credentials" in low:
        return "Invalid email or password."
    return msg


def _iso(value) -> str | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        # naive datetimes are local wall-clock time
        return (value if value.tzinfo else value.astimezone()).isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


def _first(response) -> dict | None:
    data = response.data or []
    return data[0] if data else None


def fetch_pages(build_query, action: str, page_size: int = PAGE_SIZE) -> list[dict]:
    """Run `build_query()` page by page with range() until a short page comes back."""
    rows: list[dict] = []
    start = 0
    while True:
        data = execute(build_query().range(start, start + page_size - 1), action).data or []
        rows.extend(data)
        if len(data) < page_size:
            break
        start += page_size
    return rows


def fetch_all_rows(client: Client, table: str, columns: str = "*", order: str | None = None,
                   desc: bool = False, page_size: int = PAGE_SIZE) -> list[dict]:
    """Load a whole table in pages of `page_size` rows (the backend caps each response)."""
    def build():
        query = client.table(table).select(columns)
        if order:
            query = query.order(order, desc=desc)
        # range() pages only line up when the sort key is unique
        return query.order("id", desc=desc)

    rows = fetch_pages(build, f"fetch {table}", page_size)
    log.debug("fetched %d rows from %s", len(rows), table)
    return rows


def check_connection(client: Client) -> bool:
    try:
        execute(client.table("members").select("id").limit(1), "test connection")
    except BackendError:
        return False
    return True


# ---------- Members ----------

def _member_row(row: dict) -> dict:
    out = dict(row)
    out["files"] = normalize_files(row.get("files"))
    out["etudiant"] = bool(row.get("etudiant"))
    return out


def _member_payload(data: dict) -> dict:
    payload = {k: v for k, v in data.items() if k != "id"}
    for key in NULLABLE_MEMBER_DATES:
        if key in payload:
            payload[key] = _iso(payload[key]) or None
    if "files" in payload:
        payload["files"] = normalize_files(payload["files"])
    return payload


def fetch_members(client: Client, columns: str = MEMBER_LIST_COLUMNS,
                  page_size: int = PAGE_SIZE) -> list[dict]:
    rows = fetch_all_rows(client, "members", columns=columns, order="name", page_size=page_size)
    return [_member_row(r) for r in rows]


def fetch_member(client: Client, member_id: int) -> dict | None:
    res = execute(client.table("members").select("*").eq("id", member_id).limit(1), "fetch member")
    row = _first(res)
    return _member_row(row) if row else None


def fetch_member_by_badge(client: Client, badge_id: str) -> dict | None:
    res = execute(
        client.table("members").select("*").eq("badgeId", badge_id).limit(1), "fetch member by badge"
    )
    row = _first(res)
    return _member_row(row) if row else None


def fetch_member_by_user(client: Client, user_id: str) -> dict | None:
    res = execute(
        client.table("members").select("*").eq("user_id", user_id).limit(1), "fetch member by user"
    )
    row = _first(res)
    return _member_row(row) if row else None


def create_member(client: Client, data: dict) -> dict:
    res = execute(client.table("members").insert(_member_payload(data)), "create member")
    return _member_row(_first(res) or {})


def update_member(client: Client, member_id: int, data: dict) -> dict:
    res = execute(
        client.table("members").update(_member_payload(data)).eq("id", member_id), "update member"
    )
    return _member_row(_first(res) or {})


def delete_member(client: Client, member_id: int) -> None:
    execute(client.table("members").delete().eq("id", member_id), "delete member")


def find_member_by_invitation(client: Client, token: str) -> dict | None:
    res = execute(
        client.table("members")
        .select("*")
        .eq("invitation_token", token)
        .eq("invitation_status", "pending")
        .is_("user_id", "null")
        .limit(1),
        "verify invitation",
    )
    return _first(res)


# ---------- Presences ----------

def fetch_presences(
    client: Client,
    start=None,
    end=None,
    badge_id: str | None = None,
    badge_like: str | None = None,
    badge_ids: list[str] | None = None,
    columns: str = "*",
    limit: int | None = None,
    page_size: int = PAGE_SIZE,
) -> list[dict]:
    """Presences, newest first. Without `limit` every matching row is fetched page by page."""
    def build():
        query = client.table("presences").select(columns)
        if start is not None:
            query = query.gte("timestamp", _iso(start))
        if end is not None:
            query = query.lte("timestamp", _iso(end))
        if badge_id:
            query = query.eq("badgeId", badge_id)
        if badge_like:
            query = query.ilike("badgeId", f"%{badge_like}%")
        if badge_ids is not None:
            query = query.in_("badgeId", badge_ids)
        return query.order("timestamp", desc=True).order("id", desc=True)

    if limit:
        return execute(build().limit(limit), "fetch presences").data or []
    return fetch_pages(build, "fetch presences", page_size)


def fetch_all_presences(client: Client, page_size: int = PAGE_SIZE) -> list[dict]:
    return fetch_all_rows(client, "presences", columns="id,badgeId,timestamp", page_size=page_size)


def create_presence(client: Client, badge_id: str, at: datetime | None = None) -> dict | None:
    """Record a presence. Returns None when the same badge/timestamp already exists."""
    row = {"badgeId": badge_id, "timestamp": _iso(at or datetime.now().astimezone())}
    try:
        res = execute(client.table("presences").insert(row), "create presence")
    except BackendError as e:
        if e.code == DUPLICATE_KEY:
            log.warning("presence already recorded: %s at %s", badge_id, row["timestamp"])
            return None
        raise
    return _first(res)


def delete_presence(client: Client, presence_id: int) -> None:
    execute(client.table("presences").delete().eq("id", presence_id), "delete presence")


def upsert_presences(client: Client, rows: list[dict], chunk_size: int = UPSERT_CHUNK_SIZE) -> int:
    """Insert or update presences in chunks; duplicates on (badgeId, timestamp) are merged."""
    affected = 0
    for i in range(0, len(rows), chunk_size):
        chunk = rows[i:i + chunk_size]
        res = execute(
            client.table("presences").upsert(chunk, on_conflict="badgeId,timestamp"),
            "import presences",
        )
        affected += len(res.data or [])
    log.info("upserted %d presences (%d submitted)", affected, len(rows))
    return affected


def clean_duplicate_presences(client: Client):
    res = execute(client.rpc("clean_duplicate_presences", {}), "clean duplicate presences")
    log.info("duplicate presences cleaned: %s", res.data)
    return res.data


def fetch_members_presences(client: Client, start: date, end: date) -> list[dict]:
    res = execute(
        client.rpc("get_all_members_presences", {"p_start_date": _iso(start), "p_end_date": _iso(end)}),
        "fetch members presences",
    )
    return res.data or []


# ---------- Payments ----------

def fetch_payments(client: Client, member_id: int | None = None,
                   page_size: int = PAGE_SIZE) -> list[dict]:
    """Payments with their member, newest first."""
    def build():
        query = client.table("payments").select(PAYMENT_SELECT)
        if member_id is not None:
            query = query.eq("member_id", member_id)
        return query.order("date_paiement", desc=True).order("id", desc=True)

    return fetch_pages(build, "fetch payments", page_size)


def create_payment(client: Client, data: dict) -> dict | None:
    payload = dict(data)
    payload["amount"] = float(payload["amount"])
    payload["encaissement_prevu"] = _iso(payload.get("encaissement_prevu")) or None
    res = execute(client.table("payments").insert(payload), "create payment")
    return _first(res)


def update_payment(client: Client, payment_id: int, data: dict) -> dict | None:
    res = execute(client.table("payments").update(data).eq("id", payment_id), "update payment")
    return _first(res)


def set_payment_paid(client: Client, payment_id: int, is_paid: bool) -> dict | None:
    return update_payment(client, payment_id, {"is_paid": is_paid})


def delete_payment(client: Client, payment_id: int) -> None:
    execute(client.table("payments").delete().eq("id", payment_id), "delete payment")


# ---------- Reports / roles ----------

def generate_stats_report(client: Client, start: date, end: date) -> dict:
    res = execute(
        client.rpc("generate_stats_report", {"p_start_date": _iso(start), "p_end_date": _iso(end)}),
        "generate stats report",
    )
    data = res.data
    if isinstance(data, dict):
        return data
    if not data:
        raise BackendError("No data returned for this period.")
    return data[0]


def fetch_role(client: Client, user_id: str) -> str | None:
    res = execute(
        client.table("user_roles").select("role").eq("user_id", user_id).limit(1), "fetch role"
    )
    row = _first(res)
    return row.get("role") if row else None


# ---------- User accounts ----------

def _user_row(row: dict) -> dict:
    return {
        "id": row.get("user_id") or row.get("id"),
        "email": row.get("user_email") or row.get("email"),
        "role": row.get("user_role") or row.get("role") or USER_ROLE,
        "confirmed_at": row.get("confirmed_at"),
        "is_disabled": bool(row.get("is_disabled")),
    }


def fetch_users_with_roles(client: Client) -> list[dict]:
    """Auth users joined with their role (missing roles read as plain users)."""
    res = execute(client.rpc("get_users_with_roles", {}), "fetch users")
    return [_user_row(r) for r in res.data or []]


def set_user_role(client: Client, user_id: str, role: str) -> None:
    if role not in USER_ROLES:
        raise BackendError(f"Unknown role: {role}")
    execute(
        client.table("user_roles").upsert({"user_id": user_id, "role": role}, on_conflict="user_id"),
        "update role",
    )
    log.info("role of user %s set to %s", user_id, role)


def _rpc_outcome(res, action: str) -> dict:
    # these functions report failures as {"success": false, "error": ...}
    data = res.data
    if isinstance(data, list):
        data = data[0] if data else None
    if not data or not data.get("success"):
        raise BackendError((data or {}).get("error") or f"{action} failed.")
    return data


def link_user_to_member(client: Client, user_id: str, member_id: int) -> dict:
    res = execute(
        client.rpc("link_user_to_member", {"target_user_id": user_id, "target_member_id": member_id}),
        "link user to member",
    )
    return _rpc_outcome(res, "Link user to member")


def unlink_user_from_member(client: Client, member_id: int) -> dict:
    res = execute(
        client.rpc("unlink_user_from_member", {"target_member_id": member_id}),
        "unlink user from member",
    )
    return _rpc_outcome(res, "Unlink user from member")


def disable_user(client: Client, user_id: str) -> dict:
    res = execute(client.rpc("disable_user_admin", {"target_user_id": user_id}), "disable user")
    return _rpc_outcome(res, "Disable user")
