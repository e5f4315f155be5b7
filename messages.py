"""
messages.py
Member messaging: messages written by admins (or members) and one receipt
row per recipient in message_recipients, which carries the read state.
"""

from __future__ import annotations

import logging
from datetime import datetime

from supabase import Client

import db
from utils import parse_timestamp

log = logging.getLogger(__name__)

RECIPIENT_CHUNK_SIZE = 500
INBOX_SELECT = (
    "id,message_id,read_at,created_at,"
    "messages:message_id(id,subject,body,created_at,is_broadcast,author_user_id,author_member_id)"
)
MESSAGE_COLUMNS = "id,subject,body,created_at,is_broadcast,author_user_id,author_member_id"


class MessageError(Exception):
    pass


def _inbox_row(row: dict) -> dict:
    message = row.get("messages") or {}
    return {
        "receipt_id": row.get("id"),
        "message_id": row.get("message_id"),
        "subject": message.get("subject"),
        "body": message.get("body"),
        "created_at": message.get("created_at") or row.get("created_at"),
        "is_broadcast": bool(message.get("is_broadcast")),
        "author_member_id": message.get("author_member_id"),
        "read_at": row.get("read_at"),
    }


def list_inbox(client: Client, member_id: int | None, limit: int = 50, offset: int = 0) -> list[dict]:
    """Messages received by a member, newest first."""
    if not member_id:
        return []
    res = db.execute(
        client.table("message_recipients")
        .select(INBOX_SELECT)
        .eq("recipient_member_id", member_id)
        .order("created_at", desc=True)
        .order("id", desc=True)
        .range(offset, offset + limit - 1),
        "fetch inbox",
    )
    return [_inbox_row(r) for r in res.data or []]


def count_unread(client: Client, member_id: int | None) -> int:
    if not member_id:
        return 0
    res = db.execute(
        client.table("message_recipients")
        .select("id", count="exact", head=True)
        .eq("recipient_member_id", member_id)
        .is_("read_at", "null"),
        "count unread messages",
    )
    return res.count or 0


def mark_read(client: Client, receipt_id: int, now: datetime | None = None) -> None:
    now = now or datetime.now()
    db.execute(
        client.table("message_recipients").update({"read_at": now.astimezone().isoformat()}).eq("id", receipt_id),
        "mark message read",
    )


def mark_all_read(client: Client, member_id: int, now: datetime | None = None) -> int:
    now = now or datetime.now()
    res = db.execute(
        client.table("message_recipients")
        .update({"read_at": now.astimezone().isoformat()})
        .eq("recipient_member_id", member_id)
        .is_("read_at", "null"),
        "mark messages read",
    )
    return len(res.data or [])


def _recipient_ids(ids) -> list[int]:
    # unique, in the order given; ids may arrive as strings from form widgets
    out: list[int] = []
    for value in ids or []:
        try:
            member_id = int(value)
        except (TypeError, ValueError):
            continue
        if member_id not in out:
            out.append(member_id)
    return out


def send_message(
    client: Client,
    author_user_id: str,
    subject: str,
    body: str,
    recipient_ids=(),
    author_member_id: int | None = None,
    broadcast: bool = False,
    exclude_author: bool = True,
    chunk_size: int = RECIPIENT_CHUNK_SIZE,
) -> dict:
    """
    Create a message and one receipt per recipient.
    A broadcast goes to every member and ignores `recipient_ids`.
    """
    subject, body = (subject or "").strip(), (body or "").strip()
    if not subject or not body:
        raise MessageError("Subject and message are required.")
    if not author_user_id:
        raise MessageError("You must be signed in to send a message.")

    res = db.execute(
        client.table("messages").insert({
            "subject": subject,
            "body": body,
            "is_broadcast": bool(broadcast),
            "author_user_id": author_user_id,
            "author_member_id": author_member_id,
        }),
        "send message",
    )
    message = (res.data or [{}])[0]

    if broadcast:
        recipient_ids = [m["id"] for m in db.fetch_all_rows(client, "members", columns="id")]
    targets = _recipient_ids(recipient_ids)
    if exclude_author and author_member_id:
        targets = [t for t in targets if t != author_member_id]

    for i in range(0, len(targets), chunk_size):
        rows = [{"message_id": message.get("id"), "recipient_member_id": t} for t in targets[i:i + chunk_size]]
        db.execute(client.table("message_recipients").insert(rows), "send message")
    log.info("message %s sent to %d member(s)", message.get("id"), len(targets))
    return message


def fetch_admin_member_ids(client: Client) -> list[int]:
    res = db.execute(client.table("admin_members").select("id"), "fetch admin members")
    return [r["id"] for r in res.data or []]


def send_to_member(client: Client, author_user_id: str, member_id: int, subject: str, body: str,
                   author_member_id: int | None = None) -> dict:
    return send_message(client, author_user_id, subject, body, [member_id], author_member_id=author_member_id)


def send_to_admins(client: Client, author_user_id: str, author_member_id: int, subject: str,
                   body: str) -> dict:
    admin_ids = fetch_admin_member_ids(client)
    if not admin_ids:
        raise MessageError("No administrator can receive messages yet.")
    return send_message(client, author_user_id, subject, body, admin_ids, author_member_id=author_member_id)


def list_thread(client: Client, member_id: int | None) -> list[dict]:
    """Messages received by a member and messages the member wrote, oldest first."""
    if not member_id:
        return []
    inbound = db.execute(
        client.table("message_recipients")
        .select(INBOX_SELECT)
        .eq("recipient_member_id", member_id)
        .order("created_at"),
        "fetch thread",
    ).data or []
    outbound = db.execute(
        client.table("messages")
        .select(MESSAGE_COLUMNS)
        .eq("author_member_id", member_id)
        .order("created_at"),
        "fetch thread",
    ).data or []

    thread = [{**_inbox_row(r), "direction": "inbound"} for r in inbound]
    thread += [
        {
            "receipt_id": None,
            "message_id": m.get("id"),
            "subject": m.get("subject"),
            "body": m.get("body"),
            "created_at": m.get("created_at"),
            "is_broadcast": bool(m.get("is_broadcast")),
            "author_member_id": m.get("author_member_id"),
            "read_at": None,
            "direction": "outbound",
        }
        for m in outbound
    ]
    thread.sort(key=lambda m: parse_timestamp(m["created_at"]) or datetime.min)
    return thread


def list_sent(client: Client, author_user_id: str, limit: int = 50, offset: int = 0) -> list[dict]:
    res = db.execute(
        client.table("messages")
        .select(MESSAGE_COLUMNS)
        .eq("author_user_id", author_user_id)
        .order("created_at", desc=True)
        .order("id", desc=True)
        .range(offset, offset + limit - 1),
        "fetch sent messages",
    )
    return res.data or []
