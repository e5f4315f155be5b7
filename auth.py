"""
auth.py
Authentication utilities (Supabase sign-in, roles, change password) and the
member invitation workflow (token stored on the member row).
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta

import httpx
from supabase import AuthError, Client, FunctionsError

import db
from config import Settings
from models import ADMIN_ROLE
from utils import full_name, parse_timestamp, validate_password

log = logging.getLogger(__name__)

# the edge function picks its handler from the action query parameter
SEND_INVITATION_ACTION = "send-invitation"


class AuthFailure(Exception):
    pass


class InvitationError(Exception):
    pass


def login(client: Client, email: str, password: str) -> dict:
    """
    Sign in with email/password. Returns {"id", "email"} of the signed-in user.
    """
    try:
        res = client.auth.sign_in_with_password({"email": email.strip(), "password": password})
    except AuthError as e:
        log.warning("sign-in failed for %s: %s", email, e)
        raise AuthFailure(db.friendly_message(e)) from e
    if res.user is None:
        raise AuthFailure("Invalid email or password.")
    return {"id": res.user.id, "email": res.user.email}


def logout(client: Client) -> None:
    client.auth.sign_out()


def get_role(client: Client, user_id: str) -> str | None:
    return db.fetch_role(client, user_id)


def is_admin(role: str | None) -> bool:
    return role == ADMIN_ROLE


def change_password(client: Client, new_password: str, confirm: str) -> None:
    errors = validate_password(new_password, confirm)
    if errors:
        raise AuthFailure(errors[0])
    try:
        client.auth.update_user({"password": new_password})
    except AuthError as e:
        log.warning("password change failed: %s", e)
        raise AuthFailure(db.friendly_message(e)) from e


# ---------- Invitations ----------

def new_invitation_token() -> str:
    return secrets.token_urlsafe(32)


def invitation_link(settings: Settings, token: str) -> str:
    return f"{settings.app_url}/?token={token}"


def _send_invitation(client: Client, settings: Settings, member: dict, token: str,
                     is_resend: bool = False) -> None:
    body = {
        "email": member.get("email"),
        "memberName": full_name(member),
        "memberId": member.get("id"),
        "badgeId": member.get("badgeId"),
        "invitationToken": token,
        "invitationLink": invitation_link(settings, token),
        "clubName": settings.club_name,
        "isResend": is_resend,
    }
    try:
        client.functions.invoke(f"{settings.invite_function}?action={SEND_INVITATION_ACTION}",
                                invoke_options={"body": body})
    except (FunctionsError, httpx.HTTPError) as e:
        log.exception("invitation email to %s failed", member.get("email"))
        raise InvitationError(f"Invitation email could not be sent: {e}") from e


def _load_member(client: Client, member_id: int) -> dict:
    member = db.fetch_member(client, member_id)
    if member is None:
        raise InvitationError("Member not found.")
    return member


def invite_member(client: Client, settings: Settings, member_id: int, email: str | None = None,
                  now: datetime | None = None) -> dict:
    member = _load_member(client, member_id)
    address = (email or member.get("email") or "").strip()
    if not address:
        raise InvitationError("No email address for this member.")
    if member.get("user_id"):
        raise InvitationError("This member already has a user account.")

    now = now or datetime.now()
    token = new_invitation_token()
    updated = db.update_member(client, member_id, {
        "email": address,
        "invitation_status": "pending",
        "invitation_token": token,
        "invited_at": now.astimezone().isoformat(),
    })
    _send_invitation(client, settings, {**member, **updated, "email": address}, token)
    log.info("invitation sent to member %s", member_id)
    return updated


def resend_invitation(client: Client, settings: Settings, member_id: int,
                      now: datetime | None = None) -> None:
    member = _load_member(client, member_id)
    if member.get("invitation_status") != "pending":
        raise InvitationError("No pending invitation for this member.")

    now = now or datetime.now()
    invited_at = parse_timestamp(member.get("invited_at"))
    wait = timedelta(minutes=settings.invite_resend_minutes)
    if invited_at and now - invited_at < wait:
        raise InvitationError(
            f"Please wait {settings.invite_resend_minutes} minutes before resending an invitation."
        )

    _send_invitation(client, settings, member, member["invitation_token"], is_resend=True)
    db.update_member(client, member_id, {"invited_at": now.astimezone().isoformat()})


def cancel_invitation(client: Client, member_id: int) -> None:
    db.update_member(client, member_id, {
        "invitation_status": "not_invited",
        "invitation_token": None,
        "invited_at": None,
    })


def verify_invitation(client: Client, settings: Settings, token: str | None,
                      now: datetime | None = None) -> dict:
    """Return the member a pending invitation token belongs to."""
    if not token:
        raise InvitationError("Missing invitation token.")
    member = db.find_member_by_invitation(client, token)
    if member is None:
        raise InvitationError("Invalid or expired invitation.")

    now = now or datetime.now()
    invited_at = parse_timestamp(member.get("invited_at"))
    if invited_at and now - invited_at > timedelta(days=settings.invite_expiry_days):
        db.update_member(client, member["id"], {"invitation_status": "expired"})
        raise InvitationError("This invitation has expired.")
    return member


def accept_invitation(client: Client, settings: Settings, token: str, password: str, confirm: str,
                      now: datetime | None = None) -> dict:
    """Create the auth account for an invited member and link it to the member row."""
    errors = validate_password(password, confirm)
    if errors:
        raise InvitationError(errors[0])

    member = verify_invitation(client, settings, token, now)
    try:
        res = client.auth.sign_up({
            "email": member["email"],
            "password": password,
            "options": {"data": {"firstName": member.get("firstName"), "lastName": member.get("name")}},
        })
    except AuthError as e:
        log.warning("sign-up failed for member %s: %s", member["id"], e)
        raise AuthFailure(db.friendly_message(e)) from e
    if res.user is None:
        raise AuthFailure("Account creation failed.")

    now = now or datetime.now()
    return db.update_member(client, member["id"], {
        "user_id": res.user.id,
        "invitation_status": "accepted",
        "invitation_token": None,
        "account_created_at": now.astimezone().isoformat(),
    })
