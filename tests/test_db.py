from __future__ import annotations

from datetime import date, datetime

import httpx
import pytest
from supabase import PostgrestAPIError

import db


def test_fetch_all_rows_pages_until_short_page(client):
    client.seed("members", [{"name": f"m{i:04d}"} for i in range(2500)])
    rows = db.fetch_all_rows(client, "members", order="name")
    assert len(rows) == 2500
    assert [c[2] for c in client.calls] == [(0, 999), (1000, 1999), (2000, 2999)]


def test_fetch_all_rows_exact_multiple_needs_one_more_page(client):
    client.seed("presences", [{"badgeId": "A", "timestamp": f"2025-01-01T00:00:{i:02d}"} for i in range(4)])
    rows = db.fetch_all_rows(client, "presences", page_size=2)
    assert len(rows) == 4
    assert len(client.calls) == 3


def test_fetch_members_normalizes_files(client):
    client.seed("members", [{"name": "B", "files": '[{"name": "c.pdf", "url": "u"}]', "etudiant": None},
                            {"name": "A", "files": None, "etudiant": 1}])
    members = db.fetch_members(client)
    assert [m["name"] for m in members] == ["A", "B"]
    assert members[0]["files"] == [] and members[0]["etudiant"] is True
    assert members[1]["files"] == [{"name": "c.pdf", "url": "u"}]


def test_member_crud(client):
    created = db.create_member(client, {"name": "Dupont", "firstName": "Jean",
                                        "startDate": date(2025, 1, 1), "endDate": date(2025, 1, 31)})
    assert created["startDate"] == "2025-01-01"
    updated = db.update_member(client, created["id"], {"email": "jean@example.com", "birthdate": None})
    assert updated["email"] == "jean@example.com"
    assert db.fetch_member_by_badge(client, "nope") is None
    db.delete_member(client, created["id"])
    assert db.fetch_member(client, created["id"]) is None


def test_find_member_by_invitation_requires_pending_without_account(client):
    client.seed("members", [
        {"name": "A", "invitation_token": "t1", "invitation_status": "pending", "user_id": None},
        {"name": "B", "invitation_token": "t2", "invitation_status": "pending", "user_id": "u-1"},
        {"name": "C", "invitation_token": "t3", "invitation_status": "expired", "user_id": None},
    ])
    assert db.find_member_by_invitation(client, "t1")["name"] == "A"
    assert db.find_member_by_invitation(client, "t2") is None
    assert db.find_member_by_invitation(client, "t3") is None


def test_create_presence_ignores_duplicates(client):
    at = datetime(2025, 6, 1, 8, 30)
    assert db.create_presence(client, "A", at) is not None
    assert db.create_presence(client, "A", at) is None
    assert len(client.tables["presences"]) == 1


def test_create_presence_other_errors_propagate(client):
    client.errors["presences"] = PostgrestAPIError({"message": "permission denied for table presences",
                                                    "code": "42501"})
    with pytest.raises(db.BackendError) as err:
        db.create_presence(client, "A")
    assert err.value.code == "42501"
    assert db.friendly_message(err.value) == "You are not allowed to perform this action."


def test_fetch_presences_filters_and_orders(client):
    client.seed("presences", [
        {"badgeId": "A1", "timestamp": "2025-06-01T08:00:00"},
        {"badgeId": "B2", "timestamp": "2025-06-02T08:00:00"},
        {"badgeId": "A1", "timestamp": "2025-06-03T08:00:00"},
        {"badgeId": "A1", "timestamp": "2025-07-01T08:00:00"},
    ])
    rows = db.fetch_presences(client, start=datetime(2025, 6, 1), end=datetime(2025, 6, 30, 23, 59),
                              badge_like="a")
    assert [r["timestamp"] for r in rows] == ["2025-06-03T08:00:00", "2025-06-01T08:00:00"]
    assert len(db.fetch_presences(client, badge_id="A1", limit=1)) == 1
    assert db.fetch_presences(client, badge_ids=[]) == []


def test_upsert_presences_in_chunks(client):
    client.seed("presences", [{"badgeId": "A", "timestamp": "2025-06-01T08:00:00"}])
    payload = [{"badgeId": "A", "timestamp": f"2025-06-{d:02d}T08:00:00"} for d in range(1, 31)] * 40
    affected = db.upsert_presences(client, payload, chunk_size=500)
    upserts = [c for c in client.calls if c[1] == "upsert"]
    assert len(upserts) == 3
    assert affected == len(payload)
    assert len(client.tables["presences"]) == 30


def test_rpc_wrappers(client):
    client.rpc_results["clean_duplicate_presences"] = 4
    assert db.clean_duplicate_presences(client) == 4
    client.rpc_results["get_all_members_presences"] = [{"badgeId": "A"}]
    assert db.fetch_members_presences(client, date(2025, 1, 1), date(2025, 1, 31)) == [{"badgeId": "A"}]
    assert client.rpc_calls[-1] == ("get_all_members_presences",
                                    {"p_start_date": "2025-01-01", "p_end_date": "2025-01-31"})


def test_generate_stats_report_unwraps_and_rejects_empty(client):
    client.rpc_results["generate_stats_report"] = [{"total_presences": 12}]
    assert db.generate_stats_report(client, date(2025, 1, 1), date(2025, 12, 31)) == {"total_presences": 12}
    client.rpc_results["generate_stats_report"] = {"total_presences": 3}
    assert db.generate_stats_report(client, date(2025, 1, 1), date(2025, 12, 31))["total_presences"] == 3
    client.rpc_results["generate_stats_report"] = []
    with pytest.raises(db.BackendError, match="No data"):
        db.generate_stats_report(client, date(2025, 1, 1), date(2025, 12, 31))


def test_payments(client):
    created = db.create_payment(client, {"member_id": 1, "amount": "45", "is_paid": False,
                                         "encaissement_prevu": date(2025, 7, 1)})
    assert created["amount"] == 45.0
    assert created["encaissement_prevu"] == "2025-07-01"
    assert db.set_payment_paid(client, created["id"], True)["is_paid"] is True
    assert len(db.fetch_payments(client, member_id=1)) == 1
    db.delete_payment(client, created["id"])
    assert db.fetch_payments(client) == []


def test_fetch_role(client):
    client.seed("user_roles", [{"user_id": "u-1", "role": "admin"}])
    assert db.fetch_role(client, "u-1") == "admin"
    assert db.fetch_role(client, "u-2") is None


def test_network_errors_become_backend_errors(client):
    client.errors["members"] = httpx.ConnectError("connection refused")
    with pytest.raises(db.BackendError) as err:
        db.fetch_members(client)
    assert db.friendly_message(err.value).startswith("Cannot reach the database")
    assert db.check_connection(client) is False


@pytest.mark.parametrize(
    "message, expected",
    [
        ("JWT expired", "Your session has expired. Please sign in again."),
        ("duplicate key value violates unique constraint", "This record already exists."),
        ("Invalid login credentials", "Invalid email or password."),
        ("something else", "something else"),
    ],
)
def test_friendly_message(message, expected):
    assert db.friendly_message(Exception(message)) == expected


def test_fetch_all_presences_pages_never_overlap(client):
    client.unordered_scans = True
    client.seed("presences", [{"badgeId": f"B{i % 40}", "timestamp": "2025-06-01T08:00:00"} for i in range(2500)])
    rows = db.fetch_all_presences(client)
    assert len(rows) == 2500
    assert len({r["id"] for r in rows}) == 2500
    for _, _, bounds, orders in client.calls:
        assert bounds is not None
        assert orders == (("id", False),)


def test_fetch_members_breaks_name_ties_by_id(client):
    client.unordered_scans = True
    client.seed("members", [{"name": ["Martin", "Dupont", "Leroy"][i % 3]} for i in range(25)])
    members = db.fetch_members(client, page_size=10)
    assert len({m["id"] for m in members}) == 25
    assert [m["name"] for m in members] == ["Dupont"] * 8 + ["Leroy"] * 8 + ["Martin"] * 9
    assert all(c[3] == (("name", False), ("id", False)) for c in client.calls)


def test_fetch_presences_pages_with_equal_timestamps(client):
    client.unordered_scans = True
    client.seed("presences", [{"badgeId": f"B{i}", "timestamp": "2025-06-01T08:00:00"} for i in range(25)])
    rows = db.fetch_presences(client, page_size=10)
    assert [r["id"] for r in rows] == list(range(25, 0, -1))
    assert all(c[3] == (("timestamp", True), ("id", True)) for c in client.calls)


def test_fetch_payments_reads_every_page(client):
    client.unordered_scans = True
    client.seed("payments", [{"member_id": 1 + i % 2, "amount": 30.0,
                              "date_paiement": f"2025-0{1 + i % 2}-15T10:00:00"} for i in range(25)])
    payments = db.fetch_payments(client, page_size=10)
    assert len({p["id"] for p in payments}) == 25
    assert [c[2] for c in client.calls] == [(0, 9), (10, 19), (20, 29)]
    assert all(c[3] == (("date_paiement", True), ("id", True)) for c in client.calls)
    assert payments[0]["date_paiement"].startswith("2025-02")
    assert len(db.fetch_payments(client, member_id=2, page_size=10)) == 12


def test_fetch_users_with_roles_normalizes_rows(client):
    client.rpc_results["get_users_with_roles"] = [
        {"user_id": "u-1", "user_email": "admin@bodyforce.test", "user_role": "admin",
         "confirmed_at": "2025-01-01T00:00:00Z", "is_disabled": None},
        {"id": "u-2", "email": "jean@example.com", "role": None, "confirmed_at": None},
    ]
    users = db.fetch_users_with_roles(client)
    assert users[0] == {"id": "u-1", "email": "admin@bodyforce.test", "role": "admin",
                        "confirmed_at": "2025-01-01T00:00:00Z", "is_disabled": False}
    assert users[1]["id"] == "u-2" and users[1]["role"] == "user"


def test_set_user_role_replaces_existing_role(client):
    client.seed("user_roles", [{"user_id": "u-1", "role": "user"}])
    db.set_user_role(client, "u-1", "admin")
    db.set_user_role(client, "u-2", "user")
    assert sorted((r["user_id"], r["role"]) for r in client.tables["user_roles"]) == \
        [("u-1", "admin"), ("u-2", "user")]
    with pytest.raises(db.BackendError, match="Unknown role"):
        db.set_user_role(client, "u-1", "owner")


def test_link_and_unlink_user_report_rpc_failures(client):
    client.rpc_results["link_user_to_member"] = {"success": True, "member_name": "Jean Dupont"}
    assert db.link_user_to_member(client, "u-1", 4)["member_name"] == "Jean Dupont"
    assert client.rpc_calls[-1] == ("link_user_to_member", {"target_user_id": "u-1", "target_member_id": 4})

    client.rpc_results["unlink_user_from_member"] = [{"success": False, "error": "Member has no account"}]
    with pytest.raises(db.BackendError, match="Member has no account"):
        db.unlink_user_from_member(client, 4)

    client.rpc_results["disable_user_admin"] = None
    with pytest.raises(db.BackendError, match="Disable user failed"):
        db.disable_user(client, "u-1")
