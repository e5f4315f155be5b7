"""
app.py
BodyForce gym administration dashboard (Streamlit, Supabase backend).
Run: streamlit run app.py
"""

from __future__ import annotations

import base64
import logging
from datetime import date, datetime, time, timedelta

import pandas as pd
import streamlit as st

import auth
import db
import importer
import messages
import report
import stats
import storage
import utils
from config import load_settings
from models import (
    GENDERS,
    INVITATION_STATUSES,
    PAYMENT_METHODS,
    SUBSCRIPTION_TYPES,
    USER_ROLES,
    WEEKDAYS,
)

st.set_page_config(page_title="BodyForce", layout="wide")

log = logging.getLogger(__name__)

PLANNING_PAGE_SIZE = 10
DASHBOARD_LIST_SIZE = 10
ADMIN_PAGES = ["Dashboard", "Members", "Payments", "Planning", "Statistics", "Reports", "Invitations",
               "Messages", "Users", "Settings"]
MEMBER_PAGES = ["My attendances", "My messages", "Settings"]


@st.cache_resource
def get_settings():
    return load_settings()


def get_client():
    # one client per browser session: it carries the signed-in user's auth session
    if "client" not in st.session_state:
        st.session_state.client = db.create_backend_client(get_settings())
    return st.session_state.client


def init_once():
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    st.session_state.setdefault("user", None)
    st.session_state.setdefault("role", None)
    st.session_state.setdefault("url_cache", storage.PublicUrlCache())


def show_error(e: Exception, key: str):
    st.error(db.friendly_message(e))
    if st.button("Retry", key=f"retry_{key}"):
        st.rerun()


def logout():
    try:
        auth.logout(get_client())
    except Exception:
        log.warning("sign-out failed", exc_info=True)
    for k in ("user", "role", "client", "page", "edit_member_id"):
        st.session_state.pop(k, None)
    st.session_state.url_cache.clear()


def login_screen():
    settings = get_settings()
    st.title(f"🔐 {settings.club_name} - Sign in")

    col1, col2 = st.columns([1, 1])
    with col1:
        email = st.text_input("Email")
        password = st.text_input("Password", type="password")
        if st.button("Sign in", type="primary"):
            client = get_client()
            try:
                user = auth.login(client, email, password)
                role = auth.get_role(client, user["id"])
            except (auth.AuthFailure, db.BackendError) as e:
                st.error(db.friendly_message(e))
                return
            st.session_state.user = user
            st.session_state.role = role
            log.info("signed in: %s (%s)", user["email"], role or "member")
            st.rerun()

    with col2:
        st.info(
            "Administrators manage members, attendance and payments.\n\n"
            "Members sign in with the account created from their invitation email."
        )


def invitation_signup_screen(token: str):
    settings = get_settings()
    client = get_client()
    st.title(f"✉️ Join {settings.club_name}")

    try:
        member = auth.verify_invitation(client, settings, token)
    except (auth.InvitationError, db.BackendError) as e:
        st.error(db.friendly_message(e))
        if st.button("Go to sign in"):
            st.query_params.clear()
            st.rerun()
        return

    st.write(f"Welcome **{utils.full_name(member)}**, choose a password for **{member['email']}**.")
    p1 = st.text_input("Password", type="password")
    p2 = st.text_input("Confirm password", type="password")
    if st.button("Create my account", type="primary"):
        try:
            auth.accept_invitation(client, settings, token, p1, p2)
        except (auth.InvitationError, auth.AuthFailure, db.BackendError) as e:
            st.error(db.friendly_message(e))
            return
        st.success("Account created. You can now sign in.")
        st.query_params.clear()


# ---------- Pages ----------

def dashboard_page():
    st.header("📊 Dashboard")
    client = get_client()
    today = date.today()

    try:
        members = db.fetch_members(client, page_size=get_settings().fetch_page_size)
        week_start = datetime.combine(today - timedelta(days=6), time.min)
        presences = stats.to_presences(db.fetch_presences(client, start=week_start))
    except db.BackendError as e:
        show_error(e, "dashboard")
        return

    payments = []
    try:
        payments = db.fetch_payments(client, page_size=get_settings().fetch_page_size)
    except db.BackendError:
        # the page still works without the payment cards
        log.warning("dashboard: payments unavailable", exc_info=True)

    counters = stats.member_counters(members, today)
    c1, c2, c3, c4, c5, c6 = st.columns(6)
    c1.metric("Members", counters["total"])
    c2.metric("Active", counters["active"])
    c3.metric("Expired", counters["expired"])
    c4.metric("Men", counters["men"])
    c5.metric("Women", counters["women"])
    c6.metric("Students", counters["students"])

    st.divider()

    left, right = st.columns([3, 2])
    with left:
        st.subheader("Attendance, last 7 days")
        series = stats.attendance_last_days(presences, today)
        df = pd.DataFrame(
            [{"day": f"{WEEKDAYS[d.weekday()][:3]} {d:%d/%m}", "presences": n} for d, n in series]
        ).set_index("day")
        st.bar_chart(df)
        today_count = series[-1][1]
        st.caption(f"Today: {today_count} presence(s)")

    with right:
        st.subheader("Payments")
        if payments:
            summary = stats.payment_summary(payments, today)
            st.metric("Received", f"{summary['total_received']:.2f} €")
            st.metric("Pending", f"{summary['total_pending']:.2f} €", f"{summary['pending_count']} payment(s)",
                      delta_color="off")
            st.metric("Overdue", f"{summary['total_overdue']:.2f} €", f"{summary['overdue_count']} payment(s)",
                      delta_color="inverse")
            st.progress(min(summary["collection_rate"] / 100, 1.0),
                        text=f"Collection rate {summary['collection_rate']:.0f}%")
        else:
            st.caption("No payment data.")

    st.divider()

    left, right = st.columns(2)
    with left:
        st.subheader("Recent check-ins")
        recent = stats.recent_presences(presences, members, DASHBOARD_LIST_SIZE)
        if recent:
            st.dataframe(
                pd.DataFrame(
                    [
                        {
                            "when": f"{r['at']:%d/%m %H:%M}",
                            "member": utils.full_name(r["member"]) or "Unknown badge",
                            "badge": r["badgeId"],
                        }
                        for r in recent
                    ]
                ),
                use_container_width=True,
                hide_index=True,
            )
        else:
            st.caption("No check-in this week.")

    with right:
        st.subheader("Latest members")
        latest = utils.latest_members(members, DASHBOARD_LIST_SIZE)
        if latest:
            st.dataframe(
                pd.DataFrame(
                    [{"badge #": m["badge_number"], "member": utils.full_name(m)} for m in latest]
                ),
                use_container_width=True,
                hide_index=True,
            )
        else:
            st.caption("No badge assigned yet.")

    st.divider()

    st.subheader("Expired subscriptions")
    expired = counters["expired_members"]
    if expired:
        st.dataframe(pd.DataFrame(expired), use_container_width=True, hide_index=True)
    else:
        st.caption("No expired subscriptions.")


def member_form(existing=None):
    client = get_client()
    if existing:
        st.subheader(f"✏️ Edit member: {utils.full_name(existing)}")
    else:
        st.subheader("➕ Add member")

    ex = existing or {}
    col1, col2, col3 = st.columns(3)
    with col1:
        name = st.text_input("Last name", value=ex.get("name") or "")
        first_name = st.text_input("First name", value=ex.get("firstName") or "")
        birthdate = st.date_input("Birthdate", value=utils.parse_date(ex.get("birthdate")),
                                  min_value=date(1920, 1, 1), max_value=date.today())
        gender = st.selectbox("Gender", GENDERS,
                              index=GENDERS.index(ex["gender"]) if ex.get("gender") in GENDERS else 0)
        etudiant = st.checkbox("Student", value=bool(ex.get("etudiant")))

    with col2:
        address = st.text_input("Address", value=ex.get("address") or "")
        phone = st.text_input("Phone", value=ex.get("phone") or "")
        mobile = st.text_input("Mobile", value=ex.get("mobile") or "")
        email = st.text_input("Email", value=ex.get("email") or "")
        badge_id = st.text_input("Badge ID", value=ex.get("badgeId") or "")

    with col3:
        current_type = ex.get("subscriptionType")
        sub_type = st.selectbox(
            "Subscription",
            SUBSCRIPTION_TYPES,
            index=SUBSCRIPTION_TYPES.index(current_type) if current_type in SUBSCRIPTION_TYPES else 0,
        )
        start_date = st.date_input("Start date", value=utils.parse_date(ex.get("startDate")) or date.today())

        period_start, auto_end = utils.subscription_period(start_date, sub_type)
        if period_start != start_date:
            st.caption(f"A calendar-year subscription starts on {period_start:%d/%m/%Y}.")
        unchanged = (
            existing
            and sub_type == current_type
            and start_date == utils.parse_date(ex.get("startDate"))
            and utils.parse_date(ex.get("endDate"))
        )
        end_date = st.date_input(
            "End date (auto-calculated, editable)",
            value=utils.parse_date(ex.get("endDate")) if unchanged else auto_end,
        )

    form = {
        "name": name.strip(),
        "firstName": first_name.strip(),
        "birthdate": birthdate,
        "gender": gender,
        "etudiant": etudiant,
        "address": address.strip() or None,
        "phone": phone.strip() or None,
        "mobile": mobile.strip() or None,
        "email": email.strip() or None,
        "badgeId": badge_id.strip() or None,
        "subscriptionType": sub_type,
        "startDate": period_start,
        "endDate": end_date,
    }
    errors = utils.validate_member_inputs(form)
    for e in errors:
        st.error(e)

    if st.button("Save", type="primary", disabled=bool(errors)):
        try:
            if existing:
                db.update_member(client, existing["id"], form)
                st.success("Member updated.")
            else:
                created = db.create_member(client, {**form, "files": []})
                st.session_state.edit_member_id = created.get("id")
                st.success("Member added.")
        except db.BackendError as e:
            st.error(db.friendly_message(e))
            return
        st.rerun()


def member_photo(member: dict):
    client = get_client()
    cache = st.session_state.url_cache
    src = storage.resolve_photo_src(client, member.get("photo"), cache)
    if src:
        st.image(src, width=160)
    else:
        st.markdown(f"### {utils.initials(member)}")

    photo = st.file_uploader("Change photo", type=["jpg", "jpeg", "png"], key=f"photo_{member['id']}")
    if photo is not None and st.button("Save photo", key=f"save_photo_{member['id']}"):
        data_url = f"data:{photo.type};base64,{base64.b64encode(photo.getvalue()).decode()}"
        try:
            db.update_member(client, member["id"], {"photo": data_url})
        except db.BackendError as e:
            st.error(db.friendly_message(e))
            return
        st.rerun()


def member_documents(member: dict):
    client = get_client()
    cache = st.session_state.url_cache
    files = utils.normalize_files(member.get("files"))

    st.markdown("**Documents**")
    if not files:
        st.caption("No certificate on file.")
    for i, f in enumerate(files):
        c1, c2 = st.columns([4, 1])
        c1.markdown(f"[{f.get('name')}]({f.get('url')})")
        if c2.button("Remove", key=f"rm_doc_{member['id']}_{i}"):
            try:
                storage.remove_member_document(client, f, cache)
                db.update_member(client, member["id"], {"files": files[:i] + files[i + 1:]})
            except (storage.StorageError, db.BackendError) as e:
                st.error(db.friendly_message(e))
                return
            st.rerun()

    upload = st.file_uploader("Add a document", key=f"doc_{member['id']}")
    capture = st.camera_input("Or take a picture", key=f"cam_{member['id']}")
    if st.button("Upload", key=f"upload_doc_{member['id']}", disabled=upload is None and capture is None):
        try:
            if upload is not None:
                entry = storage.upload_member_document(client, upload.name, upload.getvalue(), cache)
            else:
                entry = storage.capture_member_document(client, capture.getvalue(), cache)
            db.update_member(client, member["id"], {"files": files + [entry]})
        except (storage.StorageError, db.BackendError) as e:
            st.error(db.friendly_message(e))
            return
        st.success(f"{entry['name']} uploaded.")
        st.rerun()


def member_invitation(member: dict):
    client = get_client()
    settings = get_settings()
    status = member.get("invitation_status") or "not_invited"
    st.markdown(f"**Account:** {INVITATION_STATUSES.get(status, status)}")
    if member.get("user_id"):
        return

    try:
        if status == "pending":
            c1, c2 = st.columns(2)
            if c1.button("Resend invitation", key=f"resend_{member['id']}"):
                auth.resend_invitation(client, settings, member["id"])
                st.success("Invitation resent.")
            if c2.button("Cancel invitation", key=f"cancel_{member['id']}"):
                auth.cancel_invitation(client, member["id"])
                st.rerun()
        elif st.button("Send invitation", key=f"invite_{member['id']}", disabled=not member.get("email")):
            auth.invite_member(client, settings, member["id"])
            st.success(f"Invitation sent to {member['email']}.")
            st.rerun()
    except (auth.InvitationError, db.BackendError) as e:
        st.error(db.friendly_message(e))


def members_page():
    st.header("👥 Members")
    client = get_client()
    today = date.today()

    with st.sidebar:
        st.subheader("Search & Filters")
        search = st.text_input("Search", help="Name, first name, badge, email or mobile. "
                                              "Use OR, * and ?, ^ and $ anchors.")
        filter_keys = list(utils.MEMBER_FILTERS)
        active_filter = st.selectbox("Show", filter_keys, format_func=utils.MEMBER_FILTERS.get)
        sort_asc = st.toggle("Sort by name A→Z", value=True)

    try:
        members = db.fetch_members(client, page_size=get_settings().fetch_page_size)
    except db.BackendError as e:
        show_error(e, "members")
        return

    rows = utils.filter_members(members, search, active_filter, sort_asc, today)
    st.caption(f"{len(rows)} member(s) shown out of {len(members)}")

    df = pd.DataFrame(
        [
            {
                "id": m["id"],
                "name": m.get("name"),
                "firstName": m.get("firstName"),
                "badgeId": m.get("badgeId"),
                "age": utils.age_from_birthdate(m.get("birthdate"), today),
                "subscription": m.get("subscriptionType"),
                "endDate": m.get("endDate"),
                "status": utils.infer_status(m, today),
                "documents": len(utils.normalize_files(m.get("files"))),
            }
            for m in rows
        ]
    )
    st.dataframe(df, use_container_width=True, hide_index=True)
    st.download_button(
        "Download members.csv",
        data=utils.members_to_csv_bytes(rows),
        file_name="members.csv",
        mime="text/csv",
        disabled=not rows,
    )

    st.divider()

    options = {f"{utils.full_name(m)} ({m.get('badgeId') or 'no badge'}) - ID {m['id']}": m["id"] for m in rows}
    colA, colB = st.columns([1, 2])
    with colA:
        st.subheader("Select member")
        chosen = st.selectbox("Member", ["(none)"] + list(options))

    if chosen != "(none)":
        member_id = options[chosen]
        try:
            member = db.fetch_member(client, member_id)
            member_payments = db.fetch_payments(client, member_id)
        except db.BackendError as e:
            show_error(e, "member")
            return
        if member is None:
            st.warning("This member no longer exists.")
            return

        with colA:
            member_photo(member)
        with colB:
            st.subheader("Member actions")
            c1, c2 = st.columns(2)
            with c1:
                if st.button("Edit"):
                    st.session_state.edit_member_id = member_id
                    st.rerun()
            with c2:
                delete_confirm = st.checkbox("Confirm delete", value=False, key="del_confirm")
                if st.button("Delete", type="secondary", disabled=not delete_confirm):
                    try:
                        db.delete_member(client, member_id)
                    except db.BackendError as e:
                        st.error(db.friendly_message(e))
                        return
                    st.session_state.edit_member_id = None
                    st.success("Member deleted.")
                    st.rerun()
            member_invitation(member)
            member_documents(member)

            own_payments = stats.enrich_members_with_payments([member], member_payments, today)[0]
            st.markdown(
                f"**Payments:** {own_payments['total_paid']:.2f} / {own_payments['total_due']:.2f} € "
                f"({own_payments['overall_status'].replace('_', ' ')})"
            )

    st.divider()

    if st.session_state.get("edit_member_id"):
        try:
            existing = db.fetch_member(client, st.session_state.edit_member_id)
        except db.BackendError as e:
            show_error(e, "edit_member")
            return
        if existing:
            member_form(existing=existing)
        if st.button("Cancel edit"):
            st.session_state.edit_member_id = None
            st.rerun()
    else:
        member_form(existing=None)


def payments_page():
    st.header("💳 Payments")
    client = get_client()
    today = date.today()

    try:
        members = db.fetch_members(client, columns="id,name,firstName,badgeId")
        payments = db.fetch_payments(client, page_size=get_settings().fetch_page_size)
    except db.BackendError as e:
        show_error(e, "payments")
        return

    summary = stats.payment_summary(payments, today)
    c1, c2, c3, c4 = st.columns(4)
    c1.metric("Expected", f"{summary['total_expected']:.2f} €")
    c2.metric("Received", f"{summary['total_received']:.2f} €", f"{summary['paid_count']} paid", delta_color="off")
    c3.metric("Pending", f"{summary['total_pending']:.2f} €", f"{summary['pending_count']} pending",
              delta_color="off")
    c4.metric("Overdue", f"{summary['total_overdue']:.2f} €", f"{summary['overdue_count']} overdue",
              delta_color="inverse")
    st.progress(min(summary["collection_rate"] / 100, 1.0),
                text=f"Collection rate {summary['collection_rate']:.0f}%")
    st.bar_chart(pd.Series(summary["by_method"], name="received"))

    st.divider()

    if not members:
        st.info("No members yet. Add a member first.")
        return

    options = {f"{utils.full_name(m)} - ID {m['id']}": m["id"] for m in members}
    st.subheader("Add payment")
    c1, c2, c3 = st.columns(3)
    with c1:
        member_label = st.selectbox("Member", list(options))
        amount = st.number_input("Amount (€)", min_value=0.0, value=0.0, step=10.0)
    with c2:
        method = st.selectbox("Method", PAYMENT_METHODS)
        is_paid = st.toggle("Paid", value=True)
    with c3:
        expected = st.date_input("Expected cash date", value=today)
        comment = st.text_input("Comment", value="")

    if st.button("Record payment", type="primary"):
        if amount <= 0:
            st.error("Amount must be > 0.")
        else:
            try:
                db.create_payment(client, {
                    "member_id": options[member_label],
                    "amount": amount,
                    "method": method,
                    "is_paid": is_paid,
                    "encaissement_prevu": expected,
                    "commentaire": comment.strip() or None,
                })
            except db.BackendError as e:
                st.error(db.friendly_message(e))
                return
            st.success("Payment recorded.")
            st.rerun()

    st.divider()

    st.subheader("Payment history")
    status_filter = st.selectbox("Status", ["All", "paid", "pending", "overdue"])
    shown = [p for p in payments if status_filter == "All" or stats.payment_status(p, today) == status_filter]
    if shown:
        df = pd.DataFrame(
            [
                {
                    "id": p["id"],
                    "member": utils.full_name(p.get("member")),
                    "amount": p.get("amount"),
                    "method": p.get("method"),
                    "status": stats.payment_status(p, today),
                    "expected": p.get("encaissement_prevu"),
                    "date": p.get("date_paiement"),
                    "comment": p.get("commentaire"),
                }
                for p in shown
            ]
        )
        st.dataframe(df, use_container_width=True, hide_index=True)
    else:
        st.caption("No payments.")
    st.download_button("Download payments.csv", data=utils.payments_to_csv_bytes(payments),
                       file_name="payments.csv", mime="text/csv", disabled=not payments)

    if shown:
        by_id = {f"#{p['id']} - {utils.full_name(p.get('member'))} - {p.get('amount')} €": p for p in shown}
        chosen = st.selectbox("Payment", list(by_id))
        payment = by_id[chosen]
        c1, c2 = st.columns(2)
        with c1:
            label = "Mark as unpaid" if payment.get("is_paid") else "Mark as paid"
            if st.button(label):
                try:
                    db.set_payment_paid(client, payment["id"], not payment.get("is_paid"))
                except db.BackendError as e:
                    st.error(db.friendly_message(e))
                    return
                st.rerun()
        with c2:
            confirm = st.checkbox("Confirm delete", value=False, key="del_payment")
            if st.button("Delete payment", disabled=not confirm):
                try:
                    db.delete_payment(client, payment["id"])
                except db.BackendError as e:
                    st.error(db.friendly_message(e))
                    return
                st.rerun()

    st.divider()

    st.subheader("By member")
    enriched = [m for m in stats.enrich_members_with_payments(members, payments, today) if m["payments"]]
    if enriched:
        st.dataframe(
            pd.DataFrame(
                [
                    {
                        "member": utils.full_name(m),
                        "due": m["total_due"],
                        "paid": m["total_paid"],
                        "progress %": round(m["progress"]),
                        "status": m["overall_status"],
                        "last payment": m["last_payment_date"],
                    }
                    for m in enriched
                ]
            ),
            use_container_width=True,
            hide_index=True,
        )


def planning_page():
    st.header("📅 Planning")
    client = get_client()
    today = date.today()

    st.session_state.setdefault("planning_period", "week")
    st.session_state.setdefault("planning_base", today)
    st.session_state.setdefault("planning_page", 1)

    c1, c2, c3, c4 = st.columns([2, 1, 1, 1])
    with c1:
        period = st.radio("Period", ["week", "month", "year"], horizontal=True,
                          index=["week", "month", "year"].index(st.session_state.planning_period))
        st.session_state.planning_period = period
    start, end = utils.period_range(period, st.session_state.planning_base)
    with c2:
        if st.button("◀ Previous"):
            st.session_state.planning_base = utils.shift_period(period, start.date(), -1)[0].date()
            st.session_state.planning_page = 1
            st.rerun()
    with c3:
        if st.button("Today"):
            st.session_state.planning_base = today
            st.session_state.planning_page = 1
            st.rerun()
    with c4:
        if st.button("Next ▶"):
            st.session_state.planning_base = utils.shift_period(period, start.date(), 1)[0].date()
            st.session_state.planning_page = 1
            st.rerun()
    st.caption(f"{start:%d/%m/%Y} → {end:%d/%m/%Y}")

    f1, f2 = st.columns(2)
    name_filter = f1.text_input("Filter by name")
    badge_filter = f2.text_input("Filter by badge")

    try:
        members = db.fetch_members(client, columns="id,name,firstName,badgeId,badge_number")
        rows = db.fetch_presences(client, start=start, end=end, columns="id,badgeId,timestamp",
                                  page_size=get_settings().fetch_page_size)
    except db.BackendError as e:
        show_error(e, "planning")
        return
    presences = stats.to_presences(rows)

    summary = stats.period_stats(presences, start.date(), end.date())
    m1, m2, m3, m4 = st.columns(4)
    m1.metric("Presences", summary["total_presences"])
    m2.metric("Members", summary["unique_members"])
    m3.metric("Avg presences / day", summary["avg_presences_per_day"])
    busiest = summary["busiest_day"]
    m4.metric("Busiest day", f"{busiest['day']:%d/%m}" if busiest["day"] else "-",
              f"{busiest['members']} member(s)" if busiest["day"] else None, delta_color="off")

    daily = stats.count_by_date(presences)
    if daily:
        st.bar_chart(pd.Series({d.isoformat(): n for d, n in sorted(daily.items())}, name="presences"))

    seen = stats.planning_members(presences, members, name_filter, badge_filter)
    page_rows, total_pages = stats.paginate(seen, st.session_state.planning_page, PLANNING_PAGE_SIZE)
    by_badge: dict[str, list] = {}
    for p in presences:
        by_badge.setdefault(p.badge_id, []).append(p)

    for m in page_rows:
        visits = by_badge.get(m["badgeId"], [])
        with st.expander(f"{utils.full_name(m)} ({m['badgeId']}) - {len(visits)} presence(s)"):
            st.dataframe(
                pd.DataFrame([{"id": p.id, "day": WEEKDAYS[p.at.weekday()], "at": p.at} for p in visits]),
                use_container_width=True,
                hide_index=True,
            )
            by_label = {f"{p.at:%d/%m/%Y %H:%M}": p for p in visits}
            chosen = st.selectbox("Presence", list(by_label), key=f"pres_{m['id']}")
            if st.button("Delete presence", key=f"del_pres_{m['id']}"):
                try:
                    db.delete_presence(client, by_label[chosen].id)
                except db.BackendError as e:
                    st.error(db.friendly_message(e))
                    return
                st.rerun()

    p1, p2, p3 = st.columns([1, 2, 1])
    if p1.button("◀ Page", disabled=st.session_state.planning_page <= 1):
        st.session_state.planning_page -= 1
        st.rerun()
    p2.caption(f"Page {min(st.session_state.planning_page, total_pages)} / {total_pages} "
               f"({len(seen)} member(s))")
    if p3.button("Page ▶", disabled=st.session_state.planning_page >= total_pages):
        st.session_state.planning_page += 1
        st.rerun()

    st.divider()

    left, right = st.columns(2)
    with left:
        st.subheader("Add presence")
        with_badge = {f"{utils.full_name(m)} ({m['badgeId']})": m["badgeId"] for m in members if m.get("badgeId")}
        if with_badge:
            who = st.selectbox("Member", list(with_badge))
            day = st.date_input("Day", value=today)
            at = st.time_input("Time", value=datetime.now().time().replace(second=0, microsecond=0))
            if st.button("Record presence", type="primary"):
                try:
                    created = db.create_presence(client, with_badge[who], datetime.combine(day, at))
                except db.BackendError as e:
                    st.error(db.friendly_message(e))
                    return
                if created is None:
                    st.info("This presence is already recorded.")
                else:
                    st.success("Presence recorded.")
                    st.rerun()
        else:
            st.caption("No member has a badge yet.")

    with right:
        st.subheader("Import access-control export")
        upload = st.file_uploader("Excel file", type=["xlsx", "xls"])
        if st.button("Import", disabled=upload is None):
            try:
                result, affected = importer.import_presences(client, upload)
            except db.BackendError as e:
                st.error(db.friendly_message(e))
                return
            except ValueError as e:
                st.error(f"Could not read the file: {e}")
                return
            st.success(f"{result.total_rows} row(s) read, {result.kept} kept, {affected} upserted.")
            st.caption(
                f"Other type: {result.filtered_type} | No badge: {result.no_badge} | "
                f"No date: {result.no_date} | Unreadable date: {result.unparsable_date}"
            )

        if st.button("Clean duplicate presences"):
            try:
                outcome = db.clean_duplicate_presences(client)
            except db.BackendError as e:
                st.error(db.friendly_message(e))
                return
            st.success(f"Duplicates cleaned: {outcome}")


def _period_inputs(key: str):
    today = date.today()
    shortcuts = {"current_year": "Current year", "last_year": "Last year", "current_month": "Current month"}
    choice = st.radio("Period", list(shortcuts), format_func=shortcuts.get, horizontal=True, key=f"{key}_period")
    default_start, default_end = utils.report_period(choice, today)
    c1, c2 = st.columns(2)
    start = c1.date_input("From", value=default_start, key=f"{key}_start_{choice}")
    end = c2.date_input("To", value=default_end, key=f"{key}_end_{choice}")
    return start, end


def _show_report_data(data: dict):
    c1, c2, c3, c4 = st.columns(4)
    c1.metric("Presences", data.get("total_presences", 0))
    c2.metric("Active members", data.get("membres_actifs", 0))
    c3.metric("Registered members", data.get("total_membres", 0))
    c4.metric("Activation rate", f"{data.get('taux_activation', 0)}%")

    top = data.get("top_10_assidus") or []
    if top:
        st.subheader("Top 10 members")
        st.dataframe(pd.DataFrame(top), use_container_width=True, hide_index=True)

    left, right = st.columns(2)
    with left:
        if data.get("frequentation_jours"):
            st.subheader("By weekday")
            st.bar_chart(pd.DataFrame(data["frequentation_jours"]).set_index("jour"))
    with right:
        if data.get("frequentation_plages"):
            st.subheader("By time slot")
            st.bar_chart(pd.Series(data["frequentation_plages"], name="presences"))
    if data.get("evolution_mensuelle"):
        st.subheader("Monthly trend")
        months = dict(sorted(data["evolution_mensuelle"].items()))
        st.line_chart(pd.Series(months, name="presences"))


def statistics_page():
    st.header("📈 Statistics")
    client = get_client()
    start, end = _period_inputs("stats")

    try:
        members = db.fetch_members(client, page_size=get_settings().fetch_page_size)
        presences = stats.to_presences(db.fetch_all_presences(client, page_size=get_settings().fetch_page_size))
    except db.BackendError as e:
        show_error(e, "statistics")
        return

    data = stats.build_report_data(members, presences, start, end)
    _show_report_data(data)

    inside = stats.in_period(presences, start, end)
    st.subheader("By hour")
    st.bar_chart(pd.Series(stats.count_by_hour(inside), name="presences"))
    top_hours = stats.top_hours(inside)
    if top_hours:
        st.caption("Busiest hours: " + ", ".join(f"{h}h ({n})" for h, n in top_hours))

    st.download_button(
        "Download PDF",
        data=report.build_stats_report(data, start, end, get_settings().club_name),
        file_name=report.report_filename(start, end),
        mime="application/pdf",
    )


def reports_page():
    st.header("🧾 Reports")
    client = get_client()
    settings = get_settings()

    st.subheader("Attendance report (PDF)")
    start, end = _period_inputs("report")
    if st.button("Generate report", type="primary"):
        if end < start:
            st.error("End date must not be before start date.")
        else:
            try:
                data = db.generate_stats_report(client, start, end)
            except db.BackendError as e:
                show_error(e, "report")
                return
            st.session_state.report_pdf = (
                report.report_filename(start, end),
                report.build_stats_report(data, start, end, settings.club_name),
            )
            log.info("report generated for %s - %s", start, end)
    if st.session_state.get("report_pdf"):
        name, pdf = st.session_state.report_pdf
        st.download_button(f"Download {name}", data=pdf, file_name=name, mime="application/pdf")

    st.divider()

    try:
        members = db.fetch_all_rows(client, "members", columns=db.MEMBER_LIST_COLUMNS, order="name",
                                    page_size=settings.fetch_page_size)
        payments = db.fetch_payments(client, page_size=get_settings().fetch_page_size)
    except db.BackendError as e:
        show_error(e, "exports")
        return

    st.subheader("Export members to CSV")
    if members:
        st.download_button("Download members.csv", data=utils.members_to_csv_bytes(members),
                           file_name="members.csv", mime="text/csv")
    else:
        st.caption("No members to export.")

    st.subheader("Export payments to CSV")
    if payments:
        st.download_button("Download payments.csv", data=utils.payments_to_csv_bytes(payments),
                           file_name="payments.csv", mime="text/csv")
    else:
        st.caption("No payments to export.")

    st.divider()

    st.subheader("Revenue summary by month")
    st.dataframe(stats.revenue_by_month(payments), use_container_width=True, hide_index=True)


def invitations_page():
    st.header("✉️ Invitations")
    client = get_client()

    try:
        members = db.fetch_members(client, page_size=get_settings().fetch_page_size)
    except db.BackendError as e:
        show_error(e, "invitations")
        return

    status = st.selectbox("Status", ["all"] + list(INVITATION_STATUSES),
                          format_func=lambda s: "All" if s == "all" else INVITATION_STATUSES[s])
    rows = [m for m in members if status == "all" or (m.get("invitation_status") or "not_invited") == status]

    counts: dict[str, int] = {}
    for m in members:
        key = m.get("invitation_status") or "not_invited"
        counts[key] = counts.get(key, 0) + 1
    cols = st.columns(len(INVITATION_STATUSES))
    for col, (key, label) in zip(cols, INVITATION_STATUSES.items()):
        col.metric(label, counts.get(key, 0))

    st.dataframe(
        pd.DataFrame(
            [
                {
                    "member": utils.full_name(m),
                    "email": m.get("email"),
                    "status": INVITATION_STATUSES.get(m.get("invitation_status") or "not_invited"),
                    "invited at": m.get("invited_at"),
                    "has account": bool(m.get("user_id")),
                }
                for m in rows
            ]
        ),
        use_container_width=True,
        hide_index=True,
    )

    candidates = {f"{utils.full_name(m)} - ID {m['id']}": m for m in rows if not m.get("user_id")}
    if candidates:
        chosen = st.selectbox("Member", list(candidates))
        member_invitation(candidates[chosen])


def my_attendances_page():
    st.header("🏋️ My attendances")
    client = get_client()

    try:
        member = db.fetch_member_by_user(client, st.session_state.user["id"])
        if member is None:
            st.info("No member profile is linked to this account.")
            return
        rows = db.fetch_presences(client, badge_id=member.get("badgeId"), columns="id,badgeId,timestamp") \
            if member.get("badgeId") else []
    except db.BackendError as e:
        show_error(e, "my_attendances")
        return

    st.caption(f"{utils.full_name(member)} - subscription until {member.get('endDate') or '?'}"
               f" ({utils.infer_status(member)})")
    summary = stats.attendance_summary(stats.to_presences(rows))
    if not summary.total_visits:
        st.caption("No attendance recorded yet.")
        return

    c1, c2, c3, c4 = st.columns(4)
    c1.metric("Visits", summary.total_visits)
    c2.metric("Days", summary.unique_days)
    c3.metric("Peak hour", f"{summary.peak_hour}h")
    c4.metric("Favourite day", summary.peak_day)
    st.caption(f"First visit {summary.first_visit:%d/%m/%Y}, last visit {summary.last_visit:%d/%m/%Y %H:%M}")

    left, right = st.columns(2)
    with left:
        st.subheader("By hour")
        st.bar_chart(pd.Series(summary.hourly, name="visits"))
    with right:
        st.subheader("By weekday")
        st.bar_chart(pd.Series(dict(zip(WEEKDAYS, summary.weekly)), name="visits"))

    st.subheader("History")
    st.dataframe(
        pd.DataFrame([{"day": d, "visits": n} for d, n in summary.daily.items()]),
        use_container_width=True,
        hide_index=True,
    )


def _show_thread(thread: list[dict], reader: str):
    """Chat-style thread; `reader` is "club" or "member" and sets which side is "me"."""
    if not thread:
        st.caption("No message yet.")
        return
    for m in thread:
        author = "club" if m["direction"] == "inbound" else "member"
        with st.chat_message(author, avatar="🏋️" if author == "club" else "👤"):
            ts = utils.parse_timestamp(m["created_at"])
            unread = author != reader and m["direction"] == "inbound" and not m["read_at"]
            st.markdown(f"**{m['subject'] or ''}**" + (" 🆕" if unread else ""))
            st.write(m["body"])
            st.caption(f"{ts:%d/%m/%Y %H:%M}" if ts else "")


def messages_page():
    st.header("✉️ Messages")
    client = get_client()
    user = st.session_state.user

    try:
        members = db.fetch_members(client, columns="id,name,firstName,badgeId,user_id",
                                   page_size=get_settings().fetch_page_size)
        me = db.fetch_member_by_user(client, user["id"])
    except db.BackendError as e:
        show_error(e, "messages")
        return
    my_member_id = me["id"] if me else None
    options = {f"{utils.full_name(m)} - ID {m['id']}": m["id"] for m in members}

    tab_new, tab_thread, tab_sent = st.tabs(["New message", "Conversations", "Sent"])

    with tab_new:
        broadcast = st.checkbox("Send to every member")
        chosen = st.multiselect("Recipients", list(options), disabled=broadcast)
        subject = st.text_input("Subject", key="msg_subject")
        body = st.text_area("Message", key="msg_body")
        if st.button("Send", type="primary", disabled=not (broadcast or chosen)):
            try:
                messages.send_message(client, user["id"], subject, body, [options[c] for c in chosen],
                                      author_member_id=my_member_id, broadcast=broadcast)
            except (messages.MessageError, db.BackendError) as e:
                st.error(db.friendly_message(e))
            else:
                st.success("Message sent.")

    with tab_thread:
        if not options:
            st.caption("No members.")
        else:
            member_id = options[st.selectbox("Member", list(options), key="thread_member")]
            try:
                _show_thread(messages.list_thread(client, member_id), reader="club")
            except db.BackendError as e:
                st.error(db.friendly_message(e))
            reply_subject = st.text_input("Subject", key="reply_subject")
            reply_body = st.text_area("Reply", key="reply_body")
            if st.button("Send reply"):
                try:
                    messages.send_to_member(client, user["id"], member_id, reply_subject, reply_body,
                                            author_member_id=my_member_id)
                except (messages.MessageError, db.BackendError) as e:
                    st.error(db.friendly_message(e))
                else:
                    st.rerun()

    with tab_sent:
        try:
            sent = messages.list_sent(client, user["id"])
        except db.BackendError as e:
            st.error(db.friendly_message(e))
            sent = []
        if sent:
            st.dataframe(
                pd.DataFrame(
                    [
                        {
                            "sent": m.get("created_at"),
                            "subject": m.get("subject"),
                            "to everyone": bool(m.get("is_broadcast")),
                            "message": m.get("body"),
                        }
                        for m in sent
                    ]
                ),
                use_container_width=True,
                hide_index=True,
            )
        else:
            st.caption("Nothing sent yet.")


def my_messages_page():
    st.header("✉️ My messages")
    client = get_client()
    user = st.session_state.user

    try:
        member = db.fetch_member_by_user(client, user["id"])
        if member is None:
            st.info("No member profile is linked to this account.")
            return
        thread = messages.list_thread(client, member["id"])
        # the thread is shown as it was before being marked read, so new messages stay flagged
        messages.mark_all_read(client, member["id"])
    except db.BackendError as e:
        show_error(e, "my_messages")
        return

    _show_thread(thread, reader="member")

    st.subheader("Write to the club")
    subject = st.text_input("Subject", key="my_msg_subject")
    body = st.text_area("Message", key="my_msg_body")
    if st.button("Send", type="primary"):
        try:
            messages.send_to_admins(client, user["id"], member["id"], subject, body)
        except (messages.MessageError, db.BackendError) as e:
            st.error(db.friendly_message(e))
        else:
            st.rerun()


def unread_messages(user: dict) -> int:
    client = get_client()
    try:
        member = db.fetch_member_by_user(client, user["id"])
        return messages.count_unread(client, member["id"] if member else None)
    except db.BackendError:
        log.warning("unread message count unavailable", exc_info=True)
        return 0


def users_page():
    st.header("👥 Users")
    client = get_client()
    me = st.session_state.user

    try:
        users = db.fetch_users_with_roles(client)
        members = db.fetch_members(client, columns="id,name,firstName,user_id",
                                   page_size=get_settings().fetch_page_size)
    except db.BackendError as e:
        show_error(e, "users")
        return

    linked = {m["user_id"]: m for m in members if m.get("user_id")}
    st.dataframe(
        pd.DataFrame(
            [
                {
                    "email": u["email"],
                    "role": USER_ROLES.get(u["role"], u["role"]),
                    "member": utils.full_name(linked.get(u["id"])),
                    "confirmed": bool(u["confirmed_at"]),
                    "disabled": u["is_disabled"],
                }
                for u in users
            ]
        ),
        use_container_width=True,
        hide_index=True,
    )
    if not users:
        st.caption("No user accounts.")
        return

    accounts = {u["email"] or u["id"]: u for u in users}
    account = accounts[st.selectbox("Account", list(accounts))]
    own = account["id"] == me["id"]
    if own:
        st.caption("You cannot change or disable your own account.")

    col1, col2, col3 = st.columns(3)
    with col1:
        roles = list(USER_ROLES)
        role = st.selectbox("Role", roles, format_func=USER_ROLES.get,
                            index=roles.index(account["role"]) if account["role"] in roles else 0)
        if st.button("Save role", disabled=own or account["is_disabled"]):
            try:
                db.set_user_role(client, account["id"], role)
            except db.BackendError as e:
                st.error(db.friendly_message(e))
            else:
                st.success(f"Role set to {USER_ROLES[role]}.")
                st.rerun()

    with col2:
        member = linked.get(account["id"])
        if member:
            st.write(f"Linked to **{utils.full_name(member)}**")
            if st.button("Unlink member"):
                try:
                    db.unlink_user_from_member(client, member["id"])
                except db.BackendError as e:
                    st.error(db.friendly_message(e))
                else:
                    st.rerun()
        else:
            free = {f"{utils.full_name(m)} - ID {m['id']}": m["id"] for m in members if not m.get("user_id")}
            choice = st.selectbox("Link to member", list(free)) if free else None
            if st.button("Link member", disabled=choice is None or account["is_disabled"]):
                try:
                    db.link_user_to_member(client, account["id"], free[choice])
                except db.BackendError as e:
                    st.error(db.friendly_message(e))
                else:
                    st.rerun()

    with col3:
        confirm = st.checkbox("Confirm disabling this account", disabled=own or account["is_disabled"])
        if st.button("Disable account", disabled=own or account["is_disabled"] or not confirm):
            try:
                db.disable_user(client, account["id"])
            except db.BackendError as e:
                st.error(db.friendly_message(e))
            else:
                log.info("user %s disabled by %s", account["email"], me["email"])
                st.rerun()


def settings_page():
    st.header("⚙️ Settings")
    settings = get_settings()

    st.subheader("Change password")
    p1 = st.text_input("New password", type="password")
    p2 = st.text_input("Confirm new password", type="password")
    if st.button("Update password", type="primary"):
        try:
            auth.change_password(get_client(), p1, p2)
        except auth.AuthFailure as e:
            st.error(str(e))
        else:
            st.success("Password updated.")

    st.divider()

    st.subheader("Backend")
    st.caption(f"Club: {settings.club_name} | Backend: {settings.supabase_url}")
    if st.button("Test connection"):
        if db.check_connection(get_client()):
            st.success("Connected.")
        else:
            st.error("Cannot reach the database.")
    if st.button("Clear file URL cache"):
        st.session_state.url_cache.clear()
        st.success("Cache cleared.")


def main_app():
    user = st.session_state.user
    pages = ADMIN_PAGES if auth.is_admin(st.session_state.role) else MEMBER_PAGES

    st.sidebar.title(f"🏋️ {get_settings().club_name}")
    st.sidebar.caption(f"Signed in as: {user['email']}")

    unread = unread_messages(user)
    inbox = "Messages" if "Messages" in pages else "My messages"
    if unread:
        st.sidebar.caption(f"🔔 {unread} unread message(s)")

    if st.session_state.get("page") not in pages:
        st.session_state.page = pages[0]
    st.session_state.page = st.sidebar.radio(
        "Navigate",
        pages,
        index=pages.index(st.session_state.page),
        format_func=lambda p: f"{p} ({unread})" if p == inbox and unread else p,
    )

    if st.sidebar.button("Logout"):
        logout()
        st.rerun()

    page = st.session_state.page
    if page == "Dashboard":
        dashboard_page()
    elif page == "Members":
        members_page()
    elif page == "Payments":
        payments_page()
    elif page == "Planning":
        planning_page()
    elif page == "Statistics":
        statistics_page()
    elif page == "Reports":
        reports_page()
    elif page == "Invitations":
        invitations_page()
    elif page == "Messages":
        messages_page()
    elif page == "Users":
        users_page()
    elif page == "My attendances":
        my_attendances_page()
    elif page == "My messages":
        my_messages_page()
    elif page == "Settings":
        settings_page()


# --------- App entry ---------

def run():
    init_once()

    token = st.query_params.get("token")
    if token and not st.session_state.user:
        invitation_signup_screen(token)
        return

    if not st.session_state.user:
        login_screen()
        return

    main_app()


if __name__ == "__main__":
    run()
