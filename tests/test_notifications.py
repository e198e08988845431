from sqlalchemy import select

from app.yiba.db import session_scope
from app.yiba.modules.notifications import service as notifications
from app.yiba.modules.notifications.models import EmailQueue, Notification


def _seed(app, user_id, count=3, **kwargs):
    with app.app_context(), session_scope(app) as s:
        for i in range(count):
            notifications.create_notification(
                s,
                user_id=user_id,
                notification_type="SYSTEM_ALERT",
                title=f"Alert {i}",
                message=f"Message {i}",
                **kwargs,
            )


def test_list_and_mark_read(app, make_user, login):
    uid = make_user("owner@academy.example.org", "INSTITUTION_ADMIN")
    other_id = make_user("other@academy.example.org", "INSTITUTION_ADMIN")
    _seed(app, uid)
    _seed(app, other_id, count=1)
    c = login("owner@academy.example.org")

    r = c.get("/api/notifications?limit=2")
    assert r.status_code == 200
    body = r.json
    assert body["count"] == 3
    assert body["unread_count"] == 3
    assert body["limit"] == 2
    assert [n["title"] for n in body["items"]] == ["Alert 2", "Alert 1"]

    first_id = body["items"][0]["id"]
    r = c.post(f"/api/notifications/{first_id}/read")
    assert r.status_code == 200
    assert r.json["is_read"] is True
    assert r.json["read_at"]

    r = c.get("/api/notifications?unread_only=true")
    assert r.json["count"] == 2
    assert r.json["unread_count"] == 2

    with session_scope(app) as s:
        foreign = s.scalars(select(Notification).where(Notification.user_id == other_id)).one()
        foreign_id = foreign.id
    assert c.post(f"/api/notifications/{foreign_id}/read").status_code == 404

    r = c.post("/api/notifications/read-all")
    assert r.json == {"ok": True, "updated": 2}
    assert c.get("/api/notifications").json["unread_count"] == 0

    with session_scope(app) as s:
        assert s.get(Notification, foreign_id).is_read is False


def test_critical_notifications_are_emailed(app, make_user):
    uid = make_user("owner@academy.example.org", "INSTITUTION_ADMIN")
    _seed(app, uid, count=1, priority="CRITICAL")
    _seed(app, uid, count=1, priority="URGENT")

    with session_scope(app) as s:
        rows = s.scalars(select(Notification).order_by(Notification.id)).all()
        assert [n.priority for n in rows] == ["CRITICAL", "NORMAL"]
        mail = s.scalars(select(EmailQueue)).one()
        assert mail.to_email == "owner@academy.example.org"
        assert mail.notification_id == rows[0].id
        assert mail.status == "SENT"
        assert "Message 0" in mail.body_text


def test_email_failure_is_recorded_not_raised(app, make_user):
    uid = make_user("owner@academy.example.org", "INSTITUTION_ADMIN")
    app.config["EMAIL_FROM"] = ""
    _seed(app, uid, count=1, send_email=True)

    with session_scope(app) as s:
        assert s.scalars(select(Notification)).one()
        mail = s.scalars(select(EmailQueue)).one()
        assert mail.status == "FAILED"
        assert "EMAIL_FROM" in mail.last_error


def test_inactive_users_get_no_email(app, make_user):
    uid = make_user("gone@academy.example.org", "INSTITUTION_STAFF", is_active=False)
    _seed(app, uid, count=1, send_email=True)
    with session_scope(app) as s:
        assert s.scalars(select(EmailQueue)).all() == []


def test_notify_users_dedupes_recipients(app, make_user):
    a = make_user("a@qcto.example.org", "QCTO_REVIEWER", provinces=["Gauteng"])
    b = make_user("b@qcto.example.org", "QCTO_SUPER_ADMIN")
    make_user("c@qcto.example.org", "QCTO_REVIEWER", provinces=["Limpopo"])

    with app.app_context(), session_scope(app) as s:
        recipients = notifications.province_qcto_user_ids(s, "Gauteng")
        assert sorted(recipients) == sorted([a, b])
        created = notifications.notify_users(
            s, [a, b, a], notifications.system_alert("Maintenance", "Tonight at 22:00", priority="LOW")
        )
    assert created == 2


def test_notifications_require_login(client):
    assert client.get("/api/notifications").status_code == 401
