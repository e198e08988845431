from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from flask import current_app, has_app_context
from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError

from app.yiba.constants import ENTITY_QCTO_REQUEST, ENTITY_READINESS, ENTITY_SUBMISSION, QCTO_ROLES
from app.yiba.errors import NotFoundError
from app.yiba.mailer import send_email
from app.yiba.models import User
from app.yiba.modules.notifications.models import EmailQueue, Notification

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from app.yiba.modules.email_templates.service import RenderedEmail

logger = logging.getLogger(__name__)

NOTIFICATION_TYPES = frozenset(
    {
        "SUBMISSION_REVIEWED",
        "SUBMISSION_APPROVED",
        "SUBMISSION_REJECTED",
        "REQUEST_APPROVED",
        "REQUEST_REJECTED",
        "READINESS_REVIEWED",
        "READINESS_RECOMMENDED",
        "READINESS_REJECTED",
        "READINESS_SUBMITTED",
        "DOCUMENT_FLAGGED",
        "SYSTEM_ALERT",
        "INVITE_ACCEPTED",
        "REVIEW_ASSIGNED",
        "BULK_INVITE_COMPLETED",
        "INSTITUTION_CREATED",
        "ISSUE_REPORTED",
        "ISSUE_UPDATED",
    }
)
PRIORITIES = ("LOW", "NORMAL", "HIGH", "CRITICAL")


@dataclass(frozen=True)
class NotificationContent:
    notification_type: str
    title: str
    message: str
    entity_type: str | None = None
    entity_id: str | None = None
    priority: str = "NORMAL"


def _base_url() -> str:
    if has_app_context():
        return (current_app.config.get("BASE_URL") or "").rstrip("/")
    return ""


def queue_and_send_email(
    s: "Session",
    *,
    to_email: str,
    rendered: "RenderedEmail",
    notification_id: int | None = None,
) -> EmailQueue:
    """
    Record the message in the email queue, then try to deliver it immediately.
    Delivery failures are kept on the row (status FAILED, last_error) and not raised.
    """
    row = EmailQueue(
        to_email=to_email,
        subject=rendered.subject,
        body_text=rendered.text,
        body_html=rendered.html,
        notification_id=notification_id,
    )
    s.add(row)
    s.flush()

    ok, error = send_email(to_email, rendered.subject, rendered.text, html=rendered.html)
    row.attempts += 1
    if ok:
        row.status = "SENT"
        row.sent_at = datetime.utcnow()
    else:
        row.status = "FAILED"
        row.last_error = error
        logger.warning("Email to %s failed: %s", to_email, error)
    return row


def create_notification(
    s: "Session",
    *,
    user_id: int,
    notification_type: str,
    title: str,
    message: str,
    entity_type: str | None = None,
    entity_id: object = None,
    priority: str = "NORMAL",
    send_email: bool = False,
) -> Notification | None:
    """
    Add a notification for one user. Never raises: a notification failure must not
    undo the business change that triggered it, so errors are logged and None returned.

    The notification is written inside a savepoint so a failed insert leaves the
    caller's transaction usable.
    """
    from app.yiba.modules.email_templates.service import render_for_type

    try:
        with s.begin_nested():
            row = Notification(
                user_id=user_id,
                notification_type=notification_type,
                title=title,
                message=message,
                entity_type=entity_type,
                entity_id=None if entity_id is None else str(entity_id),
                priority=priority if priority in PRIORITIES else "NORMAL",
            )
            s.add(row)
            s.flush()

            if send_email or row.priority == "CRITICAL":
                user = s.get(User, user_id)
                if user is not None and user.is_active:
                    rendered = render_for_type(
                        s,
                        "SYSTEM_NOTIFICATION",
                        {
                            "recipient_name": user.full_name,
                            "notification_subject": title,
                            "notification_message": message,
                            "action_url": f"{_base_url()}/notifications",
                        },
                    )
                    queue_and_send_email(s, to_email=user.email, rendered=rendered, notification_id=row.id)
        return row
    except Exception:
        logger.exception("Failed to create notification (type=%s user_id=%s)", notification_type, user_id)
        return None


def notify(s: "Session", user_id: int, content: NotificationContent, *, send_email: bool = False) -> Notification | None:
    return create_notification(
        s,
        user_id=user_id,
        notification_type=content.notification_type,
        title=content.title,
        message=content.message,
        entity_type=content.entity_type,
        entity_id=content.entity_id,
        priority=content.priority,
        send_email=send_email,
    )


def notify_users(
    s: "Session", user_ids: Iterable[int], content: NotificationContent, *, send_email: bool = False
) -> int:
    """Fan out one notification to many users. Returns how many were created."""
    created = 0
    for uid in dict.fromkeys(user_ids):
        if notify(s, uid, content, send_email=send_email) is not None:
            created += 1
    return created


def institution_user_ids(s: "Session", institution_id: int, roles: Iterable[str]) -> list[int]:
    stmt = select(User.id).where(
        User.institution_id == institution_id,
        User.role.in_(list(roles)),
        User.is_active.is_(True),
    )
    return list(s.scalars(stmt))


def province_qcto_user_ids(s: "Session", province: str | None) -> list[int]:
    """Active QCTO users who can see `province` (super admins see every province)."""
    try:
        users = s.scalars(select(User).where(User.role.in_(sorted(QCTO_ROLES)), User.is_active.is_(True))).all()
    except SQLAlchemyError:
        logger.exception("Failed to load QCTO users for province %s", province)
        return []
    return [u.id for u in users if u.role == "QCTO_SUPER_ADMIN" or (province and province in u.provinces)]


def list_notifications(
    s: "Session", user: User, *, unread_only: bool = False, limit: int = 50, offset: int = 0
) -> tuple[list[Notification], int, int]:
    base = select(Notification).where(Notification.user_id == user.id)
    if unread_only:
        base = base.where(Notification.is_read.is_(False))
    total = s.scalar(select(func.count()).select_from(base.subquery())) or 0
    unread = (
        s.scalar(
            select(func.count(Notification.id)).where(
                Notification.user_id == user.id, Notification.is_read.is_(False)
            )
        )
        or 0
    )
    rows = s.scalars(
        base.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit).offset(offset)
    ).all()
    return list(rows), total, unread


def mark_read(s: "Session", user: User, notification_id: int) -> Notification:
    row = s.get(Notification, notification_id)
    if row is None or row.user_id != user.id:
        raise NotFoundError("Notification not found")
    if not row.is_read:
        row.is_read = True
        row.read_at = datetime.utcnow()
    return row


def mark_all_read(s: "Session", user: User) -> int:
    result = s.execute(
        update(Notification)
        .where(Notification.user_id == user.id, Notification.is_read.is_(False))
        .values(is_read=True, read_at=datetime.utcnow())
    )
    return result.rowcount or 0


def notification_to_dict(n: Notification) -> dict[str, object]:
    return {
        "id": n.id,
        "notification_type": n.notification_type,
        "title": n.title,
        "message": n.message,
        "entity_type": n.entity_type,
        "entity_id": n.entity_id,
        "priority": n.priority,
        "is_read": n.is_read,
        "read_at": n.read_at.isoformat() if n.read_at else None,
        "created_at": n.created_at.isoformat() if n.created_at else None,
    }


# ---- builders ----


def submission_reviewed(submission_id: int, status: str) -> NotificationContent:
    if status == "APPROVED":
        return NotificationContent(
            "SUBMISSION_APPROVED",
            "Submission Approved",
            "Your submission has been approved by QCTO.",
            ENTITY_SUBMISSION,
            str(submission_id),
            "HIGH",
        )
    if status == "REJECTED":
        return NotificationContent(
            "SUBMISSION_REJECTED",
            "Submission Rejected",
            "Your submission has been rejected by QCTO. Please review the feedback.",
            ENTITY_SUBMISSION,
            str(submission_id),
            "HIGH",
        )
    if status == "RETURNED_FOR_CORRECTION":
        return NotificationContent(
            "SUBMISSION_REVIEWED",
            "Submission Returned",
            "Your submission has been returned for correction. Please review the feedback.",
            ENTITY_SUBMISSION,
            str(submission_id),
            "HIGH",
        )
    return NotificationContent(
        "SUBMISSION_REVIEWED",
        "Submission Under Review",
        "Your submission is now under review by QCTO.",
        ENTITY_SUBMISSION,
        str(submission_id),
    )


def request_responded(request_id: int, status: str, institution_name: str) -> NotificationContent:
    if status == "APPROVED":
        return NotificationContent(
            "REQUEST_APPROVED",
            "Request Approved",
            f"{institution_name} has approved your request.",
            ENTITY_QCTO_REQUEST,
            str(request_id),
        )
    return NotificationContent(
        "REQUEST_REJECTED",
        "Request Rejected",
        f"{institution_name} has rejected your request.",
        ENTITY_QCTO_REQUEST,
        str(request_id),
    )


def readiness_reviewed(readiness_id: int, status: str, qualification_title: str) -> NotificationContent:
    if status == "RECOMMENDED":
        return NotificationContent(
            "READINESS_RECOMMENDED",
            "Readiness Recommended",
            f"Your readiness submission for {qualification_title} has been recommended by QCTO.",
            ENTITY_READINESS,
            str(readiness_id),
            "HIGH",
        )
    if status == "REJECTED":
        return NotificationContent(
            "READINESS_REJECTED",
            "Readiness Rejected",
            f"Your readiness submission for {qualification_title} has been rejected by QCTO.",
            ENTITY_READINESS,
            str(readiness_id),
            "HIGH",
        )
    if status == "RETURNED_FOR_CORRECTION":
        return NotificationContent(
            "READINESS_REVIEWED",
            "Readiness Returned",
            f"Your readiness submission for {qualification_title} has been returned for correction.",
            ENTITY_READINESS,
            str(readiness_id),
            "HIGH",
        )
    return NotificationContent(
        "READINESS_REVIEWED",
        "Readiness Under Review",
        f"Your readiness submission for {qualification_title} is now under review.",
        ENTITY_READINESS,
        str(readiness_id),
    )


def readiness_submitted(readiness_id: int, institution_name: str, qualification_title: str) -> NotificationContent:
    return NotificationContent(
        "READINESS_SUBMITTED",
        "Readiness Submitted",
        f"{institution_name} submitted a readiness record for {qualification_title}.",
        ENTITY_READINESS,
        str(readiness_id),
    )


def document_flagged(document_id: int, file_name: str, reason: str) -> NotificationContent:
    return NotificationContent(
        "DOCUMENT_FLAGGED",
        "Document Flagged",
        f"QCTO flagged the document {file_name}: {reason}",
        "DOCUMENT",
        str(document_id),
        "HIGH",
    )


def review_assigned(review_type: str, review_id: int) -> NotificationContent:
    label = review_type.lower().replace("_", " ")
    return NotificationContent(
        "REVIEW_ASSIGNED",
        "Review Assigned",
        f"You have been assigned to review {label} #{review_id}.",
        review_type,
        str(review_id),
    )


def invite_accepted(invite_id: int, email: str) -> NotificationContent:
    return NotificationContent(
        "INVITE_ACCEPTED",
        "Invite Accepted",
        f"{email} accepted your invitation.",
        "INVITE",
        str(invite_id),
        "LOW",
    )


def bulk_invite_completed(created: int, skipped: int, errors: int) -> NotificationContent:
    return NotificationContent(
        "BULK_INVITE_COMPLETED",
        "Bulk Invite Completed",
        f"Bulk invite finished: {created} created, {skipped} skipped, {errors} errors.",
    )


def institution_created(institution_id: int, legal_name: str) -> NotificationContent:
    return NotificationContent(
        "INSTITUTION_CREATED",
        "Institution Created",
        f"A new institution was created: {legal_name}.",
        "INSTITUTION",
        str(institution_id),
    )


def issue_reported(issue_id: int, title: str, category: str) -> NotificationContent:
    return NotificationContent(
        "ISSUE_REPORTED",
        "New Issue Reported",
        f"A new {category.replace('_', ' ').lower()} was reported: {title}.",
        "ISSUE",
        str(issue_id),
    )


def issue_updated(issue_id: int, title: str, status: str) -> NotificationContent:
    return NotificationContent(
        "ISSUE_UPDATED",
        "Issue Updated",
        f"Your issue \"{title}\" is now {status.replace('_', ' ').lower()}.",
        "ISSUE",
        str(issue_id),
        "LOW",
    )


def system_alert(title: str, message: str, priority: str = "HIGH") -> NotificationContent:
    return NotificationContent("SYSTEM_ALERT", title, message, priority=priority)
