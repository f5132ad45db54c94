"""SQLAlchemy model for persisted notifications."""

from uuid import uuid4

from sqlalchemy import Column, DateTime, Index, JSON, String, Text

from notifyhub.infrastructure.database import Base
from notifyhub.utils import now_in_app_naive_datetime


def _generate_id() -> str:
    return str(uuid4())


class NotificationModel(Base):
    """Database representation for tenant notifications."""

    __tablename__ = "notifications"
    __table_args__ = (
        Index("ix_notifications_org_created", "organization_id", "created_at"),
        Index("ix_notifications_user_status", "user_id", "status"),
    )

    id = Column(String(36), primary_key=True, default=_generate_id)
    organization_id = Column(String(64), nullable=False, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    type = Column(String(32), nullable=False)
    priority = Column(String(16), nullable=False)
    status = Column(String(16), nullable=False, default="UNREAD")
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    # ``metadata`` is reserved on declarative classes.
    extra = Column("metadata", JSON, nullable=False, default=dict)
    dispatch_key = Column(String(64), nullable=True, unique=True)
    created_at = Column(DateTime(), nullable=False, default=now_in_app_naive_datetime)
    updated_at = Column(DateTime(), nullable=False, default=now_in_app_naive_datetime)


__all__ = ["NotificationModel"]
