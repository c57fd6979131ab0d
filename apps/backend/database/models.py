"""
SQLAlchemy ORM models for the spare request notification system.
"""

import enum
from sqlalchemy import (
    Column,
    Integer,
    String,
    Text,
    Boolean,
    Date,
    Time,
    DateTime,
    Enum,
    ForeignKey,
    UniqueConstraint,
    Index,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from backend.database.db import Base


def _enum_values(enum_cls):
    return [e.value for e in enum_cls]


class SpareRequestStatus(str, enum.Enum):
    """Spare request lifecycle status."""

    OPEN = "open"
    FILLED = "filled"
    CANCELLED = "cancelled"


class SpareRequestType(str, enum.Enum):
    """Who gets notified: the league availability pool or an invite list."""

    PUBLIC = "public"
    PRIVATE = "private"


class SparePosition(str, enum.Enum):
    """Position the spare is needed for."""

    UNSPECIFIED = "unspecified"
    LEAD = "lead"
    SECOND = "second"
    VICE = "vice"
    SKIP = "skip"


class NotificationStatus(str, enum.Enum):
    """
    Notification lifecycle status.

    PAUSED is never stored; a paused request keeps IN_PROGRESS with
    notification_paused set, and reports PAUSED as its effective status.
    """

    NONE = "none"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    PAUSED = "paused"
    STOPPED = "stopped"


class DeliveryChannel(str, enum.Enum):
    """Notification delivery channel."""

    EMAIL = "email"
    SMS = "sms"


class Member(Base):
    """League member (spare requester or candidate)."""

    __tablename__ = "members"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    email = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    email_subscribed = Column(Boolean, default=True, nullable=False)
    opted_in_sms = Column(Boolean, default=False, nullable=False)
    spare_only = Column(Boolean, default=False, nullable=False)  # Can spare, cannot request
    is_admin = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    availability = relationship("MemberAvailability", back_populates="member")

    __table_args__ = (Index("idx_members_email", "email"),)


class League(Base):
    """League a spare request belongs to."""

    __tablename__ = "leagues"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class MemberAvailability(Base):
    """Per-league sparing availability for a member."""

    __tablename__ = "member_availability"

    id = Column(Integer, primary_key=True, autoincrement=True)
    member_id = Column(Integer, ForeignKey("members.id", ondelete="CASCADE"), nullable=False)
    league_id = Column(Integer, ForeignKey("leagues.id", ondelete="CASCADE"), nullable=False)
    available = Column(Boolean, default=True, nullable=False)
    can_skip = Column(Boolean, default=False, nullable=False)

    # Relationships
    member = relationship("Member", back_populates="availability")
    league = relationship("League")

    __table_args__ = (
        UniqueConstraint("member_id", "league_id", name="uq_member_availability_member_league"),
        Index("idx_member_availability_league", "league_id"),
    )


class Setting(Base):
    """Application configuration."""

    __tablename__ = "settings"

    key = Column(String, primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class SpareRequest(Base):
    """A request for a spare, and the state of its notification run."""

    __tablename__ = "spare_requests"

    id = Column(Integer, primary_key=True, autoincrement=True)
    requester_id = Column(Integer, ForeignKey("members.id"), nullable=False)
    league_id = Column(Integer, ForeignKey("leagues.id"), nullable=False)
    game_date = Column(Date, nullable=False)
    game_time = Column(Time, nullable=False)  # Local league time
    position = Column(
        Enum(SparePosition, values_callable=_enum_values),
        default=SparePosition.UNSPECIFIED,
        nullable=False,
    )
    message = Column(Text, nullable=True)
    request_type = Column(
        Enum(SpareRequestType, values_callable=_enum_values), nullable=False
    )
    status = Column(
        Enum(SpareRequestStatus, values_callable=_enum_values),
        default=SpareRequestStatus.OPEN,
        nullable=False,
    )
    filled_by_member_id = Column(Integer, ForeignKey("members.id"), nullable=True)
    filled_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_by_member_id = Column(Integer, ForeignKey("members.id"), nullable=True)
    had_cancellation = Column(Boolean, default=False, nullable=False)
    # Incremented by every fill; keys the requester's fill and cancellation notices
    fill_count = Column(Integer, default=0, nullable=False)

    # Notification state
    notification_generation = Column(Integer, default=0, nullable=False)
    notification_status = Column(
        Enum(NotificationStatus, values_callable=_enum_values),
        default=NotificationStatus.NONE,
        nullable=False,
    )
    next_notification_at = Column(DateTime(timezone=True), nullable=True)
    notification_paused = Column(Boolean, default=False, nullable=False)
    notifications_sent_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    requester = relationship("Member", foreign_keys=[requester_id])
    filled_by = relationship("Member", foreign_keys=[filled_by_member_id])
    league = relationship("League")

    __table_args__ = (
        Index("idx_spare_requests_requester_id", "requester_id"),
        Index("idx_spare_requests_league_id", "league_id"),
        Index("idx_spare_requests_status", "status"),
        Index(
            "idx_spare_requests_dispatch",
            "status",
            "notification_status",
            "notification_paused",
            "next_notification_at",
        ),
    )

    @property
    def effective_notification_status(self) -> NotificationStatus:
        """Stored status, with PAUSED substituted while the pause flag is set."""
        if self.notification_status == NotificationStatus.IN_PROGRESS and self.notification_paused:
            return NotificationStatus.PAUSED
        return self.notification_status


class SpareRequestInvitation(Base):
    """Invitee of a private spare request."""

    __tablename__ = "spare_request_invitations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    spare_request_id = Column(
        Integer, ForeignKey("spare_requests.id", ondelete="CASCADE"), nullable=False
    )
    member_id = Column(Integer, ForeignKey("members.id"), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint(
            "spare_request_id", "member_id", name="uq_spare_request_invitations_request_member"
        ),
        Index("idx_spare_request_invitations_request_id", "spare_request_id"),
    )


class SpareResponse(Base):
    """A member's acceptance of a spare request (the fill record)."""

    __tablename__ = "spare_responses"

    id = Column(Integer, primary_key=True, autoincrement=True)
    spare_request_id = Column(
        Integer, ForeignKey("spare_requests.id", ondelete="CASCADE"), nullable=False
    )
    member_id = Column(Integer, ForeignKey("members.id"), nullable=False)
    comment = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint(
            "spare_request_id", "member_id", name="uq_spare_responses_request_member"
        ),
    )


class NotificationQueueEntry(Base):
    """
    One recipient slot in a staggered notification run.

    Only the request's current generation has entries; reissue deletes and
    rebuilds the whole set.
    """

    __tablename__ = "spare_request_notification_queue"

    id = Column(Integer, primary_key=True, autoincrement=True)
    spare_request_id = Column(
        Integer, ForeignKey("spare_requests.id", ondelete="CASCADE"), nullable=False
    )
    member_id = Column(Integer, ForeignKey("members.id"), nullable=False)
    notification_generation = Column(Integer, nullable=False)
    queue_order = Column(Integer, nullable=False)
    claimed_at = Column(DateTime(timezone=True), nullable=True)
    notified_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "spare_request_id", "member_id", name="uq_notification_queue_request_member"
        ),
        UniqueConstraint(
            "spare_request_id", "queue_order", name="uq_notification_queue_request_order"
        ),
        Index("idx_notification_queue_order", "spare_request_id", "queue_order"),
        Index("idx_notification_queue_claimed", "spare_request_id", "claimed_at"),
    )


class NotificationDelivery(Base):
    """
    Append-only delivery ledger.

    The unique key (request, member, generation, channel, kind) is what
    prevents duplicate sends. Rows are never deleted.
    """

    __tablename__ = "spare_request_notification_deliveries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    spare_request_id = Column(
        Integer, ForeignKey("spare_requests.id", ondelete="CASCADE"), nullable=False
    )
    member_id = Column(Integer, ForeignKey("members.id"), nullable=False)
    notification_generation = Column(Integer, nullable=False)
    channel = Column(Enum(DeliveryChannel, values_callable=_enum_values), nullable=False)
    kind = Column(String(64), nullable=False)  # Message template tag
    claimed_at = Column(DateTime(timezone=True), nullable=True)
    sent_at = Column(DateTime(timezone=True), nullable=True)
    failed_at = Column(DateTime(timezone=True), nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint(
            "spare_request_id",
            "member_id",
            "notification_generation",
            "channel",
            "kind",
            name="uq_notification_deliveries_key",
        ),
        Index("idx_notification_deliveries_request", "spare_request_id"),
        Index("idx_notification_deliveries_member", "member_id"),
        Index("idx_notification_deliveries_sent", "spare_request_id", "sent_at"),
    )
