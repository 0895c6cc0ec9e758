from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, Numeric, String, Table, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from agency_api.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


TEAM_ROLES = ("AGENCY_OWNER", "AGENCY_ADMIN", "SUBACCOUNT_USER", "SUBACCOUNT_GUEST")


ticket_tag = Table(
    "ticket_tag",
    Base.metadata,
    Column("ticket_id", Uuid(as_uuid=True), ForeignKey("ticket.id", ondelete="CASCADE"), primary_key=True),
    Column("tag_id", Uuid(as_uuid=True), ForeignKey("tag.id", ondelete="CASCADE"), primary_key=True),
)


class SubAccount(Base):
    __tablename__ = "sub_account"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    agency_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    company_email: Mapped[str] = mapped_column(Text, nullable=False)
    company_phone: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    pipelines: Mapped[list[Pipeline]] = relationship(
        "Pipeline",
        back_populates="sub_account",
        cascade="all, delete-orphan",
    )
    tags: Mapped[list[Tag]] = relationship("Tag", back_populates="sub_account", cascade="all, delete-orphan")
    contacts: Mapped[list[Contact]] = relationship(
        "Contact",
        back_populates="sub_account",
        cascade="all, delete-orphan",
    )


class TeamMember(Base):
    """Agency user as known to the identity provider; ids are the provider's subject ids."""

    __tablename__ = "team_member"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    agency_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    avatar_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    role: Mapped[str] = mapped_column(String(32), nullable=False, default="SUBACCOUNT_USER")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )


class Contact(Base):
    __tablename__ = "contact"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    sub_account_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("sub_account.id", ondelete="CASCADE"),
        nullable=False,
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)
    email: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    sub_account: Mapped[SubAccount] = relationship("SubAccount", back_populates="contacts")


class Tag(Base):
    __tablename__ = "tag"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    sub_account_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("sub_account.id", ondelete="CASCADE"),
        nullable=False,
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)
    color: Mapped[str] = mapped_column(String(32), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    sub_account: Mapped[SubAccount] = relationship("SubAccount", back_populates="tags")
    tickets: Mapped[list[Ticket]] = relationship("Ticket", secondary=ticket_tag, back_populates="tags")


class Pipeline(Base):
    __tablename__ = "pipeline"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    sub_account_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("sub_account.id", ondelete="CASCADE"),
        nullable=False,
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    sub_account: Mapped[SubAccount] = relationship("SubAccount", back_populates="pipelines")
    lanes: Mapped[list[Lane]] = relationship(
        "Lane",
        back_populates="pipeline",
        cascade="all, delete-orphan",
        order_by="Lane.order",
    )


class Lane(Base):
    __tablename__ = "lane"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    pipeline_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("pipeline.id", ondelete="CASCADE"),
        nullable=False,
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)
    # No uniqueness on (pipeline_id, order); duplicates and gaps are tolerated.
    order: Mapped[int] = mapped_column("order", Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    pipeline: Mapped[Pipeline] = relationship("Pipeline", back_populates="lanes")
    tickets: Mapped[list[Ticket]] = relationship(
        "Ticket",
        back_populates="lane",
        cascade="all, delete-orphan",
        order_by="Ticket.order",
    )


class Ticket(Base):
    __tablename__ = "ticket"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    lane_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("lane.id", ondelete="CASCADE"),
        nullable=False,
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    value: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    order: Mapped[int] = mapped_column("order", Integer, nullable=False, default=0)
    customer_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("contact.id", ondelete="SET NULL"),
        nullable=True,
    )
    assigned_user_id: Mapped[str | None] = mapped_column(
        String(128),
        ForeignKey("team_member.id", ondelete="SET NULL"),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    lane: Mapped[Lane] = relationship("Lane", back_populates="tickets")
    tags: Mapped[list[Tag]] = relationship("Tag", secondary=ticket_tag, back_populates="tickets")
    customer: Mapped[Contact | None] = relationship("Contact")
    assigned: Mapped[TeamMember | None] = relationship("TeamMember")


class Notification(Base):
    __tablename__ = "notification"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    notification: Mapped[str] = mapped_column(Text, nullable=False)
    agency_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    sub_account_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("sub_account.id", ondelete="CASCADE"),
        nullable=True,
    )
    user_id: Mapped[str] = mapped_column(
        String(128),
        ForeignKey("team_member.id", ondelete="CASCADE"),
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    user: Mapped[TeamMember] = relationship("TeamMember")


Index("ix_pipeline_sub_account_id", Pipeline.sub_account_id)
Index("ix_lane_pipeline_order", Lane.pipeline_id, Lane.order)
Index("ix_ticket_lane_order", Ticket.lane_id, Ticket.order)
Index("ix_tag_sub_account_id", Tag.sub_account_id)
Index("ix_contact_sub_account_name", Contact.sub_account_id, Contact.name)
Index("ix_notification_agency_created", Notification.agency_id, Notification.created_at)
Index("ix_team_member_agency_id", TeamMember.agency_id)
