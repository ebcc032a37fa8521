"""SQLAlchemy ORM models for the 4 broker tables."""

from datetime import UTC, datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utcnow() -> datetime:
    return datetime.now(UTC)


# SQLite only autoincrements an INTEGER PRIMARY KEY (rowid alias)
MessageId = BigInteger().with_variant(Integer, "sqlite")


class Base(DeclarativeBase):
    """Single declarative base for all tables."""

    pass


class Partner(Base):
    __tablename__ = "partners"
    __table_args__ = (
        CheckConstraint("status IN ('online', 'offline')", name="ck_partners_status"),
    )

    id: Mapped[str] = mapped_column(String(200), primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    secret_key: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    project_path: Mapped[str | None] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="online")
    status_message: Mapped[str | None] = mapped_column(Text)
    notifications_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    last_seen: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class Conversation(Base):
    __tablename__ = "conversations"
    __table_args__ = (
        CheckConstraint("type IN ('direct', 'group')", name="ck_conversations_type"),
    )

    id: Mapped[str] = mapped_column(String(500), primary_key=True)
    name: Mapped[str | None] = mapped_column(String(200))
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    created_by: Mapped[str] = mapped_column(String(200), ForeignKey("partners.id"), nullable=False)
    is_archived: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    # Relationships
    participants: Mapped[list["Participant"]] = relationship(back_populates="conversation")


class Participant(Base):
    __tablename__ = "participants"
    __table_args__ = (Index("idx_participants_partner", "partner_id"),)

    conversation_id: Mapped[str] = mapped_column(
        String(500), ForeignKey("conversations.id"), primary_key=True
    )
    partner_id: Mapped[str] = mapped_column(String(200), ForeignKey("partners.id"), primary_key=True)
    joined_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    last_read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    conversation: Mapped["Conversation"] = relationship(back_populates="participants")


class Message(Base):
    __tablename__ = "messages"
    __table_args__ = (
        Index("idx_messages_conversation_created", "conversation_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id: Mapped[int] = mapped_column(MessageId, primary_key=True, autoincrement=True)
    conversation_id: Mapped[str] = mapped_column(String(500), ForeignKey("conversations.id"), nullable=False)
    from_id: Mapped[str] = mapped_column(String(200), ForeignKey("partners.id"), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
