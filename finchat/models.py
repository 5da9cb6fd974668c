import enum
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import JSON, DateTime, Enum, ForeignKey, String, Text, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

# JSONB on Postgres, plain JSON elsewhere (sqlite in dev/tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def _uuid() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ChatType(str, enum.Enum):
    INCOME = "INCOME"
    DEBT = "DEBT"
    EXPENSES = "EXPENSES"
    SAVINGS = "SAVINGS"
    OPEN_CHAT = "OPEN_CHAT"

    @classmethod
    def parse(cls, value) -> "ChatType":
        """
        Accepts enum members or case-insensitive names ('income', 'Debt', ...).
        'chat' is the public alias of OPEN_CHAT.
        Raises ValueError for anything else.
        """
        if isinstance(value, cls):
            return value
        key = str(value or "").strip().upper()
        if key == "CHAT":
            return cls.OPEN_CHAT
        return cls(key)


class MessageRole(str, enum.Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class ConversationStatus(str, enum.Enum):
    OPEN = "open"
    ARCHIVED = "archived"


class LinkState(str, enum.Enum):
    """
    Where a conversation is in the sentinel -> real session id handshake.
      AWAITING: holds a local placeholder id, no successful upstream exchange yet
      LINKED:   holds the id issued by the chat service (terminal)
    """
    AWAITING = "awaiting_first_exchange"
    LINKED = "linked"


def _enum(enum_cls, name: str):
    return Enum(enum_cls, name=name, values_callable=lambda e: [m.value for m in e], native_enum=False)


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    auth_id: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    email: Mapped[Optional[str]] = mapped_column(String(320), nullable=True)
    first_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    conversations = relationship("Conversation", back_populates="user", cascade="all, delete-orphan")

    def __repr__(self) -> str:
        return f"<User(id={self.id}, auth_id={self.auth_id})>"


class Conversation(Base):
    __tablename__ = "conversations"
    # one conversation per (user, topic); racing creators collide here
    __table_args__ = (UniqueConstraint("user_id", "chat_type", name="uq_conversations_user_chat_type"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    chat_type: Mapped[ChatType] = mapped_column(_enum(ChatType, "chat_type"))
    external_session_id: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    link_state: Mapped[LinkState] = mapped_column(_enum(LinkState, "link_state"), default=LinkState.AWAITING)
    status: Mapped[ConversationStatus] = mapped_column(
        _enum(ConversationStatus, "conversation_status"), default=ConversationStatus.OPEN
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)

    user = relationship("User", back_populates="conversations")
    messages = relationship(
        "Message",
        back_populates="conversation",
        cascade="all, delete-orphan",
        order_by="Message.id",
    )

    @property
    def is_linked(self) -> bool:
        return self.link_state == LinkState.LINKED

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "chat_type": self.chat_type.value,
            "conversation_id": self.external_session_id,
            "linked": self.is_linked,
            "status": self.status.value,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self) -> str:
        return f"<Conversation(id={self.id}, user_id={self.user_id}, chat_type={self.chat_type.value})>"


class Message(Base):
    __tablename__ = "messages"
    # autoincrement id doubles as the ordering key: rows written in one
    # transaction often share created_at
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    conversation_id: Mapped[str] = mapped_column(ForeignKey("conversations.id", ondelete="CASCADE"), index=True)
    role: Mapped[MessageRole] = mapped_column(_enum(MessageRole, "message_role"))
    content: Mapped[str] = mapped_column(Text)
    meta: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())

    conversation = relationship("Conversation", back_populates="messages")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "role": self.role.value,
            "content": self.content,
            "meta": self.meta,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
