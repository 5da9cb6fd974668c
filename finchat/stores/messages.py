import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from finchat.db import Database
from finchat.errors import NotFoundOrUnauthorized, ValidationError, wrap_error
from finchat.models import Conversation, Message, MessageRole
from finchat.stores.conversations import link_in, touch_in

logger = logging.getLogger(__name__)

ORDERS = ("asc", "desc")


def _role(value: Any, index: Optional[int] = None) -> MessageRole:
    try:
        return MessageRole(str(value or "").lower())
    except ValueError:
        where = f"messages[{index}].role" if index is not None else "role"
        raise ValidationError(f"{where} must be one of: user, assistant, system")


def _content(value: Any, index: Optional[int] = None) -> str:
    if not isinstance(value, str) or not value.strip():
        where = f"messages[{index}].content" if index is not None else "content"
        raise ValidationError(f"{where} is required and must be a non-empty string")
    return value


class MessageStore:
    """
    Append-only message log per conversation. Every write runs in one
    transaction together with the conversation's updated_at bump; rows are
    ordered by their autoincrement id, so a batch reads back in the order
    it was given.
    """

    def __init__(self, database: Database):
        self._db = database

    # ------------------------------------------------------------------
    # writes
    # ------------------------------------------------------------------
    def _insert(self, s: Session, conversation_id: str, role: MessageRole, content: str,
                meta: Optional[Dict[str, Any]]) -> Message:
        msg = Message(conversation_id=conversation_id, role=role, content=content, meta=meta)
        s.add(msg)
        s.flush()
        return msg

    def _append(self, s: Session, conversation_id: str,
                items: Iterable[Tuple[MessageRole, str, Optional[Dict[str, Any]]]]) -> List[Message]:
        if s.get(Conversation, conversation_id) is None:
            raise NotFoundOrUnauthorized("conversation")
        created = [self._insert(s, conversation_id, role, content, meta) for role, content, meta in items]
        touch_in(s, conversation_id)
        return created

    def add(self, conversation_id: str, role: str, content: str,
            meta: Optional[Dict[str, Any]] = None) -> Message:
        items = [(_role(role), _content(content), meta)]
        try:
            with self._db.transaction() as s:
                return self._append(s, conversation_id, items)[0]
        except SQLAlchemyError as e:
            raise wrap_error("add message", e, conversation_id=conversation_id) from e

    def add_pair(self, conversation_id: str, user_text: str, assistant_text: str, *,
                 user_meta: Optional[Dict[str, Any]] = None,
                 assistant_meta: Optional[Dict[str, Any]] = None,
                 link_session_id: Optional[str] = None) -> Tuple[Message, Message]:
        """
        Append (user, assistant) atomically. With link_session_id the
        conversation's placeholder session id is replaced in the same
        transaction, so the pair is only durable if the link is.
        """
        items = [
            (MessageRole.USER, _content(user_text), user_meta),
            (MessageRole.ASSISTANT, assistant_text or "", assistant_meta),
        ]
        try:
            with self._db.transaction() as s:
                if link_session_id:
                    link_in(s, conversation_id, link_session_id)
                user_msg, assistant_msg = self._append(s, conversation_id, items)
                return user_msg, assistant_msg
        except SQLAlchemyError as e:
            raise wrap_error("add message pair", e, conversation_id=conversation_id) from e

    def add_many(self, conversation_id: str, messages: List[Dict[str, Any]]) -> List[Message]:
        if not isinstance(messages, list) or not messages:
            raise ValidationError("messages must be a non-empty list")

        items = []
        for index, m in enumerate(messages):
            if not isinstance(m, dict):
                raise ValidationError(f"messages[{index}] must be an object")
            meta = m.get("meta")
            if meta is not None and not isinstance(meta, dict):
                raise ValidationError(f"messages[{index}].meta must be an object")
            items.append((_role(m.get("role"), index), _content(m.get("content"), index), meta))

        try:
            with self._db.transaction() as s:
                return self._append(s, conversation_id, items)
        except SQLAlchemyError as e:
            raise wrap_error("add messages", e, conversation_id=conversation_id, count=len(items)) from e

    def delete(self, message_id, requesting_user_id: str) -> None:
        """
        Delete one message the requester owns. Missing and foreign messages
        raise the same NotFoundOrUnauthorized.
        """
        try:
            message_id = int(message_id)
        except (TypeError, ValueError):
            raise NotFoundOrUnauthorized("message")

        try:
            with self._db.transaction() as s:
                msg = s.scalar(
                    select(Message)
                    .join(Conversation, Message.conversation_id == Conversation.id)
                    .where(Message.id == message_id, Conversation.user_id == requesting_user_id)
                )
                if msg is None:
                    raise NotFoundOrUnauthorized("message")
                conversation_id = msg.conversation_id
                s.delete(msg)
                touch_in(s, conversation_id)
        except SQLAlchemyError as e:
            raise wrap_error("delete message", e, message_id=message_id) from e

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------
    def list(self, conversation_id: str, limit: int = 50, offset: int = 0, order: str = "asc") -> List[Message]:
        if order not in ORDERS:
            raise ValidationError("order must be 'asc' or 'desc'")
        if limit < 1 or offset < 0:
            raise ValidationError("limit must be positive and offset non-negative")

        key = Message.id.asc() if order == "asc" else Message.id.desc()
        try:
            with self._db.session() as s:
                rows = s.scalars(
                    select(Message)
                    .where(Message.conversation_id == conversation_id)
                    .order_by(key)
                    .limit(limit)
                    .offset(offset)
                )
                return list(rows)
        except SQLAlchemyError as e:
            raise wrap_error("list messages", e, conversation_id=conversation_id) from e

    def latest(self, conversation_id: str) -> Optional[Message]:
        messages = self.list(conversation_id, limit=1, order="desc")
        return messages[0] if messages else None

    def count(self, conversation_id: str) -> int:
        try:
            with self._db.session() as s:
                return s.scalar(
                    select(func.count()).select_from(Message).where(Message.conversation_id == conversation_id)
                ) or 0
        except SQLAlchemyError as e:
            raise wrap_error("count messages", e, conversation_id=conversation_id) from e
