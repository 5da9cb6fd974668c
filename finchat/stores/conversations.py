import logging
import time
from typing import List, Optional, Union

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from finchat.db import Database
from finchat.errors import NotFoundOrUnauthorized, PersistenceError, ValidationError, wrap_error
from finchat.models import ChatType, Conversation, ConversationStatus, LinkState, utcnow

logger = logging.getLogger(__name__)


def sentinel_session_id(user_id: str, chat_type: ChatType) -> str:
    """Local placeholder used until the chat service issues a real id."""
    return f"{user_id}-{chat_type.value}-{int(time.time() * 1000)}"


def _chat_type(value: Union[str, ChatType]) -> ChatType:
    try:
        return ChatType.parse(value)
    except ValueError:
        raise ValidationError(f"unknown chat type: {value}")


class ConversationStore:
    """
    One conversation per (user, chat type). Creation relies on the table's
    unique constraint: a creator that loses a race gets IntegrityError and
    re-reads the winner's row.
    """

    def __init__(self, database: Database):
        self._db = database

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------
    def get_by_type(self, user_id: str, chat_type: Union[str, ChatType]) -> Optional[Conversation]:
        """None when the user has no conversation for this topic yet."""
        chat_type = _chat_type(chat_type)
        try:
            with self._db.session() as s:
                return s.scalar(
                    select(Conversation).where(
                        Conversation.user_id == user_id,
                        Conversation.chat_type == chat_type,
                    )
                )
        except SQLAlchemyError as e:
            raise wrap_error("get conversation by type", e, user_id=user_id, chat_type=chat_type.value) from e

    def get_by_id(self, conversation_id: str) -> Optional[Conversation]:
        """Accepts either the local primary key or the external session id."""
        if not conversation_id:
            return None
        try:
            with self._db.session() as s:
                return s.scalar(
                    select(Conversation).where(
                        or_(
                            Conversation.id == conversation_id,
                            Conversation.external_session_id == conversation_id,
                        )
                    )
                )
        except SQLAlchemyError as e:
            raise wrap_error("get conversation", e, conversation_id=conversation_id) from e

    def get_owned(self, conversation_id: str, user_id: str) -> Conversation:
        """Like get_by_id, but someone else's conversation looks exactly like a missing one."""
        conv = self.get_by_id(conversation_id)
        if conv is None or conv.user_id != user_id:
            raise NotFoundOrUnauthorized("conversation")
        return conv

    def list_for_user(self, user_id: str) -> List[Conversation]:
        try:
            with self._db.session() as s:
                rows = s.scalars(
                    select(Conversation)
                    .where(Conversation.user_id == user_id)
                    .order_by(Conversation.updated_at.desc(), Conversation.id)
                )
                return list(rows)
        except SQLAlchemyError as e:
            raise wrap_error("list conversations", e, user_id=user_id) from e

    # ------------------------------------------------------------------
    # writes
    # ------------------------------------------------------------------
    def find_or_create(self, user_id: str, chat_type: Union[str, ChatType],
                       external_session_id: Optional[str] = None) -> Conversation:
        chat_type = _chat_type(chat_type)

        existing = self.get_by_type(user_id, chat_type)
        if existing is not None:
            return existing

        try:
            with self._db.transaction() as s:
                conv = Conversation(
                    user_id=user_id,
                    chat_type=chat_type,
                    external_session_id=external_session_id or sentinel_session_id(user_id, chat_type),
                    link_state=LinkState.LINKED if external_session_id else LinkState.AWAITING,
                    status=ConversationStatus.OPEN,
                )
                s.add(conv)
                s.flush()
            logger.info("created %s conversation %s for user %s", chat_type.value, conv.id, user_id)
            return conv
        except IntegrityError as e:
            logger.info("concurrent create for user %s / %s, reselecting", user_id, chat_type.value)
            existing = self.get_by_type(user_id, chat_type)
            if existing is not None:
                return existing
            if external_session_id:
                # the collision was on the session id, not on (user, topic)
                raise ValidationError("conversation_id cannot be used",
                                      meta={"user_id": user_id, "chat_type": chat_type.value}) from e
            raise PersistenceError(meta={"user_id": user_id, "chat_type": chat_type.value}) from e
        except SQLAlchemyError as e:
            raise wrap_error("create conversation", e, user_id=user_id, chat_type=chat_type.value) from e

    def touch(self, conversation_id: str) -> None:
        try:
            with self._db.transaction() as s:
                touch_in(s, conversation_id)
        except SQLAlchemyError as e:
            raise wrap_error("touch conversation", e, conversation_id=conversation_id) from e

    def set_status(self, conversation_id: str, status: Union[str, ConversationStatus]) -> Conversation:
        try:
            status = ConversationStatus(status)
        except ValueError:
            raise ValidationError(f"unknown conversation status: {status}")
        try:
            with self._db.transaction() as s:
                conv = s.get(Conversation, conversation_id)
                if conv is None:
                    raise NotFoundOrUnauthorized("conversation")
                conv.status = status
                conv.updated_at = utcnow()
                return conv
        except SQLAlchemyError as e:
            raise wrap_error("set conversation status", e, conversation_id=conversation_id) from e


# ----------------------------------------------------------------------
# helpers that run inside a caller's transaction
# ----------------------------------------------------------------------
def touch_in(s: Session, conversation_id: str) -> Conversation:
    conv = s.get(Conversation, conversation_id)
    if conv is None:
        raise NotFoundOrUnauthorized("conversation")
    conv.updated_at = utcnow()
    return conv


def link_in(s: Session, conversation_id: str, external_session_id: str) -> Conversation:
    """
    AWAITING -> LINKED. Idempotent for the same id; a LINKED conversation
    is never re-pointed at a different id.
    """
    conv = s.get(Conversation, conversation_id, with_for_update=True)
    if conv is None:
        raise NotFoundOrUnauthorized("conversation")

    if conv.link_state == LinkState.LINKED:
        if conv.external_session_id != external_session_id:
            logger.warning("conversation %s already linked to %s, ignoring %s",
                           conversation_id, conv.external_session_id, external_session_id)
        return conv

    conv.external_session_id = external_session_id
    conv.link_state = LinkState.LINKED
    conv.updated_at = utcnow()
    s.flush()
    logger.info("conversation %s linked to session %s", conversation_id, external_session_id)
    return conv
