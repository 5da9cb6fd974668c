import enum
from typing import Any, Optional, TypedDict

from finchat.llm.normalizer import NormalizedReply
from finchat.models import ChatType


class TurnMode(str, enum.Enum):
    PERSISTED = "persisted"    # authenticated, history stored locally
    EPHEMERAL = "ephemeral"    # anonymous, caller round-trips the session id


class TurnState(TypedDict, total=False):
    mode: TurnMode
    chat_type: ChatType
    query: str
    user_id: Optional[str]            # local user id (persisted mode)

    # persisted mode: resolved conversation
    conversation_id: Optional[str]
    awaiting_link: bool

    # session id sent upstream (None starts a new upstream conversation)
    upstream_session_id: Optional[str]

    # outputs
    raw_response: dict[str, Any]
    reply: NormalizedReply
    message_ids: list[int]
