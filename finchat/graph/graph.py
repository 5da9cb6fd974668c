import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Union

from langgraph.graph import END, START, StateGraph

from finchat.errors import AppError, ExternalServiceError, ValidationError, wrap_error
from finchat.graph.state import TurnMode, TurnState
from finchat.llm.normalizer import NormalizedReply, normalize_reply
from finchat.models import ChatType
from finchat.providers.base import ChatProvider
from finchat.stores.conversations import ConversationStore
from finchat.stores.messages import MessageStore

logger = logging.getLogger(__name__)

# upstream user label for anonymous turns
PUBLIC_USER = "public-user"


@dataclass(frozen=True)
class TurnResult:
    mode: TurnMode
    reply: NormalizedReply
    session_id: Optional[str]
    conversation_id: Optional[str] = None   # local id, persisted mode only

    def to_dict(self) -> Dict[str, Any]:
        out = self.reply.to_dict()
        out["conversation_id"] = self.session_id
        out["conversation_db_id"] = self.conversation_id
        return out


class SessionOrchestrator:
    """
    One chat turn:
      resolve conversation -> call chat service -> normalize -> persist pair
    Anonymous turns skip resolve/persist; the upstream call and the
    normalization are shared by both modes.
    """

    def __init__(self, chat: ChatProvider, conversations: ConversationStore, messages: MessageStore,
                 app_id_for: Callable[[ChatType], Optional[str]]):
        self.chat = chat
        self.conversations = conversations
        self.messages = messages
        self.app_id_for = app_id_for
        self.graph = self.build_graph()

    # ---------------------------
    # Nodes
    # ---------------------------
    def node_resolve(self, state: TurnState) -> Dict[str, Any]:
        conv = self.conversations.find_or_create(state["user_id"], state["chat_type"])
        awaiting = not conv.is_linked
        return {
            "conversation_id": conv.id,
            "awaiting_link": awaiting,
            "upstream_session_id": None if awaiting else conv.external_session_id,
        }

    def node_call(self, state: TurnState) -> Dict[str, Any]:
        chat_type = state["chat_type"]
        raw = self.chat.send(
            app_id=self.app_id_for(chat_type),
            query=state["query"],
            session_id=state.get("upstream_session_id"),
            user=state.get("user_id") or PUBLIC_USER,
        )
        return {"raw_response": raw}

    def node_normalize(self, state: TurnState) -> Dict[str, Any]:
        return {"reply": normalize_reply(state.get("raw_response"))}

    def node_persist(self, state: TurnState) -> Dict[str, Any]:
        reply = state["reply"]
        link = reply.session_id if state.get("awaiting_link") else None
        user_msg, assistant_msg = self.messages.add_pair(
            state["conversation_id"],
            state["query"],
            reply.answer,
            assistant_meta=reply.meta(),
            link_session_id=link,
        )
        return {"message_ids": [user_msg.id, assistant_msg.id]}

    @staticmethod
    def route_mode(state: TurnState) -> str:
        return "resolve" if state["mode"] == TurnMode.PERSISTED else "call"

    @staticmethod
    def route_after_normalize(state: TurnState) -> str:
        return "persist" if state["mode"] == TurnMode.PERSISTED else "done"

    # ---------------------------
    # Build graph
    # ---------------------------
    def build_graph(self):
        g = StateGraph(TurnState)

        g.add_node("resolve", self.node_resolve)
        g.add_node("call", self.node_call)
        g.add_node("normalize", self.node_normalize)
        g.add_node("persist", self.node_persist)

        g.add_conditional_edges(START, self.route_mode, {"resolve": "resolve", "call": "call"})
        g.add_edge("resolve", "call")
        g.add_edge("call", "normalize")
        g.add_conditional_edges("normalize", self.route_after_normalize, {"persist": "persist", "done": END})
        g.add_edge("persist", END)

        return g.compile()

    # ---------------------------
    # Entry points
    # ---------------------------
    def _validate(self, mode: TurnMode, chat_type: Union[str, ChatType], query: Any,
                  user_id: Optional[str]) -> TurnState:
        if not isinstance(query, str) or not query.strip():
            raise ValidationError("missing or invalid input: query")
        try:
            chat_type = ChatType.parse(chat_type)
        except ValueError:
            raise ValidationError(f"unknown chat type: {chat_type}")
        if mode == TurnMode.PERSISTED and not user_id:
            raise ValidationError("persisted turns need a user")
        if not self.app_id_for(chat_type):
            raise ExternalServiceError("dify", "no app configured", meta={"chat_type": chat_type.value})
        return {"mode": mode, "chat_type": chat_type, "query": query.strip(), "user_id": user_id}

    def run_turn(self, mode: TurnMode, chat_type: Union[str, ChatType], query: Any, *,
                 user_id: Optional[str] = None, session_id: Optional[str] = None) -> TurnResult:
        state = self._validate(mode, chat_type, query, user_id)
        if mode == TurnMode.EPHEMERAL:
            state["upstream_session_id"] = session_id or None

        try:
            out = self.graph.invoke(state)
        except AppError as e:
            raise wrap_error("chat turn", e, chat_type=state["chat_type"].value, mode=mode.value)

        reply: NormalizedReply = out["reply"]
        session = reply.session_id or out.get("upstream_session_id")
        logger.info("%s turn on %s done (valid=%s ambiguous=%s)",
                    mode.value, state["chat_type"].value, reply.valid, reply.ambiguous)
        return TurnResult(mode=mode, reply=reply, session_id=session, conversation_id=out.get("conversation_id"))

    def chat_persisted(self, user_id: str, chat_type: Union[str, ChatType], query: Any) -> TurnResult:
        return self.run_turn(TurnMode.PERSISTED, chat_type, query, user_id=user_id)

    def chat_anonymous(self, chat_type: Union[str, ChatType], query: Any,
                       session_id: Optional[str] = None) -> TurnResult:
        return self.run_turn(TurnMode.EPHEMERAL, chat_type, query, session_id=session_id)
