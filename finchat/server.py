import logging
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv
from flask import Flask, current_app, g, jsonify, request

from finchat import init_db
from finchat.config import Settings
from finchat.db import Database
from finchat.errors import AppError, ValidationError
from finchat.graph.graph import SessionOrchestrator
from finchat.identity.provisioning import UserProvisioner
from finchat.identity.users import UserStore
from finchat.identity.webhook import IdentityWebhookHandler
from finchat.models import ChatType
from finchat.providers.base import ChatProvider, IdentityProvider
from finchat.providers.clerk_users import ClerkUsersProvider
from finchat.providers.dify_chat import DifyChatProvider
from finchat.stores.conversations import ConversationStore
from finchat.stores.messages import MessageStore

logger = logging.getLogger(__name__)

MAX_PAGE = 200


@dataclass
class Services:
    settings: Settings
    database: Database
    chat: ChatProvider
    identity: Optional[IdentityProvider]
    users: UserStore
    provisioner: UserProvisioner
    webhooks: IdentityWebhookHandler
    conversations: ConversationStore
    messages: MessageStore
    orchestrator: SessionOrchestrator

    def close(self) -> None:
        self.chat.close()
        if self.identity is not None:
            self.identity.close()
        self.database.dispose()


def build_services(settings: Settings, database: Optional[Database] = None,
                   chat: Optional[ChatProvider] = None,
                   identity: Optional[IdentityProvider] = None) -> Services:
    database = database or Database(settings.database_url)
    chat = chat or DifyChatProvider(settings.chat_api_key, settings.chat_api_base, settings.chat_timeout)
    if identity is None and settings.identity_api_key:
        identity = ClerkUsersProvider(settings.identity_api_key, settings.identity_api_base,
                                      settings.identity_timeout)

    users = UserStore(database)
    conversations = ConversationStore(database)
    messages = MessageStore(database)
    return Services(
        settings=settings,
        database=database,
        chat=chat,
        identity=identity,
        users=users,
        provisioner=UserProvisioner(users, identity, redact_emails=settings.is_production),
        webhooks=IdentityWebhookHandler(users, settings.webhook_secret, settings.webhook_tolerance,
                                        redact_emails=settings.is_production),
        conversations=conversations,
        messages=messages,
        orchestrator=SessionOrchestrator(chat, conversations, messages, settings.app_id_for),
    )


def services() -> Services:
    return current_app.extensions["finchat"]


def current_user():
    """Local user for the identity the auth gateway verified; provisioned on first sight."""
    if "user" not in g:
        auth_id = request.headers.get(services().settings.auth_user_header)
        if not auth_id:
            raise AppError("unauthorized", code="UNAUTHORIZED", status=401)
        g.user = services().provisioner.ensure_user(auth_id)
    return g.user


def _chat_type(value: str) -> ChatType:
    try:
        return ChatType.parse(value)
    except ValueError:
        raise ValidationError(f"unknown chat type: {value}")


def _int_arg(name: str, default: int) -> int:
    raw = request.args.get(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an integer")


def _json_body() -> dict:
    body = request.get_json(silent=True)
    return body if isinstance(body, dict) else {}


def create_app(settings: Optional[Settings] = None, **overrides) -> Flask:
    settings = settings or Settings.from_env()
    app = Flask(__name__)
    app.extensions["finchat"] = build_services(settings, **overrides)

    @app.errorhandler(AppError)
    def handle_app_error(e: AppError):
        log = logger.error if e.status >= 500 else logger.warning
        log("%s %s -> %s %s: %s", request.method, request.path, e.status, e.code, e.describe())
        return jsonify(e.to_dict()), e.status

    # -------------------------------------------------------------
    # Identity webhook
    # -------------------------------------------------------------
    @app.post("/webhooks/identity")
    def identity_webhook():
        result = services().webhooks.handle(request.headers, request.get_data(cache=False))
        return jsonify(result.body), result.status

    # -------------------------------------------------------------
    # Chat turns
    # -------------------------------------------------------------
    @app.post("/v1/conversations/<chat_type>")
    def chat_turn(chat_type: str):
        body = _json_body()
        user = current_user()
        result = services().orchestrator.chat_persisted(user.id, _chat_type(chat_type), body.get("query"))
        return jsonify(result.to_dict())

    @app.post("/v1/public/<chat_type>")
    def public_chat_turn(chat_type: str):
        body = _json_body()
        result = services().orchestrator.chat_anonymous(
            _chat_type(chat_type), body.get("query"), session_id=body.get("conversation_id")
        )
        return jsonify(result.to_dict())

    # -------------------------------------------------------------
    # Conversations / messages
    # -------------------------------------------------------------
    @app.get("/v1/conversations")
    def list_conversations():
        svc = services()
        out = []
        for conv in svc.conversations.list_for_user(current_user().id):
            item = conv.to_dict()
            latest = svc.messages.latest(conv.id)
            item["latest_message"] = latest.to_dict() if latest else None
            out.append(item)
        return jsonify(out)

    @app.post("/v1/conversations")
    def create_conversation():
        body = _json_body()
        session_id = body.get("conversation_id") or None
        if session_id is not None and not isinstance(session_id, str):
            raise ValidationError("conversation_id must be a string")
        conv = services().conversations.find_or_create(current_user().id, _chat_type(body.get("chat_type")), session_id)
        return jsonify(conv.to_dict())

    @app.get("/v1/conversations/topic/<chat_type>")
    def conversation_by_type(chat_type: str):
        svc = services()
        conv = svc.conversations.get_by_type(current_user().id, _chat_type(chat_type))
        limit = min(_int_arg("limit", MAX_PAGE), MAX_PAGE)
        if conv is None:
            return jsonify({
                "conversation": None,
                "messages": [],
                "pagination": {"limit": limit, "count": 0, "total": 0, "has_more": False},
            })
        # newest page, returned oldest-first
        msgs = list(reversed(svc.messages.list(conv.id, limit=limit, order="desc")))
        total = svc.messages.count(conv.id)
        return jsonify({
            "conversation": conv.to_dict(),
            "messages": [m.to_dict() for m in msgs],
            "pagination": {"limit": limit, "count": len(msgs), "total": total, "has_more": total > len(msgs)},
        })

    @app.get("/v1/conversations/<conversation_id>")
    def get_conversation(conversation_id: str):
        svc = services()
        conv = svc.conversations.get_owned(conversation_id, current_user().id)
        item = conv.to_dict()
        item["message_count"] = svc.messages.count(conv.id)
        return jsonify(item)

    @app.get("/v1/conversations/<conversation_id>/messages")
    def list_messages(conversation_id: str):
        svc = services()
        conv = svc.conversations.get_owned(conversation_id, current_user().id)
        limit = min(_int_arg("limit", 50), MAX_PAGE)
        offset = _int_arg("offset", 0)
        order = request.args.get("order", "asc")
        msgs = svc.messages.list(conv.id, limit=limit, offset=offset, order=order)
        return jsonify({
            "conversation": conv.to_dict(),
            "messages": [m.to_dict() for m in msgs],
            "pagination": {"limit": limit, "offset": offset, "count": len(msgs)},
        })

    @app.patch("/v1/conversations/<conversation_id>/messages")
    def append_messages(conversation_id: str):
        svc = services()
        conv = svc.conversations.get_owned(conversation_id, current_user().id)
        created = svc.messages.add_many(conv.id, _json_body().get("append"))
        return jsonify({"conversation_id": conv.id, "messages": [m.to_dict() for m in created]}), 201

    @app.post("/v1/conversations/<conversation_id>/messages/pair")
    def add_message_pair(conversation_id: str):
        svc = services()
        conv = svc.conversations.get_owned(conversation_id, current_user().id)
        body = _json_body()
        assistant = body.get("assistant")
        meta = body.get("assistant_meta")
        if not isinstance(assistant, str):
            raise ValidationError("assistant must be a string")
        if meta is not None and not isinstance(meta, dict):
            raise ValidationError("assistant_meta must be an object")
        user_msg, assistant_msg = svc.messages.add_pair(conv.id, body.get("user"), assistant, assistant_meta=meta)
        return jsonify({"conversation_id": conv.id, "messages": [user_msg.to_dict(), assistant_msg.to_dict()]}), 201

    @app.get("/v1/conversations/<conversation_id>/messages/count")
    def count_messages(conversation_id: str):
        svc = services()
        conv = svc.conversations.get_owned(conversation_id, current_user().id)
        return jsonify({"conversation_id": conv.id, "count": svc.messages.count(conv.id)})

    @app.delete("/v1/messages/<message_id>")
    def delete_message(message_id: str):
        services().messages.delete(message_id, current_user().id)
        return jsonify({"ok": True})

    return app


if __name__ == "__main__":
    load_dotenv()
    logging.basicConfig(level=logging.INFO)
    app = create_app()
    # Create tables (simple dev mode)
    init_db(app.extensions["finchat"].database)
    app.run(host="0.0.0.0", port=5000, debug=True)
