import os
from dataclasses import dataclass, field
from typing import Dict, Optional

from dotenv import load_dotenv

from finchat.models import ChatType


def _database_url(raw: Optional[str]) -> str:
    url = raw or "sqlite:///finchat.sqlite3"
    # Heroku-style URLs are not accepted by SQLAlchemy 2.x
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql://", 1)
    return url


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///finchat.sqlite3"

    chat_api_key: str = ""
    chat_api_base: str = "https://api.dify.ai/v1"
    chat_app_id: str = ""
    chat_app_ids: Dict[ChatType, str] = field(default_factory=dict)
    chat_timeout: float = 30.0

    identity_api_key: str = ""
    identity_api_base: str = "https://api.clerk.com/v1"
    identity_timeout: float = 10.0

    webhook_secret: str = ""
    webhook_tolerance: int = 300

    auth_user_header: str = "X-Auth-User-Id"
    environment: str = "development"

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    def app_id_for(self, chat_type: ChatType) -> Optional[str]:
        """Routing id sent to the chat service for a topic; per-topic override first."""
        return self.chat_app_ids.get(chat_type) or self.chat_app_id or None

    @classmethod
    def from_env(cls, dotenv: bool = True) -> "Settings":
        if dotenv:
            load_dotenv()

        per_topic = {}
        for chat_type in ChatType:
            value = os.getenv(f"DIFY_APP_ID_{chat_type.value}")
            if value:
                per_topic[chat_type] = value

        return cls(
            database_url=_database_url(os.getenv("DATABASE_URL")),
            chat_api_key=os.getenv("DIFY_API_KEY", ""),
            chat_api_base=os.getenv("DIFY_API_BASE", "https://api.dify.ai/v1").rstrip("/"),
            chat_app_id=os.getenv("DIFY_APP_ID", ""),
            chat_app_ids=per_topic,
            chat_timeout=float(os.getenv("DIFY_TIMEOUT", "30")),
            identity_api_key=os.getenv("CLERK_SECRET_KEY", ""),
            identity_api_base=os.getenv("CLERK_API_BASE", "https://api.clerk.com/v1").rstrip("/"),
            identity_timeout=float(os.getenv("IDENTITY_TIMEOUT", "10")),
            webhook_secret=os.getenv("CLERK_WEBHOOK_SECRET", ""),
            webhook_tolerance=int(os.getenv("WEBHOOK_TOLERANCE_SECONDS", "300")),
            auth_user_header=os.getenv("AUTH_USER_HEADER", "X-Auth-User-Id"),
            environment=os.getenv("ENVIRONMENT", "development"),
        )
