from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class IdentityProfile:
    auth_id: str
    email: Optional[str] = None
    first_name: Optional[str] = None


class ChatProvider(ABC):
    @abstractmethod
    def send(self, app_id: str, query: str, session_id: Optional[str], user: str) -> Dict[str, Any]:
        """One blocking chat turn; returns the raw response body."""
        ...

    def close(self) -> None:
        pass


class IdentityProvider(ABC):
    @abstractmethod
    def get_profile(self, auth_id: str) -> IdentityProfile:
        ...

    def close(self) -> None:
        pass


def _text(value: Any) -> Optional[str]:
    return value if isinstance(value, str) and value else None


def profile_from_payload(data: Dict[str, Any]) -> IdentityProfile:
    """
    Pull id / primary e-mail / first name out of an identity-provider user
    object (same shape for the REST API and webhook event data). Fields of
    the wrong type are treated as absent; an unusable id comes back as "".
    """
    emails = data.get("email_addresses")
    email = None
    if isinstance(emails, list) and emails and isinstance(emails[0], dict):
        email = _text(emails[0].get("email_address"))
    return IdentityProfile(
        auth_id=_text(data.get("id")) or "",
        email=email,
        first_name=_text(data.get("first_name")),
    )
