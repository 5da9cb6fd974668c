from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import requests

from finchat.errors import ExternalServiceError
from finchat.providers.base import ChatProvider

logger = logging.getLogger(__name__)


class DifyChatProvider(ChatProvider):
    """
    Blocking chat-messages client for the hosted conversational AI service.

    Auth is a static bearer key; the `x-api-app-id` header routes the call to
    the app configured for the conversation topic. Every failure (HTTP error,
    network, timeout, unreadable body) surfaces as ExternalServiceError.
    """

    SERVICE = "dify"

    def __init__(self, api_key: str, base_url: str = "https://api.dify.ai/v1", timeout: float = 30.0,
                 session: Optional[requests.Session] = None):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._http = session or requests.Session()

    def _post(self, path: str, app_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "x-api-app-id": app_id,
        }
        try:
            r = self._http.post(url, json=body, headers=headers, timeout=self.timeout)
        except requests.Timeout as e:
            raise ExternalServiceError(self.SERVICE, meta={"timeout": True}) from e
        except requests.RequestException as e:
            raise ExternalServiceError(self.SERVICE, meta={"network_error": True}) from e

        if r.status_code >= 400:
            logger.warning("chat service returned %s: %s", r.status_code, r.text[:200])
            raise ExternalServiceError(self.SERVICE, meta={"status": r.status_code})

        try:
            data = r.json()
        except ValueError as e:
            raise ExternalServiceError(self.SERVICE, meta={"status": r.status_code, "bad_body": True}) from e
        if not isinstance(data, dict):
            raise ExternalServiceError(self.SERVICE, meta={"status": r.status_code, "bad_body": True})
        return data

    def send(self, app_id: str, query: str, session_id: Optional[str], user: str) -> Dict[str, Any]:
        if not self.api_key:
            raise ExternalServiceError(self.SERVICE, "not configured", meta={"missing": "api_key"})
        return self._post("/chat-messages", app_id, {
            "query": query,
            "inputs": {},
            "response_mode": "blocking",
            "conversation_id": session_id,
            "user": user,
        })

    def close(self) -> None:
        self._http.close()
