from __future__ import annotations

from typing import Optional

import requests

from finchat.errors import ExternalServiceError
from finchat.providers.base import IdentityProfile, IdentityProvider, profile_from_payload


class ClerkUsersProvider(IdentityProvider):
    """Reads user profiles from the identity provider's backend API."""

    SERVICE = "clerk"

    def __init__(self, secret_key: str, base_url: str = "https://api.clerk.com/v1", timeout: float = 10.0,
                 session: Optional[requests.Session] = None):
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._http = session or requests.Session()

    def get_profile(self, auth_id: str) -> IdentityProfile:
        if not self.secret_key:
            raise ExternalServiceError(self.SERVICE, "not configured", meta={"missing": "secret_key"})

        url = f"{self.base_url}/users/{auth_id}"
        try:
            r = self._http.get(url, headers={"Authorization": f"Bearer {self.secret_key}"}, timeout=self.timeout)
        except requests.RequestException as e:
            raise ExternalServiceError(self.SERVICE, meta={"auth_id": auth_id}) from e

        if r.status_code >= 400:
            raise ExternalServiceError(self.SERVICE, meta={"auth_id": auth_id, "status": r.status_code})
        try:
            data = r.json()
        except ValueError as e:
            raise ExternalServiceError(self.SERVICE, meta={"auth_id": auth_id, "bad_body": True}) from e

        profile = profile_from_payload(data if isinstance(data, dict) else {})
        # trust the id we asked for, not the body
        return IdentityProfile(auth_id=auth_id, email=profile.email, first_name=profile.first_name)

    def close(self) -> None:
        self._http.close()
