# finchat/identity/webhook.py
"""
Identity-provider webhook ingestion.

Deliveries are signed envelopes: three headers (id, timestamp, signature)
over the raw body. The signature is checked before the body is parsed, and
nothing touches the database until both checks pass. Delivery is
at-least-once and may be reordered, so every handler is idempotent and a
delete for an unknown user is a success.
"""
import base64
import binascii
import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from finchat.errors import AppError, ConfigurationError, SignatureError, ValidationError
from finchat.identity.users import UserStore
from finchat.providers.base import profile_from_payload
from finchat.utils.redact import mask_email

logger = logging.getLogger(__name__)

ID_HEADER = "svix-id"
TIMESTAMP_HEADER = "svix-timestamp"
SIGNATURE_HEADER = "svix-signature"

USER_CREATED = "user.created"
USER_UPDATED = "user.updated"
USER_DELETED = "user.deleted"
SUPPORTED_EVENTS = (USER_CREATED, USER_UPDATED, USER_DELETED)


@dataclass
class WebhookResult:
    status: int
    body: Dict[str, Any] = field(default_factory=dict)


def _secret_bytes(secret: str) -> bytes:
    raw = secret[len("whsec_"):] if secret.startswith("whsec_") else secret
    try:
        return base64.b64decode(raw, validate=True)
    except (binascii.Error, ValueError):
        raise ConfigurationError("webhook secret is not valid base64")


def verify_signature(secret: str, msg_id: str, timestamp: str, body: bytes, signature_header: str,
                     tolerance: int = 300, now: Optional[float] = None) -> None:
    """
    HMAC-SHA256 over "{id}.{timestamp}.{body}" with the decoded secret.
    The header may carry several space-separated "v1,<base64>" entries;
    one match is enough. Raises SignatureError otherwise.
    """
    try:
        ts = int(timestamp)
    except (TypeError, ValueError):
        raise SignatureError("invalid webhook timestamp")

    now = time.time() if now is None else now
    if abs(now - ts) > tolerance:
        raise SignatureError("webhook timestamp outside tolerance")

    signed = f"{msg_id}.{timestamp}.".encode("utf-8") + body
    expected = base64.b64encode(hmac.new(_secret_bytes(secret), signed, hashlib.sha256).digest()).decode("ascii")

    for entry in (signature_header or "").split():
        version, _, sig = entry.partition(",")
        if version == "v1" and hmac.compare_digest(sig, expected):
            return
    raise SignatureError("webhook verification failed")


def sign_payload(secret: str, msg_id: str, timestamp: str, body: bytes) -> str:
    """Signature header value for a body; used by tests and local tooling."""
    signed = f"{msg_id}.{timestamp}.".encode("utf-8") + body
    digest = hmac.new(_secret_bytes(secret), signed, hashlib.sha256).digest()
    return "v1," + base64.b64encode(digest).decode("ascii")


class IdentityWebhookHandler:
    def __init__(self, users: UserStore, secret: str, tolerance: int = 300, redact_emails: bool = True):
        self.users = users
        self.secret = secret
        self.tolerance = tolerance
        self.redact_emails = redact_emails

    def _verify(self, headers: Mapping[str, str], body: bytes) -> Dict[str, Any]:
        if not body:
            raise ValidationError("request body is required")

        values = {name: headers.get(name) for name in (ID_HEADER, TIMESTAMP_HEADER, SIGNATURE_HEADER)}
        missing = [name for name, value in values.items() if not value]
        if missing:
            raise ValidationError("missing required webhook headers", meta={"missing_headers": missing})

        if not self.secret:
            raise ConfigurationError("webhook secret missing")

        verify_signature(self.secret, values[ID_HEADER], values[TIMESTAMP_HEADER], body,
                         values[SIGNATURE_HEADER], tolerance=self.tolerance)

        try:
            event = json.loads(body)
        except ValueError:
            raise ValidationError("invalid event payload")
        if not isinstance(event, dict) or not event.get("type") or not isinstance(event.get("data"), dict):
            raise ValidationError("event missing required fields")
        return event

    def _apply(self, event_type: str, data: Dict[str, Any]) -> None:
        if event_type == USER_DELETED:
            auth_id = data.get("id")
            if not isinstance(auth_id, str) or not auth_id:
                raise ValidationError("missing user id")
            if not self.users.delete_by_auth_id(auth_id):
                logger.info("user %s already absent, delete acknowledged", auth_id)
            return

        profile = profile_from_payload(data)
        if not profile.auth_id:
            raise ValidationError("missing user id")
        if profile.email is None:
            logger.warning("no email in %s payload for %s", event_type, profile.auth_id)

        user = self.users.upsert(profile)
        logger.info("%s applied: user=%s auth_id=%s email=%s", event_type, user.id, user.auth_id,
                    mask_email(user.email, self.redact_emails))

    def handle(self, headers: Mapping[str, str], body: bytes) -> WebhookResult:
        started = time.monotonic()
        delivery_id = headers.get(ID_HEADER)

        try:
            event = self._verify(headers, body)
        except AppError as e:
            logger.warning("webhook rejected (delivery %s): %s", delivery_id, e.describe())
            body = e.to_dict()
            if "missing_headers" in e.meta:
                body["missing_headers"] = e.meta["missing_headers"]
            return WebhookResult(e.status, body)

        event_type = event["type"]
        if event_type not in SUPPORTED_EVENTS:
            logger.info("webhook event %s ignored (delivery %s)", event_type, delivery_id)
            return WebhookResult(200, {"message": "Event type not handled", "event_type": event_type})

        try:
            self._apply(event_type, event["data"])
        except AppError as e:
            logger.error("webhook %s failed (delivery %s): %s", event_type, delivery_id, e.describe())
            return WebhookResult(e.status, e.to_dict())

        elapsed_ms = int((time.monotonic() - started) * 1000)
        logger.info("webhook %s processed in %sms (delivery %s)", event_type, elapsed_ms, delivery_id)
        return WebhookResult(200, {
            "message": "Webhook processed successfully",
            "event_type": event_type,
            "processing_time_ms": elapsed_ms,
        })
