# finchat/llm/normalizer.py
"""
Normalizes chat-service replies into one closed record.

The service returns a single free-text field. Sometimes it is the clean
user-facing message, sometimes that message is wrapped in a ```json fence
together with machine-readable flags (valid / ambiguous) and extracted
values, and the exact shape changes turn to turn. Everything downstream of
this module only looks at NormalizedReply.
"""
import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

SCHEMA_VERSION = 1

# Fallbacks when the reply carries no parsed flag: treat output as
# low-confidence rather than trusting it.
DEFAULT_VALID = False
DEFAULT_AMBIGUOUS = True

# candidate fields for the reply text, first populated one wins
TEXT_FIELDS = ("answer", "output", "text")
SESSION_FIELDS = ("conversation_id",)
FLAG_KEYS = ("answer", "valid", "ambiguous")

_FENCE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)


@dataclass(frozen=True)
class NormalizedReply:
    text: str                          # raw text as received (may contain fences)
    answer: str                        # display text
    valid: bool
    ambiguous: bool
    fields: Dict[str, Any] = field(default_factory=dict)      # other parsed keys
    extracted: Dict[str, Any] = field(default_factory=dict)   # legacy extracted-values view
    session_id: Optional[str] = None
    structured: bool = False           # True when a JSON payload was found
    schema_version: int = SCHEMA_VERSION

    def meta(self) -> Dict[str, Any]:
        """Side-channel stored on the assistant message."""
        return {
            "schema_version": self.schema_version,
            "valid": self.valid,
            "ambiguous": self.ambiguous,
            "structured": self.structured,
            "fields": self.fields,
            "extracted": self.extracted,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "answer": self.answer,
            "valid": self.valid,
            "ambiguous": self.ambiguous,
            "conversation_id": self.session_id,
            "outputs": self.fields,
            "extracted": self.extracted,
            "schema_version": self.schema_version,
        }


def strip_code_fences(text: str) -> str:
    if not isinstance(text, str) or not text:
        return ""
    return _FENCE.sub(r"\1", text).strip()


def parse_json_from_text(text: str) -> Any:
    """
    Direct parse of the whole text first, then the first fenced block.
    Returns None when neither parses.
    """
    if not isinstance(text, str) or not text:
        return None
    try:
        return json.loads(text)
    except ValueError:
        pass

    m = _FENCE.search(text)
    if m and m.group(1):
        try:
            return json.loads(m.group(1).strip())
        except ValueError:
            return None
    return None


def _raw_text(payload: Dict[str, Any]) -> str:
    for key in TEXT_FIELDS:
        value = payload.get(key)
        if value is None:
            continue
        if isinstance(value, str):
            return value
        if isinstance(value, (dict, list)):
            return json.dumps(value)
        return str(value)
    return ""


def _session_id(payload: Dict[str, Any]) -> Optional[str]:
    for key in SESSION_FIELDS:
        value = payload.get(key)
        if value:
            return str(value)
    return None


def _flags(outputs: Dict[str, Any]):
    valid = DEFAULT_VALID
    ambiguous = DEFAULT_AMBIGUOUS

    parsed_valid = outputs.get("valid")
    parsed_ambiguous = outputs.get("ambiguous")

    # explicit booleans are authoritative
    if isinstance(parsed_valid, bool):
        valid = parsed_valid
    if isinstance(parsed_ambiguous, bool):
        ambiguous = parsed_ambiguous
    elif isinstance(parsed_valid, bool):
        ambiguous = not parsed_valid
    return valid, ambiguous


def _extracted(outputs: Dict[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    if "incomeMonthlyNet" in outputs:
        out["incomeMonthlyNet"] = outputs["incomeMonthlyNet"]
    nested = outputs.get("extracted")
    if isinstance(nested, dict):
        out.update(nested)
    return out


def normalize_reply(payload: Optional[Dict[str, Any]]) -> NormalizedReply:
    """Normalize a raw chat-service response body (dict) into a NormalizedReply."""
    payload = payload if isinstance(payload, dict) else {}

    text = _raw_text(payload)
    parsed = parse_json_from_text(text)
    outputs = parsed if isinstance(parsed, dict) else {}

    answer = outputs.get("answer")
    if answer is None:
        answer = strip_code_fences(text)
    elif not isinstance(answer, str):
        answer = json.dumps(answer)

    valid, ambiguous = _flags(outputs)

    return NormalizedReply(
        text=text,
        answer=answer,
        valid=valid,
        ambiguous=ambiguous,
        fields={k: v for k, v in outputs.items() if k not in FLAG_KEYS},
        extracted=_extracted(outputs),
        session_id=_session_id(payload),
        structured=bool(outputs),
    )
