import re
from typing import Optional

_EMAIL_HEAD = re.compile(r"^(.{2}).*@")


def mask_email(email: Optional[str], enabled: bool = True) -> str:
    """
    'jane.doe@example.com' -> 'ja***@example.com' (only when enabled,
    i.e. in production). None -> 'null'.
    """
    if not email:
        return "null"
    if not enabled:
        return email
    return _EMAIL_HEAD.sub(r"\1***@", email)
