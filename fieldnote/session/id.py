from __future__ import annotations

import secrets
import string

ALPHABET = string.ascii_lowercase + string.digits
ID_LENGTH = 8


def generate_session_id() -> str:
    """Short, human-typeable session id: 8 chars from [a-z0-9]."""
    return "".join(secrets.choice(ALPHABET) for _ in range(ID_LENGTH))
