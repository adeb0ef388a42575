from __future__ import annotations

import base64
import binascii
import json
from datetime import datetime
from typing import Optional


def encode_cursor(dt: Optional[datetime], id: str) -> str:
    payload = {"t": dt.isoformat() if dt is not None else None, "id": id}
    return base64.urlsafe_b64encode(json.dumps(payload).encode()).decode()


def decode_cursor(s: str) -> tuple[Optional[datetime], str]:
    try:
        data = json.loads(base64.urlsafe_b64decode(s.encode()).decode())
        raw = data["t"]
        return (datetime.fromisoformat(raw) if raw is not None else None, str(data["id"]))
    except (binascii.Error, UnicodeDecodeError, KeyError, TypeError, ValueError) as exc:
        raise ValueError("invalid cursor") from exc
