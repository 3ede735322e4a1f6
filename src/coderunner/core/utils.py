from __future__ import annotations
import hashlib
import json
import random
import string
import time
import uuid
from typing import Any


def new_session_id() -> str:
    return uuid.uuid4().hex


def new_runner_id() -> str:
    suf = "".join(random.choice(string.ascii_lowercase + string.digits) for _ in range(9))
    return f"runner-{int(time.time() * 1000)}-{suf}"


def sha256_text(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def fingerprint(obj: Any, extra: str = "") -> str:
    canon = json.dumps(obj, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256((canon + extra).encode("utf-8")).hexdigest()


def decode_output(data: bytes) -> str:
    return data.decode("utf-8", errors="replace")
