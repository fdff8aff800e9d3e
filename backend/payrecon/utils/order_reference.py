from __future__ import annotations

import re
import secrets
import time
from dataclasses import dataclass

PREFIX = "pay"
# Provider limit for orderId.
MAX_LENGTH = 64

_TOKEN_RE = re.compile(r"pay_([0-9]+)_([0-9]+)")


@dataclass(frozen=True)
class OrderReference:
    internal_id: int
    nonce: int

    @property
    def token(self) -> str:
        return f"{PREFIX}_{int(self.internal_id)}_{int(self.nonce)}"


def _fresh_nonce() -> int:
    # Seconds keep tokens sortable; the random tail separates attempts made within the same second.
    return int(time.time()) * 1_000_000 + secrets.randbelow(1_000_000)


def generate(internal_id: int) -> str:
    """Build the opaque order id sent to the provider for one payment attempt.

    Format: ``pay_{payment_id}_{nonce}``. Calling this again for the same
    payment yields a different token that still decodes to the same id.
    """
    pid = int(internal_id)
    if pid < 1:
        raise ValueError("internal_id must be >= 1")
    return OrderReference(internal_id=pid, nonce=_fresh_nonce()).token


def decode(token) -> OrderReference | None:
    if not isinstance(token, str) or len(token) > MAX_LENGTH:
        return None
    match = _TOKEN_RE.fullmatch(token)
    if not match:
        return None
    internal_id = int(match.group(1))
    if internal_id < 1:
        return None
    return OrderReference(internal_id=internal_id, nonce=int(match.group(2)))


def parse(token) -> int | None:
    ref = decode(token)
    if ref is None:
        return None
    return ref.internal_id
