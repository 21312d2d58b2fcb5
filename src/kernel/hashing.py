from __future__ import annotations

import hashlib


def sha256_hexdigest(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def build_fingerprint(*parts: str | None) -> str:
    """Build a stable fingerprint from ordered components."""
    normalized = [part or "" for part in parts]
    return "|".join(normalized)


def build_message_digest(role: str, content: str | None, tool_call_id: str | None = None) -> str:
    """Hash a message verbatim for checkpoint snapshots.

    Content is not normalized: a checkpoint must detect any byte-level change.
    """
    fingerprint = build_fingerprint(role, tool_call_id)
    payload = f"{fingerprint}::{content or ''}".encode("utf-8", errors="surrogatepass")
    return sha256_hexdigest(payload)
