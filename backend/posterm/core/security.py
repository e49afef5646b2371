"""Identifier and signature helpers (session ids, auth codes, QR payloads)."""
from __future__ import annotations
import hashlib
import hmac
import json
import random
import string
import uuid


def generate_id(prefix: str = "") -> str:
    """Generate a URL-safe unique ID."""
    uid = uuid.uuid4().hex
    return f"{prefix}{uid}" if prefix else uid


def generate_transaction_id() -> str:
    """Bank-side transaction reference (UUID4, unique across concurrent calls)."""
    return str(uuid.uuid4())


def generate_auth_code(rng: random.Random | None = None, length: int = 6) -> str:
    rng = rng or random
    return "".join(rng.choices(string.ascii_uppercase + string.digits, k=length))


def sign_payload(payload: dict, secret: str) -> str:
    """HMAC-SHA256 hex digest of payload (deterministic JSON)."""
    body = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hmac.new(secret.encode(), body.encode(), hashlib.sha256).hexdigest()


def constant_time_compare(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())
