"""Telegram Mini App init-data verification.

Provides:
- HMAC-SHA256 check of ``initData`` with the bot token (first-party)
- Ed25519 check of the ``signature`` field with Telegram's public key
  (third-party: the server holds only the bot id, not its token)
- auth_date freshness

Dependencies: hashlib, hmac, json, urllib.parse, cryptography
"""

import base64
import hashlib
import hmac as hmac_mod
import json
import time as _time
from urllib.parse import parse_qsl

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

from protocol import INIT_DATA_MAX_AGE

TELEGRAM_PUBLIC_KEY = "e7bf03a2fa4602af4580703d88dda5bb59f32ed8b02a56c187fe7d34caed242d"
TELEGRAM_TEST_PUBLIC_KEY = "40055058a4ee38156a06562e52eece92a771bcd8346a8c4615cb7376eddf72ec"


class InitDataError(Exception):
    """initData is malformed, forged or stale."""


def parse_init_data(init_data: str) -> dict[str, str]:
    if not init_data:
        raise InitDataError("Missing init data")
    try:
        return dict(parse_qsl(init_data, keep_blank_values=True, strict_parsing=True))
    except ValueError:
        raise InitDataError("Malformed init data")


def data_check_string(fields: dict[str, str], exclude: tuple[str, ...] = ("hash",)) -> str:
    """Sorted ``key=value`` lines, newline-joined."""
    return "\n".join(f"{k}={v}" for k, v in sorted(fields.items()) if k not in exclude)


def _check_age(fields: dict[str, str], max_age: int, now: float | None) -> None:
    try:
        auth_date = int(fields.get("auth_date", ""))
    except ValueError:
        raise InitDataError("Missing auth_date")
    now = _time.time() if now is None else now
    if max_age and now - auth_date > max_age:
        raise InitDataError("Init data expired")


def _user(fields: dict[str, str]) -> dict:
    try:
        user = json.loads(fields.get("user", ""))
    except ValueError:
        raise InitDataError("Init data has no user")
    if not isinstance(user, dict) or "id" not in user:
        raise InitDataError("Init data has no user")
    return user


def sign_init_data(fields: dict[str, str], bot_token: str) -> str:
    """HMAC hash Telegram would attach to these fields."""
    secret = hmac_mod.new(b"WebAppData", bot_token.encode("utf-8"), hashlib.sha256).digest()
    return hmac_mod.new(secret, data_check_string(fields).encode("utf-8"), hashlib.sha256).hexdigest()


def verify_init_data(init_data: str, bot_token: str, max_age: int = INIT_DATA_MAX_AGE,
                     now: float | None = None) -> dict:
    """Validate initData with the bot token. Returns the ``user`` object."""
    fields = parse_init_data(init_data)
    received = fields.get("hash", "")
    if not received:
        raise InitDataError("Missing hash")
    expected = sign_init_data(fields, bot_token)
    if not hmac_mod.compare_digest(expected, received):
        raise InitDataError("Hash mismatch")
    _check_age(fields, max_age, now)
    return _user(fields)


def third_party_check_string(fields: dict[str, str], bot_id: int) -> bytes:
    body = data_check_string(fields, exclude=("hash", "signature"))
    return f"{bot_id}:WebAppData\n{body}".encode("utf-8")


def verify_init_data_signature(init_data: str, bot_id: int, public_key_hex: str = TELEGRAM_PUBLIC_KEY,
                               max_age: int = INIT_DATA_MAX_AGE, now: float | None = None) -> dict:
    """Validate initData via its Ed25519 ``signature``. Returns the user."""
    fields = parse_init_data(init_data)
    sig_b64 = fields.get("signature", "")
    if not sig_b64:
        raise InitDataError("Missing signature")
    try:
        # base64url without padding
        signature = base64.urlsafe_b64decode(sig_b64 + "=" * (-len(sig_b64) % 4))
        pub = Ed25519PublicKey.from_public_bytes(bytes.fromhex(public_key_hex))
    except ValueError:
        raise InitDataError("Malformed signature")
    try:
        pub.verify(signature, third_party_check_string(fields, bot_id))
    except InvalidSignature:
        raise InitDataError("Signature mismatch")
    _check_age(fields, max_age, now)
    return _user(fields)
