from __future__ import annotations

"""
Membership code normalization, formatting and generation.

Canonical format: three digits, dash, four digits, dash, two digits.
Display: DDD-DDDD-DD (9 digits total)

Codes reach the validator either from a scanned QR card, whose payload is a
small JSON object like {"id": "...", "code": "123-4567-89"}, or typed by
hand with whatever spacing and punctuation the operator used. Both paths go
through normalize_code() before lookup. Nothing here raises: input that
can't be made canonical is passed through and simply fails to resolve.
"""

import json
import random
import re
from urllib.parse import urlencode

CANONICAL_RE = re.compile(r"\d{3}-\d{4}-\d{2}")
CODE_DIGITS = 9

_NON_DIGITS = re.compile(r"\D")


def _dashed(digits: str) -> str:
    return f"{digits[:3]}-{digits[3:7]}-{digits[7:9]}"


def _extract_payload_code(raw: str) -> str:
    """Return the `code` field of a JSON card payload, or raw unchanged."""
    if not raw.lstrip().startswith("{"):
        return raw
    try:
        payload = json.loads(raw)
    except (ValueError, TypeError, RecursionError):
        return raw
    if isinstance(payload, dict) and payload.get("code"):
        return str(payload["code"])
    return raw


def normalize_code(raw: str) -> str:
    """
    Turn scanner or keyboard input into a lookup key.

    "123456789"                         -> "123-4567-89"
    '{"id":"u1","code":"123-4567-89"}'  -> "123-4567-89"
    "  123-4567-89  "                   -> "123-4567-89"
    """
    code = _extract_payload_code(raw).strip()
    digits = _NON_DIGITS.sub("", code)
    if len(digits) == CODE_DIGITS and "-" not in code:
        return _dashed(digits)
    return code


def format_as_typed(value: str) -> str:
    """Progressively format partial keyboard input, capped at 9 digits."""
    digits = _NON_DIGITS.sub("", value)[:CODE_DIGITS]
    if len(digits) <= 3:
        return digits
    if len(digits) <= 7:
        return f"{digits[:3]}-{digits[3:]}"
    return _dashed(digits)


def is_canonical(code: str | None) -> bool:
    return bool(code) and CANONICAL_RE.fullmatch(code) is not None


def generate_code(rng: random.Random | None = None) -> str:
    """Random canonical code: 100-999, 1000-9999, 10-99."""
    rng = rng or random.Random()
    return f"{rng.randint(100, 999)}-{rng.randint(1000, 9999)}-{rng.randint(10, 99)}"


def qr_payload(client_id: str, code: str | None) -> str:
    """The JSON payload printed on a client's membership card QR."""
    return json.dumps({"id": client_id, "code": code}, separators=(",", ":"))


def qr_image_url(service_url: str, payload: str, size: int = 300) -> str:
    """URL of the external QR rendering service for a card payload."""
    query = urlencode({"size": f"{size}x{size}", "data": payload, "color": "0f172a"})
    return f"{service_url}?{query}"
