"""HMAC signatures for provider notifications.

The provider signs the JSON body after sorting object keys at every nesting
level and serializing it the way JavaScript's JSON.stringify does: no
whitespace, non-ASCII characters kept as-is, and numbers in JavaScript's
Number-to-string form (``99`` for 99.0, ``0.00005`` for 5e-05, ``1e-7``
for 1e-07). The check has to reproduce that byte-for-byte.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import math
from decimal import Decimal
from typing import Any


# Integers beyond this are not exact doubles in JavaScript.
_JS_SAFE_INTEGER = 2 ** 53


def _js_float(value: float) -> str:
    """Render a float the way JavaScript's Number.prototype.toString does."""
    if not math.isfinite(value):
        return "null"
    if value == 0:
        return "0"

    sign = "-" if value < 0 else ""
    _, digit_tuple, exponent = Decimal(repr(abs(value))).as_tuple()
    raw_digits = "".join(str(digit) for digit in digit_tuple)
    digits = raw_digits.rstrip("0")
    exponent += len(raw_digits) - len(digits)

    k = len(digits)
    n = k + exponent
    if k <= n <= 21:
        body = digits + "0" * (n - k)
    elif 0 < n <= 21:
        body = f"{digits[:n]}.{digits[n:]}"
    elif -6 < n <= 0:
        body = "0." + "0" * -n + digits
    else:
        mantissa = digits[0] + (f".{digits[1:]}" if k > 1 else "")
        e = n - 1
        body = f"{mantissa}e{'+' if e >= 0 else '-'}{abs(e)}"
    return sign + body


def _js_int(value: int) -> str:
    if abs(value) <= _JS_SAFE_INTEGER:
        return str(value)
    try:
        return _js_float(float(value))
    except OverflowError:
        return "null"


def _sort_key(key: str) -> bytes:
    # JavaScript compares strings by UTF-16 code units.
    return key.encode("utf-16-be", "surrogatepass")


def _encode(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return _js_int(value)
    if isinstance(value, float):
        return _js_float(value)
    if isinstance(value, str):
        return json.dumps(value, ensure_ascii=False)
    if isinstance(value, dict):
        items = (
            f"{json.dumps(str(key), ensure_ascii=False)}:{_encode(value[key])}"
            for key in sorted(value, key=lambda item: _sort_key(str(item)))
        )
        return "{" + ",".join(items) + "}"
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(_encode(item) for item in value) + "]"
    raise TypeError(f"Cannot canonicalize {type(value).__name__}")


def canonicalize(payload: dict[str, Any]) -> str:
    """Serialize payload with keys in lexicographic order at every level."""
    return _encode(payload)


def sign_payload(payload: dict[str, Any], secret: str) -> str:
    """Hex HMAC-SHA512 of the canonical payload."""
    return hmac.new(
        secret.encode("utf-8"),
        canonicalize(payload).encode("utf-8"),
        hashlib.sha512,
    ).hexdigest()


def verify_signature(raw_payload: bytes | str, signature: str | None, secret: str) -> bool:
    """Constant-time check of a notification signature. Any problem is a mismatch."""
    provided = str(signature or "").strip().lower()
    if not provided or not secret:
        return False
    try:
        payload = json.loads(raw_payload)
    except (TypeError, ValueError):
        return False
    if not isinstance(payload, dict):
        return False
    expected = sign_payload(payload, secret)
    return hmac.compare_digest(expected, provided)
