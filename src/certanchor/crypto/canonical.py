"""Canonical serialisation of certificate documents.

The issuer and every verifier must derive the same bytes from the same
logical document, otherwise no leaf hash would ever match. Canonical form:

- Object keys sorted by Unicode code point, at every depth.
- No insignificant whitespace: "," and ":" separators only.
- UTF-8 output, non-ASCII characters kept verbatim.
- Strings NFC-normalised, CRLF and lone CR folded to LF.
- Integers rendered plainly. Floats and Decimals rendered with
  FLOAT_PRECISION digits after the point, trailing zeros removed.
- NaN, infinity, bytes, sets, datetimes and other objects are rejected.

Keys in HASH_EXCLUDED_KEYS are dropped from the top level before hashing:
the signature block is added after hashing, and the run timestamp is
informational only.
"""

from __future__ import annotations

import hashlib
import json
import math
import unicodedata
from decimal import Decimal, InvalidOperation, ROUND_HALF_EVEN
from typing import Any, Mapping

from certanchor.errors import EncodingError


FLOAT_PRECISION = 8
HASH_EXCLUDED_KEYS = ("signature", "issuanceRunTimestamp")
REQUIRED_FIELDS = ("id", "recipient", "recipientProfile", "issuedOn", "badge")

_QUANTUM = Decimal(1).scaleb(-FLOAT_PRECISION)


def serialize(doc: Mapping[str, Any]) -> bytes:
    """Serialise a certificate document to its canonical bytes.

    Raises:
        EncodingError: If a required field is absent or any value is
            outside the canonical grammar.
    """
    if not isinstance(doc, Mapping):
        raise EncodingError(f"Certificate must be an object, got {type(doc).__name__}")
    missing = [f for f in REQUIRED_FIELDS if f not in doc or doc[f] is None]
    if missing:
        raise EncodingError(f"Missing required field(s): {', '.join(missing)}")
    scope = {k: v for k, v in doc.items() if k not in HASH_EXCLUDED_KEYS}
    return canonical_bytes(scope)


def canonical_bytes(value: Any) -> bytes:
    """Canonical encoding of an arbitrary JSON-like value."""
    parts: list[str] = []
    _encode(value, parts, "$")
    return "".join(parts).encode("utf-8")


def certificate_hash(doc: Mapping[str, Any]) -> str:
    """SHA-256 hex digest of the canonical form: the certificate's leaf."""
    return sha256_hex(serialize(doc))


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _normalize_text(text: str) -> str:
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    return unicodedata.normalize("NFC", text)


def _format_number(value: Any, path: str) -> str:
    if isinstance(value, float) and not math.isfinite(value):
        raise EncodingError(f"Non-finite number at {path}")
    try:
        # repr() gives the shortest round-tripping form of a float
        dec = Decimal(repr(value)) if isinstance(value, float) else value
        if not dec.is_finite():
            raise EncodingError(f"Non-finite number at {path}")
        quantized = dec.quantize(_QUANTUM, rounding=ROUND_HALF_EVEN)
    except InvalidOperation as exc:
        raise EncodingError(f"Number out of range at {path}") from exc
    text = format(quantized, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    if text in ("-0", ""):
        text = "0"
    return text


def _encode(value: Any, out: list[str], path: str) -> None:
    if value is None:
        out.append("null")
    elif isinstance(value, bool):
        out.append("true" if value else "false")
    elif isinstance(value, int):
        out.append(str(value))
    elif isinstance(value, (float, Decimal)):
        out.append(_format_number(value, path))
    elif isinstance(value, str):
        out.append(json.dumps(_normalize_text(value), ensure_ascii=False))
    elif isinstance(value, Mapping):
        normalized: dict[str, Any] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise EncodingError(f"Non-string key {key!r} at {path}")
            nkey = _normalize_text(key)
            if nkey in normalized:
                raise EncodingError(f"Duplicate key {nkey!r} at {path}")
            normalized[nkey] = item
        out.append("{")
        for i, key in enumerate(sorted(normalized)):
            if i:
                out.append(",")
            out.append(json.dumps(key, ensure_ascii=False))
            out.append(":")
            _encode(normalized[key], out, f"{path}.{key}")
        out.append("}")
    elif isinstance(value, (list, tuple)):
        out.append("[")
        for i, item in enumerate(value):
            if i:
                out.append(",")
            _encode(item, out, f"{path}[{i}]")
        out.append("]")
    else:
        raise EncodingError(
            f"Value of type {type(value).__name__} at {path} is not representable"
        )
