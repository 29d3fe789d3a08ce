"""
Signature Service for CMI Callbacks

Implements the CMI "ver3" hash: SHA-512 over the escaped, pipe-delimited
values of all non-excluded fields (sorted case-insensitively by name),
followed by the escaped store key, base64-encoded.

The same construction signs the outgoing redirect form and verifies the
inbound callback, so both directions must stay byte-for-byte identical.
"""
import base64
import hashlib
import hmac
import logging
import re
from typing import Any, Iterable, Mapping, Optional, FrozenSet
from urllib.parse import unquote

logger = logging.getLogger(__name__)

HASH_FIELD = "HASH"
SEPARATOR = "|"

# Never part of the digest, compared lowercase
ALWAYS_EXCLUDED = frozenset({"hash", "encoding"})

# A '%' not followed by two hex digits cannot be percent-decoded
_MALFORMED_ESCAPE = re.compile(r"%(?![0-9A-Fa-f]{2})")


def excluded_field_set(extra: Iterable[str] = ()) -> FrozenSet[str]:
    """Build the lowercase exclusion set from caller-designated carrier fields."""
    return ALWAYS_EXCLUDED | {name.lower() for name in extra}


def escape_value(value: str) -> str:
    """Escape backslash first, then pipe."""
    return value.replace("\\", "\\\\").replace(SEPARATOR, "\\" + SEPARATOR)


def _decode_value(raw: Any) -> str:
    """
    Normalize a single field value before escaping.

    Strips one trailing LF (a preceding CR is kept), then percent-decodes strictly:
    malformed escapes and invalid UTF-8 raise ValueError.
    """
    value = raw if isinstance(raw, str) else str(raw)

    if value.endswith("\n"):
        value = value[:-1]

    if _MALFORMED_ESCAPE.search(value):
        raise ValueError(f"Malformed percent-encoding in value: {value!r}")

    return unquote(value, encoding="utf-8", errors="strict")


def canonicalize(
    fields: Mapping[str, Any],
    excluded: FrozenSet[str] = ALWAYS_EXCLUDED
) -> bytes:
    """
    Build the canonical byte string for a field map, without the secret.

    Args:
        fields: Field map as received (open set, any order)
        excluded: Lowercase field names left out of the digest

    Returns:
        UTF-8 bytes of "v1|v2|...|vn|" over the sorted, escaped values

    Raises:
        ValueError: If a participating value cannot be percent-decoded
    """
    # Ties on lowercase name fall back to the exact name so order never leaks in
    names = sorted(
        (name for name in fields if name.lower() not in excluded),
        key=lambda name: (name.lower(), name)
    )

    parts = []
    for name in names:
        parts.append(escape_value(_decode_value(fields[name])))
        parts.append(SEPARATOR)

    logger.debug(f"Canonical field order: {names}")
    return "".join(parts).encode("utf-8")


def compute_signature(
    fields: Mapping[str, Any],
    secret: str,
    excluded: FrozenSet[str] = ALWAYS_EXCLUDED
) -> str:
    """
    Compute the base64 SHA-512 signature for a field map.

    Args:
        fields: Field map to sign
        secret: CMI store key
        excluded: Lowercase field names left out of the digest

    Returns:
        Base64-encoded SHA-512 digest of canonical bytes + escaped secret
    """
    message = canonicalize(fields, excluded) + escape_value(secret).encode("utf-8")
    digest = hashlib.sha512(message).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_signature(
    fields: Mapping[str, Any],
    provided_signature: Optional[str],
    secret: Optional[str],
    excluded: FrozenSet[str] = ALWAYS_EXCLUDED
) -> bool:
    """
    Verify a callback signature.

    Fails closed: a missing secret, a missing signature or any error while
    canonicalizing returns False instead of raising.

    Args:
        fields: Inbound callback fields
        provided_signature: Value of the HASH field
        secret: CMI store key
        excluded: Lowercase field names left out of the digest

    Returns:
        True only if the recomputed signature equals the provided one exactly
    """
    if not secret:
        logger.error("CMI store key is not configured, rejecting callback signature")
        return False

    if not provided_signature:
        logger.warning("Callback carries no HASH field")
        return False

    try:
        expected = compute_signature(fields, secret, excluded)
    except (ValueError, UnicodeError) as e:
        logger.warning(f"Callback fields could not be canonicalized: {e}")
        return False

    # Exact equality in constant time; bytes so non-ASCII input cannot raise
    return hmac.compare_digest(
        expected.encode("utf-8"),
        str(provided_signature).encode("utf-8")
    )


def sign_fields(fields: Mapping[str, Any], secret: str, excluded: FrozenSet[str] = ALWAYS_EXCLUDED) -> dict:
    """Return a copy of the fields with the HASH field set."""
    signed = dict(fields)
    signed[HASH_FIELD] = compute_signature(fields, secret, excluded)
    return signed
