"""
Utility functions shared by the engine and the HTTP layer.
"""

import hashlib
import hmac
import logging

logger = logging.getLogger(__name__)

DEFAULT_USER_SERVER = "s.whatsapp.net"
DEFAULT_PAGE_SIZE = 20


def verify_hmac_signature(body: bytes, signature: str, secret: str) -> bool:
    """
    Check the X-Signature of an /events delivery.

    Args:
        body: Raw request body bytes
        signature: Hex HMAC-SHA256 of the body, as sent by the bridge
        secret: WEBHOOK_SECRET

    Returns:
        True if the signature matches, False otherwise
    """
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    # constant-time comparison
    is_valid = hmac.compare_digest(expected, signature.strip().lower())
    logger.debug(f"Signature check over {len(body)} bytes: {'valid' if is_valid else 'invalid'}")
    return is_valid


def jid_local_part(jid: str) -> str:
    """'123@s.whatsapp.net' -> '123'. Strings without '@' are returned as-is."""
    return jid.split("@", 1)[0]


def direct_jid(phone_number: str) -> str:
    """Turn a bare phone number into a direct-chat JID."""
    phone_number = phone_number.lstrip("+")
    if "@" in phone_number:
        return phone_number
    return f"{phone_number}@{DEFAULT_USER_SERVER}"


def normalize_page(limit: int, page: int, default_limit: int = DEFAULT_PAGE_SIZE) -> tuple[int, int, int]:
    """
    Apply the shared paging rules.

    Returns:
        (limit, page, offset) where limit <= 0 becomes ``default_limit``,
        page < 0 becomes 0 and offset = page * limit.
    """
    if limit <= 0:
        limit = default_limit
    if page < 0:
        page = 0
    return limit, page, page * limit


def like_pattern(term: str) -> str:
    """Substring pattern for LIKE/ILIKE with wildcards in the term escaped."""
    escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"
