"""Content fingerprints for text values."""
import hashlib

FINGERPRINT_LENGTH = 32


def fingerprint(text: str) -> str:
    """
    Compute the content fingerprint of a text value.

    Args:
        text: Any text, hashed as UTF-8

    Returns:
        32 character lowercase hex MD5 digest
    """
    return hashlib.md5(text.encode("utf-8")).hexdigest()


def is_fingerprint(value: str) -> bool:
    """Check that a string looks like a fingerprint produced by `fingerprint`."""
    if not isinstance(value, str) or len(value) != FINGERPRINT_LENGTH:
        return False
    return all(c in "0123456789abcdef" for c in value)
