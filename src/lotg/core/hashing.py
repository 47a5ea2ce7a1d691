"""Content fingerprints used to deduplicate bank questions."""

import hashlib
from typing import Sequence

FINGERPRINT_LENGTH = 32
DELIMITER = "|"


def normalize_content(text: str) -> str:
    """Lower-case and strip surrounding whitespace."""
    return (text or "").strip().lower()


def fingerprint(text: str, options: Sequence[str]) -> str:
    """
    Derive a stable hash from a question's text and options.

    Case and leading/trailing whitespace on the text and on each option do not
    change the result, so a re-extracted or re-typed question maps to the same
    fingerprint.

    Args:
        text: Question text
        options: Answer options, in order

    Returns:
        32-character hex prefix of the SHA256 digest
    """
    parts = [normalize_content(text)] + [normalize_content(opt) for opt in options]
    content = DELIMITER.join(parts)
    return hashlib.sha256(content.encode("utf-8")).hexdigest()[:FINGERPRINT_LENGTH]
