"""Content hashing and text normalization.

Everything that feeds a digest goes through here so that identical bytes give
identical hashes regardless of process, locale or timezone.
"""

import hashlib
import json
from typing import Any


def sha256(text: str) -> str:
    """Hash text using SHA256 over its UTF-8 bytes."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def hash_to_uint32(hex_hash: str) -> int:
    """First 4 bytes of a hex digest as a big-endian unsigned int."""
    return int(hex_hash[:8], 16)


def normalize_text(text: str) -> str:
    """Normalize line endings to LF and trim trailing whitespace per line.

    Leading whitespace is kept so indented code survives.
    """
    normalized = text.replace("\r\n", "\n").replace("\r", "\n")
    return "\n".join(line.rstrip() for line in normalized.split("\n"))


def canonical_json(value: Any) -> str:
    """Serialize with sorted keys and no insignificant whitespace."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
