"""
Content digests for document deduplication.

Each stored document carries ``xxh``, a 64-bit xxHash of its serialized
payload followed by its key. The column is unique per collection, so the
backend itself rejects (``write``) or drops (``write_if_changed``) a second
row with the same digest.

Manifesto:
    - **Fast:** xxh64 is non-cryptographic and cheap enough for every write
    - **Deterministic:** Same bytes + same key → same digest, across processes
    - **Key-salted:** Identical payloads under different keys get different
      digests, so the uniqueness constraint only bites on true collisions

Architecture:
    ::

        raw = codec.encode(value)           # tab-indented, key-sorted JSON
        digest = xxh64(raw + key.encode())  # unsigned 64-bit

        MySQL:      BIGINT UNSIGNED  ← digest
        SQLite/PG:  BIGINT (signed)  ← to_signed64(digest)

Examples:
    >>> d1 = compute_digest(b'{"x": 1}', "a")
    >>> d1 == compute_digest(b'{"x": 1}', "a")
    True
    >>> d1 == compute_digest(b'{"x": 1}', "b")
    False
    >>> to_unsigned64(to_signed64(d1)) == d1
    True

Tags:
    hashing, deduplication, xxhash, sqljson
"""

import xxhash

UINT64_MAX = (1 << 64) - 1
_SIGN_BIT = 1 << 63


def compute_digest(raw: bytes, key: str) -> int:
    """
    Compute the content digest of a serialized document.

    Args:
        raw: Serialized JSON payload
        key: Document key, appended to the payload as UTF-8

    Returns:
        Unsigned 64-bit integer
    """
    return xxhash.xxh64_intdigest(raw + key.encode("utf-8"))


def to_signed64(value: int) -> int:
    """Map an unsigned 64-bit value onto the signed range (two's complement)."""
    if not 0 <= value <= UINT64_MAX:
        raise ValueError(f"not an unsigned 64-bit value: {value}")
    return value - (1 << 64) if value & _SIGN_BIT else value


def to_unsigned64(value: int) -> int:
    """Inverse of ``to_signed64``."""
    if not -_SIGN_BIT <= value < _SIGN_BIT:
        raise ValueError(f"not a signed 64-bit value: {value}")
    return value + (1 << 64) if value < 0 else value
