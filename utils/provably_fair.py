"""
Provably Fair Utilities for Raffle Draws
Implements HMAC-SHA256 based deterministic random index generation
"""

import hashlib
import hmac
import secrets

DEFAULT_SEED_BYTES = 32


def generate_draw_seed(num_bytes: int = DEFAULT_SEED_BYTES) -> str:
    """
    Generate a fresh draw seed from the OS CSPRNG.

    The seed is never derived from request input. It is unpredictable before
    the draw and is published afterwards so anyone can replay it.

    Returns:
        str: Hex-encoded seed (64 chars for the default 32 bytes)
    """
    return secrets.token_hex(num_bytes)


def deterministic_random_int(seed: str, counter: int, max_exclusive: int) -> int:
    """
    Derive a reproducible index in [0, max_exclusive) from a seed and a counter.

    Algorithm:
    1. HMAC-SHA256 with the seed string as key and str(counter) as message
    2. Read the first 8 digest bytes as a big-endian unsigned 64-bit integer
    3. Reduce modulo max_exclusive

    The modulo bias of a 64-bit value against realistic ticket totals is negligible.

    Args:
        seed: Hex draw seed (used as the HMAC key as-is, not hex-decoded)
        counter: Non-negative attempt counter, starting at 0
        max_exclusive: Upper bound (the raffle's total tickets)

    Returns:
        int: Value in [0, max_exclusive)
    """
    if max_exclusive <= 0:
        raise ValueError(f"max_exclusive must be positive, got {max_exclusive}")
    if counter < 0:
        raise ValueError(f"counter must be non-negative, got {counter}")

    digest = hmac.new(seed.encode('utf-8'), str(counter).encode('utf-8'), hashlib.sha256).digest()
    value = int.from_bytes(digest[:8], 'big')
    return value % max_exclusive

