"""Deterministic join challenge assignment.

Every user id maps to exactly one symbol of a small fixed alphabet. The
mapping is a pure function of the identifier, so nothing has to be stored and
the assignment survives restarts. Python's built-in `hash()` is salted per
process and therefore unusable here; SHA-256 is stable everywhere.
"""

from __future__ import annotations

import hashlib
from typing import Sequence, Tuple

# Emoji that every mainstream Matrix client offers in its reaction picker.
CHALLENGE_ALPHABET: Tuple[str, ...] = (
    "\U0001F34E",  # red apple
    "\U0001F34C",  # banana
    "\U0001F347",  # grapes
    "\U0001F349",  # watermelon
    "\U0001F352",  # cherries
    "\U0001F34B",  # lemon
    "\U0001F95D",  # kiwi
)


def challenge_symbol(user_id: str, alphabet: Sequence[str] = CHALLENGE_ALPHABET) -> str:
    if not alphabet:
        raise ValueError("alphabet must not be empty")
    digest = hashlib.sha256(user_id.encode("utf-8")).digest()
    return alphabet[int.from_bytes(digest[:8], "big") % len(alphabet)]


def is_correct_response(user_id: str, key: str, alphabet: Sequence[str] = CHALLENGE_ALPHABET) -> bool:
    """True if `key` is the symbol assigned to `user_id`.

    Clients sometimes append U+FE0F (emoji presentation selector) to reaction
    keys; it is ignored for the comparison.
    """
    return key.replace("\uFE0F", "") == challenge_symbol(user_id, alphabet)
