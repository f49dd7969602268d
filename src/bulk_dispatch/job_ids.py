"""Generation of bulk job identifiers.

Identifiers look like ``bulk_1718000000000_k3j9x0a2m`` and combine the
wall-clock time in milliseconds with a random lowercase alphanumeric suffix
drawn from :mod:`secrets`. They are URL-safe and carry no meaning beyond
uniqueness.
"""

from __future__ import annotations

import secrets
import string
import time

JOB_ID_PREFIX = "bulk"
SUFFIX_LENGTH = 9
_ALPHABET = string.ascii_lowercase + string.digits


def generate_job_id(now_ms: int | None = None) -> str:
    """Return a new job identifier.

    Args:
        now_ms: Optional timestamp in milliseconds, mainly for tests.
            Defaults to the current wall-clock time.
    """
    if now_ms is None:
        now_ms = time.time_ns() // 1_000_000
    suffix = "".join(secrets.choice(_ALPHABET) for _ in range(SUFFIX_LENGTH))
    return f"{JOB_ID_PREFIX}_{now_ms}_{suffix}"
