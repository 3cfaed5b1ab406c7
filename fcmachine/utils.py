"""Small helpers for waiting on the VMM and reading the environment."""

from __future__ import annotations

import os
import re
import time
from typing import Any, Optional

ALIVE_VMM_CHECK_INTERVAL = 0.01

_INT_PATTERN = re.compile(r"[+-]?[0-9]+")
_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1


def wait_for_alive_vmm(client: Any, timeout: Optional[float]) -> None:
    """Poll the client until the VMM answers a machine-configuration request.

    Raises TimeoutError if it does not answer within ``timeout`` seconds;
    a ``timeout`` of None waits forever.
    """
    deadline = None if timeout is None else time.monotonic() + timeout
    while True:
        if deadline is not None and time.monotonic() >= deadline:
            raise TimeoutError("VMM did not become alive in time")
        time.sleep(ALIVE_VMM_CHECK_INTERVAL)
        try:
            client.get_machine_configuration()
        except Exception:
            continue
        return


def env_value_or_default_int(env_name: str, default: int) -> int:
    """Return the integer in the named variable, or ``default`` if unset, invalid or zero."""
    raw = os.environ.get(env_name, "")
    if not _INT_PATTERN.fullmatch(raw):
        return default
    value = int(raw)
    if value == 0 or not _INT64_MIN <= value <= _INT64_MAX:
        return default
    return value