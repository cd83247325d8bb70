"""Clock abstraction for token-expiry decisions.

A ``Clock`` is any callable returning the current UNIX timestamp as ``float``.
Token validity checks and acquisition timestamps in this package take an
injected ``Clock`` instead of calling ``time.time()`` directly, so tests can
pin "now" to an exact instant.

Example
-------
>>> from campus_sso.cas.clock import default_clock
>>> isinstance(default_clock(), float)
True
"""

from __future__ import annotations

import time
from typing import Protocol, runtime_checkable


@runtime_checkable
class Clock(Protocol):
    """Callable protocol returning *seconds* since the UNIX epoch."""

    def __call__(self) -> float: ...


def default_clock() -> float:
    """Wall-clock time via ``time.time()``."""
    return time.time()


def fixed_clock(now: float) -> Clock:
    """Return a clock frozen at *now* (handy in tests and dry runs)."""
    return lambda: float(now)
