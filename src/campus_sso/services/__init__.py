"""Per-service adapters built on the CAS login core.

``SsoContext`` is the usual entry point; it hands out one ``ServiceAdapter``
per downstream system, all sharing a cookie jar and an RSA key cache.
"""

from __future__ import annotations

from .adapter import ServiceAdapter  # noqa: F401
from .catalog import PROFILES, ServiceProfile, get_profile  # noqa: F401
from .context import SsoContext  # noqa: F401
from .reauth import ReauthManager  # noqa: F401

__all__ = [
    "ServiceAdapter",
    "ServiceProfile",
    "PROFILES",
    "get_profile",
    "SsoContext",
    "ReauthManager",
]
