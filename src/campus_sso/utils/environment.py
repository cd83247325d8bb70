"""Runtime configuration read from environment variables.

All variables share the ``CAMPUS_SSO_`` prefix:

``CAS_BASE_URL``            CAS server root (default ``https://login.xjtu.edu.cn``)
``LEGACY_CAS_BASE_URL``     legacy CAS used by the campus card (``https://cas.xjtu.edu.cn``)
``CONNECT_TIMEOUT``         seconds, default 30
``READ_TIMEOUT``            seconds, default 30
``TOKEN_TTL_SECONDS``       assumed lifetime of tokens without ``exp`` (3600)
``EXPIRY_MARGIN_SECONDS``   safety margin subtracted from a JWT ``exp`` (30)
``CAPTCHA_THRESHOLD``       failed attempts before a CAPTCHA is demanded (3)
``TGC_COOKIE_NAME``         name of the CAS ticket-granting cookie (``CASTGC``)
``USE_WEBVPN``              route non-CAS traffic through WebVPN (false)
``ALLOW_LEGACY_PLAINTEXT``  permit the legacy CAS form, which takes a plaintext password (true)

The TTL and margin are heuristics, not protocol guarantees; tune them here.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Final, Tuple
from urllib.parse import urlparse

logger = logging.getLogger("campus-sso.utils.environment")

_TRUTHY: Final[Tuple[str, ...]] = ("true", "1", "yes", "y", "on")
_DEFAULT_PREFIX: Final[str] = "CAMPUS_SSO_"


def _truthy(value: str | None) -> bool:
    return (value or "").strip().lower() in _TRUTHY


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r, using %s", name, raw, default)
        return default


@dataclass(frozen=True)
class SsoSettings:
    """Tunable knobs of the CAS client."""

    cas_base_url: str = "https://login.xjtu.edu.cn"
    legacy_cas_base_url: str = "https://cas.xjtu.edu.cn"
    connect_timeout: float = 30.0
    read_timeout: float = 30.0
    token_ttl_seconds: float = 3600.0
    expiry_margin_seconds: float = 30.0
    captcha_threshold: int = 3
    tgc_cookie_name: str = "CASTGC"
    use_webvpn: bool = False
    allow_legacy_plaintext: bool = True

    @property
    def timeout(self) -> tuple[float, float]:
        """``(connect, read)`` tuple in the form ``requests`` expects."""
        return (self.connect_timeout, self.read_timeout)

    @property
    def cas_host(self) -> str:
        return urlparse(self.cas_base_url).hostname or ""

    def cas_url(self, path: str) -> str:
        """Absolute URL of *path* on the CAS server."""
        return f"{self.cas_base_url.rstrip('/')}/{path.lstrip('/')}"

    @classmethod
    def from_env(cls, prefix: str = _DEFAULT_PREFIX) -> "SsoSettings":
        """Build settings from ``{prefix}*`` variables, falling back to defaults."""
        defaults = cls()
        settings = cls(
            cas_base_url=(os.getenv(f"{prefix}CAS_BASE_URL") or defaults.cas_base_url).rstrip("/"),
            legacy_cas_base_url=(
                os.getenv(f"{prefix}LEGACY_CAS_BASE_URL") or defaults.legacy_cas_base_url
            ).rstrip("/"),
            connect_timeout=_float_env(f"{prefix}CONNECT_TIMEOUT", defaults.connect_timeout),
            read_timeout=_float_env(f"{prefix}READ_TIMEOUT", defaults.read_timeout),
            token_ttl_seconds=_float_env(f"{prefix}TOKEN_TTL_SECONDS", defaults.token_ttl_seconds),
            expiry_margin_seconds=_float_env(
                f"{prefix}EXPIRY_MARGIN_SECONDS", defaults.expiry_margin_seconds
            ),
            captcha_threshold=int(
                _float_env(f"{prefix}CAPTCHA_THRESHOLD", defaults.captcha_threshold)
            ),
            tgc_cookie_name=os.getenv(f"{prefix}TGC_COOKIE_NAME") or defaults.tgc_cookie_name,
            use_webvpn=_truthy(os.getenv(f"{prefix}USE_WEBVPN")),
            allow_legacy_plaintext=(
                _truthy(os.getenv(f"{prefix}ALLOW_LEGACY_PLAINTEXT"))
                if os.getenv(f"{prefix}ALLOW_LEGACY_PLAINTEXT") is not None
                else defaults.allow_legacy_plaintext
            ),
        )
        logger.debug(
            "Loaded settings: cas=%s webvpn=%s ttl=%ss margin=%ss",
            settings.cas_host,
            settings.use_webvpn,
            settings.token_ttl_seconds,
            settings.expiry_margin_seconds,
        )
        return settings
