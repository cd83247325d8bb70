"""Structured logging helpers for the CAS client.

Only a fixed set of *non-sensitive* context fields is ever attached to log
records:

- ``service``     – downstream system name (``jwapp``, ``ywtb``…)
- ``username``    – first three characters only
- ``visitor_id``  – first eight characters of the device fingerprint
- ``correlation_id`` – free-form id wired by callers, if any

Passwords, RSA ciphertext, tickets and tokens must never be passed here.

Usage
-----
>>> from campus_sso.cas.log_utils import get_auth_logger
>>> log = get_auth_logger(base_logger_name="campus-sso.cas.login", service="jwapp")
>>> log.info("Login page fetched")
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, MutableMapping

_TRUNCATE = {"username": 3, "visitor_id": 8}


class _AuthLoggerAdapter(logging.LoggerAdapter):
    """Inject whitelisted auth context into log records."""

    extra_keys = ("service", "username", "visitor_id", "correlation_id")

    def __init__(self, logger: logging.Logger, extra: Mapping[str, Any] | None = None):
        extra_clean: MutableMapping[str, Any] = {}
        for k in self.extra_keys:
            if not extra or extra.get(k) is None:
                continue
            value = str(extra[k])
            if k in _TRUNCATE:
                value = value[: _TRUNCATE[k]] + "***"
            extra_clean[k] = value
        super().__init__(logger, extra_clean)

    def process(self, msg: str, kwargs: MutableMapping[str, Any]):
        if "extra" not in kwargs or kwargs["extra"] is None:
            kwargs["extra"] = {}
        for k, v in self.extra.items():
            kwargs["extra"].setdefault(k, v)
        if self.extra.get("service"):
            msg = f"[{self.extra['service']}] {msg}"
        return msg, kwargs


def get_auth_logger(
    *,
    base_logger_name: str = "campus-sso.cas",
    service: str | None = None,
    username: str | None = None,
    visitor_id: str | None = None,
    correlation_id: str | None = None,
) -> logging.LoggerAdapter:
    """Return a LoggerAdapter pre-filled with auth context."""
    logger = logging.getLogger(base_logger_name)
    return _AuthLoggerAdapter(
        logger,
        {
            "service": service,
            "username": username,
            "visitor_id": visitor_id,
            "correlation_id": correlation_id,
        },
    )
