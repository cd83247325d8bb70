"""HTTP plumbing: session factory, default timeouts, error mapping.

Every outbound call of the CAS core goes through :func:`send`, which turns
``requests`` transport exceptions into :class:`~campus_sso.cas.errors.NetworkFailure`
naming the failing host and path.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any
from urllib.parse import urlparse

import requests

from campus_sso.cas.errors import NetworkFailure

if TYPE_CHECKING:  # pragma: no cover
    from campus_sso.utils.environment import SsoSettings

_LOG = logging.getLogger("campus-sso.utils.http")

BROWSER_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36"
    ),
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "zh-CN,zh;q=0.9,en;q=0.8",
    "Connection": "keep-alive",
}


class CasSession(requests.Session):
    """``requests.Session`` with browser headers and a default timeout.

    The cookie jar (``http.cookiejar`` underneath) guards its state with an
    internal lock, so one session may be shared by concurrent callers.
    """

    def __init__(self, timeout: tuple[float, float] = (30.0, 30.0)) -> None:
        super().__init__()
        self.headers.update(BROWSER_HEADERS)
        self.default_timeout = timeout

    def request(self, method: str, url: str, *args: Any, **kwargs: Any) -> requests.Response:  # type: ignore[override]
        kwargs.setdefault("timeout", self.default_timeout)
        return super().request(method, url, *args, **kwargs)


def build_session(settings: "SsoSettings") -> requests.Session:
    """Return a fresh session honouring *settings* (timeouts, WebVPN routing)."""
    if settings.use_webvpn:
        from campus_sso.utils.webvpn import WebVpnSession  # noqa: WPS433

        return WebVpnSession(timeout=settings.timeout, bypass_hosts=(settings.cas_host,))
    return CasSession(timeout=settings.timeout)


def endpoint_of(url: str) -> str:
    """``host/path`` of *url*, for diagnostics (query strings may hold tickets)."""
    parsed = urlparse(url)
    return f"{parsed.hostname or ''}{parsed.path or '/'}"


def send(session: requests.Session, method: str, url: str, **kwargs: Any) -> requests.Response:
    """Issue one request, mapping transport errors to ``NetworkFailure``."""
    kwargs.setdefault("allow_redirects", True)
    try:
        response = session.request(method, url, **kwargs)
    except requests.RequestException as exc:
        endpoint = endpoint_of(url)
        _LOG.warning("%s %s failed: %s", method, endpoint, exc.__class__.__name__)
        raise NetworkFailure(f"{method} {endpoint} failed: {exc}", endpoint=endpoint) from exc
    _LOG.debug(
        "%s %s -> %s (final %s)",
        method,
        endpoint_of(url),
        response.status_code,
        endpoint_of(response.url or url),
    )
    return response
