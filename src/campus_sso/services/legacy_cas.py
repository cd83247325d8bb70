"""Login against the older, independent CAS at ``cas.xjtu.edu.cn``.

The campus card system still trusts this server rather than
``login.xjtu.edu.cn``.  Its form is the classic Jasig one: ``lt`` and/or
``execution`` hidden fields and a *plaintext* password, so it is only used
when ``SsoSettings.allow_legacy_plaintext`` is set.
"""

from __future__ import annotations

import logging
from urllib.parse import urlencode, urlparse

import requests

from campus_sso.cas import forms
from campus_sso.cas.errors import NetworkFailure
from campus_sso.cas.models import Credential
from campus_sso.utils.environment import SsoSettings
from campus_sso.utils.http import endpoint_of, send

_LOG = logging.getLogger("campus-sso.services.legacy_cas")

_RESERVED_FIELDS = frozenset({"username", "password", "_eventId"})


class LegacyCasAuthenticator:
    """Obtain a legacy-CAS ticket for *service_url* using stored credentials."""

    def __init__(self, service_url: str, *, settings: SsoSettings | None = None) -> None:
        self.service_url = service_url
        self.settings = settings or SsoSettings()

    @property
    def login_url(self) -> str:
        base = self.settings.legacy_cas_base_url.rstrip("/")
        return f"{base}/login?{urlencode({'service': self.service_url})}"

    def authenticate(self, session: requests.Session, credential: Credential) -> bool:
        """Return ``True`` when the legacy CAS accepted the credentials (or needed none)."""
        if not self.settings.allow_legacy_plaintext:
            _LOG.warning("Legacy CAS login skipped: plaintext password transport disabled")
            return False

        page = send(session, "GET", self.login_url)
        execution = forms.extract_csrf_token(page.text)
        hidden = forms.extract_hidden_fields(page.text)
        lt = hidden.get("lt")
        if not execution and not lt:
            if _host(page.url) != _host(self.login_url):
                _LOG.debug("Legacy CAS redirected straight to the service")
                return True
            _LOG.warning("Legacy CAS page has neither lt nor execution (title=%r)", forms.extract_title(page.text))
            return False

        form = {k: v for k, v in hidden.items() if k not in _RESERVED_FIELDS}
        form.update(
            {
                "username": credential.username,
                "password": credential.password,
                "_eventId": "submit",
            }
        )
        if execution:
            form["execution"] = execution
        post_url = page.url or self.login_url
        posted = send(session, "POST", post_url, data=form)
        if posted.status_code >= 400 and posted.status_code != 401:
            raise NetworkFailure(
                f"legacy CAS returned {posted.status_code}",
                endpoint=endpoint_of(post_url),
                status_code=posted.status_code,
            )
        rejected = (
            posted.status_code == 401
            or forms.extract_error_banner(posted.text) is not None
            or forms.extract_csrf_token(posted.text) is not None
        )
        if rejected:
            _LOG.warning("Legacy CAS rejected the stored credentials")
            return False
        _LOG.info("Legacy CAS login succeeded for %s", endpoint_of(self.service_url))
        return True


def _host(url: str | None) -> str:
    return urlparse(url or "").hostname or ""
