"""Re-authentication of one service adapter.

Two steps, the second only when the first fails:

1. **Silent SSO**: GET the service login URL with the existing cookie jar.
   If the redirect chain ends without a CAS login form and the strategy
   extracts a token, done.
2. **Full resubmission**: :meth:`LoginStateMachine.cas_authenticate` reposts
   the stored credentials for the service URL, then the strategy is run once
   more on the result.

Calls are serialized by a per-manager ``threading.Lock``.  Each completed
attempt bumps :attr:`ReauthManager.generation`; a caller that passes the
generation it observed before its request failed gets the outcome of the
attempt that completed while it waited instead of starting another one.
"""

from __future__ import annotations

import logging
import threading
from typing import Optional

from campus_sso.cas import forms
from campus_sso.cas.clock import Clock, default_clock
from campus_sso.cas.errors import TokenExtractionFailed
from campus_sso.cas.login import LoginStateMachine
from campus_sso.cas.models import ServiceToken, TokenGrant
from campus_sso.services.strategies import TokenExtractionStrategy
from campus_sso.utils.http import endpoint_of, send

_LOG = logging.getLogger("campus-sso.services.reauth")


class ReauthManager:
    """Single-flight re-login for one adapter."""

    def __init__(
        self,
        *,
        machine: LoginStateMachine,
        strategy: TokenExtractionStrategy,
        token: ServiceToken,
        login_url: str,
        service_url: str,
        clock: Clock = default_clock,
        logger: Optional[logging.LoggerAdapter] = None,
    ) -> None:
        self.machine = machine
        self.strategy = strategy
        self.token = token
        self.login_url = login_url
        self.service_url = service_url
        self.clock = clock
        self._log = logger or logging.LoggerAdapter(_LOG, {})
        self._lock = threading.Lock()
        self._generation = 0
        self._last_result = False

    @property
    def generation(self) -> int:
        """Number of completed re-authentication attempts."""
        return self._generation

    def reauthenticate(self, observed_generation: int | None = None) -> bool:
        """Re-login; returns whether a fresh session/token was obtained.

        ``SessionExpired`` (no stored credentials) and ``NetworkFailure``
        propagate to the caller.
        """
        with self._lock:
            # Another thread may have re-authenticated while we waited.
            if observed_generation is not None and observed_generation != self._generation:
                self._log.debug(
                    "Reusing re-auth outcome of generation %d (%s)",
                    self._generation,
                    self._last_result,
                )
                return self._last_result

            ok = self._silent_sso() or self._full_relogin()
            self._generation += 1
            self._last_result = ok
            if ok:
                self.machine.mark_authenticated()
                self._log.info("Re-authentication succeeded")
            else:
                self._log.warning("Re-authentication failed")
            return ok

    # ---------------- internal helpers --------------------------------- #
    def _store(self, grant: TokenGrant | None) -> None:
        if grant is not None:
            self.token.update(grant, clock=self.clock)

    def _silent_sso(self) -> bool:
        response = send(self.machine.session, "GET", self.login_url)
        if forms.extract_csrf_token(response.text) is not None:
            self._log.info("Silent SSO hit a login form at %s", endpoint_of(response.url))
            return False
        try:
            self._store(self.strategy.extract(self.machine, response))
        except TokenExtractionFailed as exc:
            self._log.info("Silent SSO extraction failed: %s", exc)
            return False
        return True

    def _full_relogin(self) -> bool:
        result = self.machine.cas_authenticate(self.service_url)
        if not result.authenticated:
            return False
        try:
            self._store(self.strategy.extract(self.machine, result.response))
        except TokenExtractionFailed as exc:
            self._log.warning("Extraction after credential repost failed: %s", exc)
            return False
        return True
