"""Live smoke tests against the real CAS server.

These tests are *opt-in* and will only run when:
1. pytest is invoked with ``--live``, **and**
2. ``CAMPUS_SSO_LIVE_USERNAME`` and ``CAMPUS_SSO_LIVE_PASSWORD`` are set.

Accounts with phone MFA enabled are skipped; nothing is written server-side.
"""

from __future__ import annotations

import os

import pytest

from campus_sso.cas.models import LoginState
from campus_sso.services.context import SsoContext
from campus_sso.utils.environment import SsoSettings

pytestmark = pytest.mark.live


@pytest.fixture()
def credentials() -> tuple[str, str]:
    username = os.getenv("CAMPUS_SSO_LIVE_USERNAME")
    password = os.getenv("CAMPUS_SSO_LIVE_PASSWORD")
    if not username or not password:
        pytest.skip("CAMPUS_SSO_LIVE_USERNAME / CAMPUS_SSO_LIVE_PASSWORD not set")
    return username, password


def test_login_then_silent_sso(credentials) -> None:
    """Log into jwapp, then reach ywtb through the shared ticket-granting cookie."""
    with SsoContext(SsoSettings.from_env()) as ctx:
        jwapp = ctx.adapter("jwapp")
        outcome = jwapp.login(*credentials)
        if outcome.state is LoginState.REQUIRE_MFA:
            pytest.skip("account requires phone MFA")
        if outcome.state is LoginState.REQUIRE_ACCOUNT_CHOICE:
            outcome = jwapp.finish_account_choice()
        assert outcome.state is LoginState.SUCCESS, outcome.message
        assert jwapp.is_token_valid()

        ywtb = ctx.adapter("ywtb")
        assert ywtb.machine.authenticated
        assert ywtb.token.value
