"""cas_login.py

Developer helper: sign into one downstream service through the CAS and
report the resulting state, walking through CAPTCHA, phone MFA and account
choice prompts interactively.

Key features
------------
* Password read with ``getpass`` (or ``CAMPUS_SSO_PASSWORD``), never echoed
* CAPTCHA image written to a file for manual reading
* Optional ``KEY=VALUE`` env file for ``CAMPUS_SSO_*`` settings
* Prints **masked** token values only
* Signs into the WebVPN gateway first when ``CAMPUS_SSO_USE_WEBVPN`` is set

Example
-------
    python scripts/cas_login.py --service jwapp --username 2231000001
"""
from __future__ import annotations

import argparse
import getpass
import json
import logging
import os
import sys
from pathlib import Path

from campus_sso.cas.errors import CasError
from campus_sso.cas.models import LoginState
from campus_sso.services.catalog import PROFILES
from campus_sso.services.context import SsoContext
from campus_sso.utils.environment import SsoSettings
from campus_sso.utils.logging import mask_sensitive

DEFAULT_ENV_FILE = Path("scripts/.env.cas-login")
CAPTCHA_PATH = Path("captcha.jpg")
MAX_STEPS = 6


# --------------------------------------------------------------------------- #
# Environment helpers
# --------------------------------------------------------------------------- #
def _load_env_file(env_path: Path | None) -> None:
    """Load KEY=VALUE pairs from a .env style file into *os.environ*."""
    if env_path is None or not env_path.exists():
        return

    for raw in env_path.read_text(encoding="utf-8").splitlines():
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, val = line.split("=", 1)
        key = key.strip()
        if key and key not in os.environ:
            os.environ[key] = val.strip()


def main() -> None:
    parser = argparse.ArgumentParser(description="Sign into a campus service through CAS.")
    parser.add_argument("--service", default="jwapp", choices=sorted(PROFILES), help="Target service")
    parser.add_argument("--username", default=os.getenv("CAMPUS_SSO_USERNAME"), help="CAS username")
    parser.add_argument(
        "--account",
        default="研究",
        help="Identity to pick when the credential maps to several (label or name fragment)",
    )
    parser.add_argument("--env-file", type=Path, help=f"Settings env file (default: {DEFAULT_ENV_FILE})")
    parser.add_argument("--no-trust", action="store_true", help="Do not trust this device after MFA")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    env_file = args.env_file or (DEFAULT_ENV_FILE if DEFAULT_ENV_FILE.exists() else None)
    _load_env_file(env_file)

    if not args.username:
        parser.error("--username (or CAMPUS_SSO_USERNAME) is required")
    password = os.getenv("CAMPUS_SSO_PASSWORD") or getpass.getpass("CAS password: ")

    settings = SsoSettings.from_env()
    with SsoContext(settings) as ctx:
        try:
            if settings.use_webvpn:
                vpn = ctx.login_webvpn(args.username, password, trust_agent=not args.no_trust)
                if not vpn.ok:
                    sys.exit(f"WebVPN login did not complete: {vpn.state.value} ({vpn.message})")
            adapter = ctx.adapter(args.service)
            outcome = adapter.login(args.username, password, trust_agent=not args.no_trust)
            for _ in range(MAX_STEPS):
                if outcome.state is LoginState.REQUIRE_CAPTCHA:
                    CAPTCHA_PATH.write_bytes(adapter.machine.get_captcha_image())
                    answer = input(f"CAPTCHA saved to {CAPTCHA_PATH}; enter it: ").strip()
                    outcome = adapter.login(captcha=answer, trust_agent=not args.no_trust)
                elif outcome.state is LoginState.REQUIRE_MFA:
                    phone = outcome.mfa.send_code()
                    outcome.mfa.verify_code(input(f"Code sent to {phone}; enter it: ").strip())
                    outcome = adapter.login(trust_agent=not args.no_trust)
                elif outcome.state is LoginState.REQUIRE_ACCOUNT_CHOICE:
                    outcome = adapter.finish_account_choice(args.account, trust_agent=not args.no_trust)
                elif outcome.state is LoginState.FAIL:
                    sys.exit(f"Login failed: {outcome.message}")
                else:
                    break
        except CasError as exc:
            sys.exit(json.dumps(exc.to_payload(), ensure_ascii=False))

        if not outcome.ok:
            sys.exit(f"Login did not complete: {outcome.state.value}")

        report = {
            "service": adapter.name,
            "state": adapter.machine.state.value,
            "token_kind": adapter.token.kind.value,
            "token": mask_sensitive(adapter.token.value, 6) if adapter.token.value else None,
            "expires_at": adapter.token.expires_at,
            "token_valid": adapter.is_token_valid(),
            "webvpn": ctx.webvpn_authenticated if settings.use_webvpn else None,
        }
        print(json.dumps(report, indent=2, ensure_ascii=False))


if __name__ == "__main__":
    main()
