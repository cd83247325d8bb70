"""Downstream systems reachable through the CAS, and how each carries its token."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Final, Optional
from urllib.parse import parse_qs, urlsplit

from campus_sso.services.legacy_cas import LegacyCasAuthenticator
from campus_sso.services.strategies import (
    CookieTokenStrategy,
    EmbeddedJwtStrategy,
    JwtTicketStrategy,
    QueryParamTokenStrategy,
    StatelessStrategy,
    TokenExtractionStrategy,
)
from campus_sso.utils.environment import SsoSettings

StrategyFactory = Callable[[SsoSettings], TokenExtractionStrategy]


@dataclass(frozen=True)
class ServiceProfile:
    """Static description of one downstream system.

    ``header_template`` is formatted with ``token=`` to build the value of
    ``header_name``; services without a header rely on cookies alone.
    """

    name: str
    login_url: str
    strategy_factory: StrategyFactory
    service_url: Optional[str] = None
    header_name: Optional[str] = None
    header_template: str = "{token}"
    token_ttl_seconds: Optional[float] = None
    webvpn_login_url: Optional[str] = None

    def resolve_login_url(self, settings: SsoSettings) -> str:
        if settings.use_webvpn and self.webvpn_login_url:
            return self.webvpn_login_url
        return self.login_url

    def resolve_service_url(self, settings: SsoSettings) -> str:
        """CAS ``service`` to re-authenticate against.

        Defaults to the ``service`` parameter of a CAS login URL, otherwise
        the login URL itself.
        """
        if self.service_url:
            return self.service_url
        login_url = self.resolve_login_url(settings)
        parts = urlsplit(login_url)
        if parts.hostname == settings.cas_host:
            service = parse_qs(parts.query).get("service")
            if service:
                return service[0]
        return login_url

    def build_strategy(self, settings: SsoSettings) -> TokenExtractionStrategy:
        return self.strategy_factory(settings)

    def auth_headers(self, token: Optional[str]) -> dict[str, str]:
        if not self.header_name:
            return {}
        return {self.header_name: self.header_template.format(token=token or "")}


JWAPP_URL: Final[str] = (
    "https://org.xjtu.edu.cn/openplatform/oauth/authorize?appId=1370"
    "&redirectUri=http://jwapp.xjtu.edu.cn/app/index&responseType=code&scope=user_info&state=1234"
)
ATTENDANCE_URL: Final[str] = (
    "http://org.xjtu.edu.cn/openplatform/oauth/authorize?appId=1372"
    "&redirectUri=http://bkkq.xjtu.edu.cn/berserker-auth/auth/attendance-pc/casReturn"
    "&responseType=code&scope=user_info&state=1234"
)
ATTENDANCE_WEBVPN_URL: Final[str] = "http://bkkq.xjtu.edu.cn"
YWTB_LOGIN_URL: Final[str] = (
    "https://login.xjtu.edu.cn/cas/login?service=https%3A%2F%2Fywtb.xjtu.edu.cn%2F%3Fpath%3D"
    "https%253A%252F%252Fywtb.xjtu.edu.cn%252Fmain.html%2523%252FIndex"
)
LIBRARY_SEAT_URL: Final[str] = "http://rg.lib.xjtu.edu.cn:8086/seat/"
CARD_BASE_URL: Final[str] = "http://card.xjtu.edu.cn"
CARD_SERVICE_URL: Final[str] = f"{CARD_BASE_URL}/Category/ContechFirstPage"
PAYMENT_ENTRY_URL: Final[str] = "https://pay.xjtu.edu.cn/ThirdWeb/CasQrcode"
JWXT_URL: Final[str] = "https://jwxt.xjtu.edu.cn/jwapp/sys/homeapp/index.do"
GMIS_URL: Final[str] = (
    "https://org.xjtu.edu.cn/openplatform/oauth/authorize?appId=1036&state=abcd1234"
    "&redirectUri=http://gmis.xjtu.edu.cn/pyxx/sso/login&responseType=code&scope=user_info"
)


def _campus_card_strategy(settings: SsoSettings) -> TokenExtractionStrategy:
    return CookieTokenStrategy(
        cookie_name="hallticket",
        cookie_host="card.xjtu.edu.cn",
        probe_url=f"{CARD_BASE_URL}/Page/Page",
        legacy=LegacyCasAuthenticator(CARD_SERVICE_URL, settings=settings),
    )


PROFILES: Final[dict[str, ServiceProfile]] = {
    profile.name: profile
    for profile in (
        ServiceProfile(
            name="jwapp",
            login_url=JWAPP_URL,
            strategy_factory=lambda _settings: QueryParamTokenStrategy(),
            header_name="Authorization",
        ),
        ServiceProfile(
            name="attendance",
            login_url=ATTENDANCE_URL,
            webvpn_login_url=ATTENDANCE_WEBVPN_URL,
            strategy_factory=lambda _settings: QueryParamTokenStrategy(),
            header_name="Synjones-Auth",
            header_template="bearer {token}",
        ),
        ServiceProfile(
            name="ywtb",
            login_url=YWTB_LOGIN_URL,
            strategy_factory=lambda _settings: JwtTicketStrategy(),
            header_name="x-id-token",
        ),
        ServiceProfile(
            name="library",
            login_url=LIBRARY_SEAT_URL,
            strategy_factory=lambda _settings: StatelessStrategy(),
        ),
        ServiceProfile(
            name="campus_card",
            login_url=CARD_SERVICE_URL,
            service_url=CARD_SERVICE_URL,
            strategy_factory=_campus_card_strategy,
        ),
        ServiceProfile(
            name="payment",
            login_url=PAYMENT_ENTRY_URL,
            strategy_factory=lambda _settings: EmbeddedJwtStrategy(),
            header_name="Authorization",
            token_ttl_seconds=1800.0,
        ),
        ServiceProfile(
            name="jwxt",
            login_url=JWXT_URL,
            strategy_factory=lambda _settings: StatelessStrategy(),
        ),
        ServiceProfile(
            name="gmis",
            login_url=GMIS_URL,
            strategy_factory=lambda _settings: StatelessStrategy(),
        ),
    )
}


def get_profile(name: str) -> ServiceProfile:
    try:
        return PROFILES[name]
    except KeyError:
        raise ValueError(f"unknown service {name!r}; known: {', '.join(sorted(PROFILES))}") from None
