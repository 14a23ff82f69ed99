from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Union
from urllib.parse import urlencode

import httpx

from kvauth.config import Settings
from kvauth.logging import get_logger
from kvauth.service.errors import MisconfiguredError, UpstreamError, ValidationError
from kvauth.storage.models import AuthSource

logger = get_logger(__name__)


@dataclass(frozen=True)
class ProviderConfig:
    auth_url: str
    token_url: str
    userinfo_url: str
    scope: str
    emails_url: Optional[str] = None


OAUTH_PROVIDERS: Dict[AuthSource, ProviderConfig] = {
    AuthSource.GITHUB: ProviderConfig(
        auth_url="https://github.com/login/oauth/authorize",
        token_url="https://github.com/login/oauth/access_token",
        userinfo_url="https://api.github.com/user",
        emails_url="https://api.github.com/user/emails",
        scope="read:user user:email",
    ),
    AuthSource.GOOGLE: ProviderConfig(
        auth_url="https://accounts.google.com/o/oauth2/v2/auth",
        token_url="https://oauth2.googleapis.com/token",
        userinfo_url="https://www.googleapis.com/oauth2/v2/userinfo",
        scope="openid email profile",
    ),
    AuthSource.MICROSOFT: ProviderConfig(
        auth_url="https://login.microsoftonline.com/common/oauth2/v2.0/authorize",
        token_url="https://login.microsoftonline.com/common/oauth2/v2.0/token",
        userinfo_url="https://graph.microsoft.com/v1.0/me",
        scope="openid email profile User.Read",
    ),
}


class OAuthExchangeError(UpstreamError):
    """The provider rejected the authorization code (400)."""

    status_code = 400
    error_code = "oauth_exchange_failed"


class ProviderFetchError(UpstreamError):
    """Profile or email lookup against the provider API failed (500)."""

    status_code = 500
    error_code = "provider_fetch_failed"


@dataclass(frozen=True)
class ProviderProfile:
    """Identity as reported by the provider.

    ``username`` is what a user types to start a login: the GitHub login, or
    the account email for Google and Microsoft.
    """

    provider: AuthSource
    external_id: str
    username: str
    email: Optional[str] = None


@dataclass(frozen=True)
class ProviderEmail:
    email: str
    primary: bool = False
    verified: bool = False


def select_verified_primary_email(emails: Iterable[ProviderEmail]) -> Optional[str]:
    for record in emails:
        if record.primary and record.verified and record.email:
            return record.email
    return None


def generate_state() -> str:
    """CSRF state for the authorization redirect."""
    return secrets.token_urlsafe(32)


class OAuthClient:
    """Authorization-code flow against a single provider.

    No retries: every upstream failure is raised to the caller as an
    ``UpstreamError`` subclass.
    """

    def __init__(
        self,
        provider: Union[AuthSource, str],
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        *,
        user_agent: str = "kvauth",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.provider = AuthSource(provider)
        self.config = OAUTH_PROVIDERS[self.provider]
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.user_agent = user_agent
        self.timeout = timeout
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout, follow_redirects=False, transport=self.transport
        )

    def _api_headers(self, access_token: str) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {access_token}",
            "User-Agent": self.user_agent,
            "Accept": "application/json",
        }
        # GitHub requires a special header
        if self.provider == AuthSource.GITHUB:
            headers["Accept"] = "application/vnd.github+json"
        return headers

    def create_authorization_url(self, state: str) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": self.config.scope,
            "state": state,
        }
        if self.provider == AuthSource.GOOGLE:
            params["prompt"] = "select_account"
        return f"{self.config.auth_url}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> str:
        """Trade an authorization code for an access token."""
        data = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "code": code,
            "redirect_uri": self.redirect_uri,
            "grant_type": "authorization_code",
        }
        headers = {"Accept": "application/json", "User-Agent": self.user_agent}
        try:
            async with self._client() as client:
                response = await client.post(self.config.token_url, data=data, headers=headers)
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "oauth_exchange_http_error",
                provider=self.provider.value,
                status_code=exc.response.status_code,
            )
            raise OAuthExchangeError("authorization code exchange failed") from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("oauth_exchange_error", provider=self.provider.value, error=str(exc))
            raise OAuthExchangeError("authorization code exchange failed") from exc

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not access_token:
            # GitHub reports bad codes as 200 with an "error" field
            logger.error(
                "oauth_no_access_token",
                provider=self.provider.value,
                error=payload.get("error") if isinstance(payload, dict) else None,
            )
            raise OAuthExchangeError("authorization code exchange failed")
        return access_token

    async def _get_json(self, url: str, access_token: str, what: str) -> Any:
        try:
            async with self._client() as client:
                response = await client.get(url, headers=self._api_headers(access_token))
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as exc:
            logger.error(
                f"oauth_{what}_http_error",
                provider=self.provider.value,
                status_code=exc.response.status_code,
            )
            raise ProviderFetchError(
                f"failed to fetch {what} from {self.provider.value}"
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.error(f"oauth_{what}_error", provider=self.provider.value, error=str(exc))
            raise ProviderFetchError(
                f"failed to fetch {what} from {self.provider.value}"
            ) from exc

    async def _userinfo(self, access_token: str) -> Dict[str, Any]:
        userinfo = await self._get_json(self.config.userinfo_url, access_token, "user")
        if not isinstance(userinfo, dict):
            logger.error("oauth_userinfo_invalid_format", provider=self.provider.value)
            raise ProviderFetchError(f"unexpected user payload from {self.provider.value}")
        return userinfo

    def _parse_profile(self, userinfo: Dict[str, Any]) -> ProviderProfile:
        """Map provider user info onto a ProviderProfile."""
        if self.provider == AuthSource.GITHUB:
            external_id, username = userinfo.get("id"), userinfo.get("login")
            email = userinfo.get("email")
        elif self.provider == AuthSource.GOOGLE:
            external_id, username = userinfo.get("id"), userinfo.get("email")
            email = userinfo.get("email")
        else:
            external_id = userinfo.get("id")
            username = userinfo.get("userPrincipalName") or userinfo.get("mail")
            email = userinfo.get("mail") or userinfo.get("userPrincipalName")
        if external_id is None or external_id == "" or not username:
            logger.error("oauth_identity_incomplete", provider=self.provider.value)
            raise ProviderFetchError(f"incomplete identity from {self.provider.value}")
        return ProviderProfile(
            provider=self.provider,
            external_id=str(external_id),
            username=str(username),
            email=email,
        )

    async def fetch_profile(self, access_token: str) -> ProviderProfile:
        profile = self._parse_profile(await self._userinfo(access_token))
        logger.info(
            "oauth_profile_fetched",
            provider=self.provider.value,
            external_id=profile.external_id,
            username=profile.username,
        )
        return profile

    async def fetch_emails(self, access_token: str) -> List[ProviderEmail]:
        if self.config.emails_url:
            records = await self._get_json(self.config.emails_url, access_token, "emails")
            if not isinstance(records, list):
                raise ProviderFetchError(f"unexpected email payload from {self.provider.value}")
            return [
                ProviderEmail(
                    email=str(record.get("email") or ""),
                    primary=bool(record.get("primary")),
                    verified=bool(record.get("verified")),
                )
                for record in records
                if isinstance(record, dict)
            ]

        userinfo = await self._userinfo(access_token)
        if self.provider == AuthSource.GOOGLE:
            email = userinfo.get("email")
            verified = bool(userinfo.get("verified_email"))
        else:
            # Directory-managed Microsoft accounts carry no separate verified flag
            email = userinfo.get("mail") or userinfo.get("userPrincipalName")
            verified = True
        if not email:
            return []
        return [ProviderEmail(email=email, primary=True, verified=verified)]


def build_oauth_client(
    settings: Settings,
    provider: Union[AuthSource, str],
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> OAuthClient:
    try:
        source = AuthSource(provider)
    except ValueError as exc:
        raise ValidationError(
            f"Unsupported OAuth provider: {provider}", detail={"provider": str(provider)}
        ) from exc
    client_id, client_secret = settings.oauth_credentials(source)
    if not client_id or not client_secret:
        logger.warning("oauth_not_configured", provider=source.value)
        raise MisconfiguredError(
            f"OAuth provider {source.value} is not configured",
            detail={"provider": source.value},
        )
    return OAuthClient(
        source,
        client_id,
        client_secret,
        settings.oauth_redirect_uri.replace("{provider}", source.value),
        user_agent=settings.oauth_user_agent,
        transport=transport,
    )
