"""Tests for the provider OAuth client against a mocked HTTP transport."""

import json
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from kvauth.config import Settings
from kvauth.service.errors import MisconfiguredError, ValidationError
from kvauth.service.oauth import (
    OAuthClient,
    OAuthExchangeError,
    ProviderEmail,
    ProviderFetchError,
    build_oauth_client,
    generate_state,
    select_verified_primary_email,
)
from kvauth.storage.models import AuthSource


def github_handler(requests, *, token_status=200, user_status=200, emails=None):
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if request.url.path == "/login/oauth/access_token":
            if token_status != 200:
                return httpx.Response(token_status, json={"error": "bad"})
            return httpx.Response(200, json={"access_token": "gho_token", "token_type": "bearer"})
        if request.url.path == "/user":
            if user_status != 200:
                return httpx.Response(user_status, text="nope")
            return httpx.Response(200, json={"id": 4242, "login": "Octo", "email": None})
        if request.url.path == "/user/emails":
            return httpx.Response(
                200,
                json=emails
                if emails is not None
                else [
                    {"email": "old@example.com", "primary": False, "verified": True},
                    {"email": "octo@example.com", "primary": True, "verified": True},
                ],
            )
        return httpx.Response(404)

    return handler


def make_client(handler, provider=AuthSource.GITHUB) -> OAuthClient:
    return OAuthClient(
        provider,
        "client-id",
        "client-secret",
        "http://localhost/cb",
        user_agent="kvauth-tests",
        transport=httpx.MockTransport(handler),
    )


class TestAuthorizationUrl:
    def test_github_url_carries_state_and_scope(self):
        client = make_client(lambda request: httpx.Response(404))

        url = urlparse(client.create_authorization_url("state-1"))
        params = parse_qs(url.query)

        assert url.netloc == "github.com"
        assert params["state"] == ["state-1"]
        assert params["client_id"] == ["client-id"]
        assert params["redirect_uri"] == ["http://localhost/cb"]
        assert params["scope"] == ["read:user user:email"]
        assert params["response_type"] == ["code"]

    def test_generate_state_is_random(self):
        assert generate_state() != generate_state()
        assert len(generate_state()) >= 32


class TestGitHubFlow:
    async def test_exchange_and_fetch(self):
        requests = []
        client = make_client(github_handler(requests))

        token = await client.exchange_code("the-code")
        profile = await client.fetch_profile(token)
        emails = await client.fetch_emails(token)

        assert token == "gho_token"
        form = parse_qs(requests[0].content.decode())
        assert form["code"] == ["the-code"]
        assert form["grant_type"] == ["authorization_code"]
        assert profile.external_id == "4242"
        assert profile.username == "Octo"
        assert profile.provider == AuthSource.GITHUB
        assert select_verified_primary_email(emails) == "octo@example.com"
        assert requests[1].headers["Authorization"] == "Bearer gho_token"
        assert requests[1].headers["User-Agent"] == "kvauth-tests"
        assert requests[1].headers["Accept"] == "application/vnd.github+json"

    async def test_rejected_code_raises_exchange_error(self):
        client = make_client(github_handler([], token_status=401))

        with pytest.raises(OAuthExchangeError) as exc_info:
            await client.exchange_code("bad")
        assert exc_info.value.status_code == 400

    async def test_error_payload_without_token_raises_exchange_error(self):
        client = make_client(
            lambda request: httpx.Response(200, json={"error": "bad_verification_code"})
        )

        with pytest.raises(OAuthExchangeError):
            await client.exchange_code("stale")

    async def test_profile_failure_raises_fetch_error(self):
        client = make_client(github_handler([], user_status=502))

        with pytest.raises(ProviderFetchError) as exc_info:
            await client.fetch_profile("gho_token")
        assert exc_info.value.status_code == 500

    async def test_transport_failure_raises_fetch_error(self):
        def handler(request):
            raise httpx.ConnectError("down", request=request)

        with pytest.raises(ProviderFetchError):
            await make_client(handler).fetch_emails("gho_token")


class TestGoogleFlow:
    async def test_email_is_username_and_verified_flag_is_honoured(self):
        def handler(request):
            return httpx.Response(
                200,
                content=json.dumps(
                    {"id": "g-1", "email": "g@example.com", "verified_email": False}
                ),
                headers={"content-type": "application/json"},
            )

        client = make_client(handler, AuthSource.GOOGLE)

        profile = await client.fetch_profile("token")
        emails = await client.fetch_emails("token")

        assert profile.username == "g@example.com"
        assert emails == [ProviderEmail("g@example.com", primary=True, verified=False)]
        assert select_verified_primary_email(emails) is None


class TestBuildOAuthClient:
    def test_missing_credentials_are_misconfigured(self):
        with pytest.raises(MisconfiguredError):
            build_oauth_client(Settings(), AuthSource.MICROSOFT)

    def test_unknown_provider_rejected(self):
        with pytest.raises(ValidationError):
            build_oauth_client(Settings(), "gitlab")

    def test_redirect_uri_substitutes_provider(self):
        settings = Settings(
            oauth_google_client_id="id",
            oauth_google_client_secret="secret",
            oauth_redirect_uri="https://auth.example.com/v1/auth/login/{provider}/callback",
        )

        client = build_oauth_client(settings, "google")

        assert client.redirect_uri == "https://auth.example.com/v1/auth/login/google/callback"
