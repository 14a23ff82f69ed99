"""Reconcile an OAuth callback with the user directory.

``IdentityLinker.link`` is an ordered list of guard clauses; the first one
that matches decides the outcome. Business-rule failures come back as a
``REJECTED`` outcome carrying a human-readable reason, never as exceptions.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Protocol, Union

from kvauth.config import Settings
from kvauth.logging import get_logger
from kvauth.service.errors import ConflictError
from kvauth.service.oauth import (
    OAuthExchangeError,
    ProviderEmail,
    ProviderFetchError,
    ProviderProfile,
    select_verified_primary_email,
)
from kvauth.service.users import UserDirectory
from kvauth.storage.models import AuthSource, User

logger = get_logger(__name__)

RESTART_LOGIN = "Please restart the login process."
RESTART_PROCESS = "Please restart the process."
PROVIDER_FETCH_FAILED = "Failed to fetch user from the identity provider."
EMAIL_FETCH_FAILED = "Failed to fetch email from the identity provider."
USERNAME_MISMATCH = "Username does not match. Please use the correct account."
ACCOUNT_DEACTIVATED = "Your account has been deactivated. Please contact the site administrator."
WRONG_AUTH_SOURCE = "Please use the correct authentication method for your account."
EMAIL_MISMATCH = (
    "Email does not match the registered email. Please contact the site administrator."
)
VERIFY_EMAIL = "Please verify your email address with the identity provider."
REGISTRATION_DISABLED = (
    "User registration is disabled. Please contact the site administrator."
)
USERNAME_TAKEN = "This username belongs to another account. Please contact the site administrator."
REGISTRATION_FAILED = "Failed to complete registration."


class OAuthProvider(Protocol):
    provider: AuthSource

    async def exchange_code(self, code: str) -> str: ...

    async def fetch_profile(self, access_token: str) -> ProviderProfile: ...

    async def fetch_emails(self, access_token: str) -> List[ProviderEmail]: ...


class LinkStatus(str, Enum):
    CREATED = "created"
    LINKED = "linked"
    RESUMED = "resumed"
    REJECTED = "rejected"


@dataclass(frozen=True)
class CallbackInput:
    stored_state: Optional[str]
    pending_username: Optional[str]
    code: Optional[str]
    state: Optional[str]


@dataclass(frozen=True)
class LinkOutcome:
    """Terminal state of one callback.

    ``fatal_status`` is set when the caller should answer with a bare HTTP
    status instead of redirecting back to the login page. The pending
    username is single-use, so every outcome clears it.
    """

    status: LinkStatus
    user: Optional[User] = None
    reason: Optional[str] = None
    fatal_status: Optional[int] = None
    clear_pending_username: bool = True

    @property
    def succeeded(self) -> bool:
        return self.status != LinkStatus.REJECTED

    @classmethod
    def rejected(cls, reason: str, fatal_status: Optional[int] = None) -> "LinkOutcome":
        return cls(status=LinkStatus.REJECTED, reason=reason, fatal_status=fatal_status)


class IdentityLinker:
    def __init__(
        self,
        users: UserDirectory,
        settings: Settings,
        *,
        registration_enabled: Optional[bool] = None,
    ) -> None:
        self.users = users
        self.registration_enabled = (
            settings.registration_enabled
            if registration_enabled is None
            else registration_enabled
        )

    def _reject(
        self,
        reason: str,
        rule: str,
        provider: Union[AuthSource, str],
        *,
        fatal_status: Optional[int] = None,
        **context,
    ) -> LinkOutcome:
        logger.warning(
            "oauth_link_rejected",
            rule=rule,
            provider=AuthSource(provider).value,
            fatal_status=fatal_status,
            **context,
        )
        return LinkOutcome.rejected(reason, fatal_status)

    async def _verified_email(
        self, oauth: OAuthProvider, access_token: str
    ) -> Union[str, LinkOutcome]:
        try:
            emails = await oauth.fetch_emails(access_token)
        except ProviderFetchError:
            return self._reject(EMAIL_FETCH_FAILED, "email_fetch_failed", oauth.provider, fatal_status=500)
        email = select_verified_primary_email(emails)
        if email is None:
            return self._reject(VERIFY_EMAIL, "no_verified_primary_email", oauth.provider, fatal_status=400)
        return email

    async def link(self, callback: CallbackInput, oauth: OAuthProvider) -> LinkOutcome:
        provider = oauth.provider
        if not (
            callback.stored_state
            and callback.code
            and callback.state
            and callback.pending_username
        ):
            return self._reject(RESTART_LOGIN, "missing_parameters", provider)
        if callback.stored_state != callback.state:
            return self._reject(RESTART_LOGIN, "state_mismatch", provider)

        try:
            access_token = await oauth.exchange_code(callback.code)
        except OAuthExchangeError:
            return self._reject(RESTART_PROCESS, "code_exchange_failed", provider, fatal_status=400)

        try:
            profile = await oauth.fetch_profile(access_token)
        except ProviderFetchError:
            return self._reject(PROVIDER_FETCH_FAILED, "profile_fetch_failed", provider, fatal_status=500)

        if profile.username.lower() != callback.pending_username.lower():
            return self._reject(
                USERNAME_MISMATCH,
                "username_mismatch",
                provider,
                expected=callback.pending_username,
                received=profile.username,
            )

        existing = await self.users.lookup_by_external_id(profile.external_id, provider)
        if existing is not None:
            if not existing.is_active:
                return self._reject(
                    ACCOUNT_DEACTIVATED, "deactivated", provider, user_id=existing.id
                )
            logger.info("oauth_link_resumed", user_id=existing.id, provider=provider.value)
            return LinkOutcome(status=LinkStatus.RESUMED, user=existing)

        candidate = await self.users.lookup_by_username(profile.username)
        if candidate is not None:
            if candidate.is_linked:
                # Bound to a different identity; never rebind silently
                return self._reject(
                    USERNAME_TAKEN, "username_taken", provider, user_id=candidate.id
                )
            return await self._link_pre_registered(candidate, profile, oauth, access_token)

        if not self.registration_enabled:
            return self._reject(
                REGISTRATION_DISABLED,
                "registration_disabled",
                provider,
                external_id=profile.external_id,
                username=profile.username,
            )

        email = await self._verified_email(oauth, access_token)
        if isinstance(email, LinkOutcome):
            return email
        try:
            user = await self.users.create_user(
                profile.external_id, email, profile.username, auth_source=provider
            )
        except ConflictError:
            return self._reject(USERNAME_TAKEN, "username_taken", provider, username=profile.username)
        logger.info("oauth_link_created", user_id=user.id, provider=provider.value)
        return LinkOutcome(status=LinkStatus.CREATED, user=user)

    async def _link_pre_registered(
        self,
        user: User,
        profile: ProviderProfile,
        oauth: OAuthProvider,
        access_token: str,
    ) -> LinkOutcome:
        provider = oauth.provider
        if not user.is_active:
            return self._reject(ACCOUNT_DEACTIVATED, "deactivated", provider, user_id=user.id)
        if user.auth_source != provider:
            return self._reject(
                WRONG_AUTH_SOURCE,
                "auth_source_mismatch",
                provider,
                user_id=user.id,
                expected=user.auth_source.value,
            )

        email = await self._verified_email(oauth, access_token)
        if isinstance(email, LinkOutcome):
            return email
        if email.lower() != user.email.lower():
            return self._reject(EMAIL_MISMATCH, "email_mismatch", provider, user_id=user.id)

        linked = await self.users.link_external_identity(
            user.id, profile.external_id, email, provider=provider
        )
        if linked is None:
            return self._reject(
                REGISTRATION_FAILED, "link_failed", provider, fatal_status=500, user_id=user.id
            )
        logger.info("oauth_link_linked", user_id=linked.id, provider=provider.value)
        return LinkOutcome(status=LinkStatus.LINKED, user=linked)
