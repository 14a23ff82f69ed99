"""Tests for the OAuth callback decision table."""

from dataclasses import dataclass, field
from typing import List, Optional

import pytest

from kvauth.service import linking
from kvauth.service.linking import CallbackInput, IdentityLinker, LinkStatus
from kvauth.service.oauth import (
    OAuthExchangeError,
    ProviderEmail,
    ProviderFetchError,
    ProviderProfile,
)
from kvauth.storage.models import AuthSource


@dataclass
class FakeProvider:
    """Scripted identity provider."""

    provider: AuthSource = AuthSource.GITHUB
    external_id: str = "1001"
    username: str = "alice"
    emails: List[ProviderEmail] = field(
        default_factory=lambda: [ProviderEmail("a@example.com", primary=True, verified=True)]
    )
    fail_exchange: bool = False
    fail_profile: bool = False
    fail_emails: bool = False
    calls: List[str] = field(default_factory=list)

    async def exchange_code(self, code: str) -> str:
        self.calls.append("exchange")
        if self.fail_exchange:
            raise OAuthExchangeError("bad code")
        return "access-token"

    async def fetch_profile(self, access_token: str) -> ProviderProfile:
        self.calls.append("profile")
        if self.fail_profile:
            raise ProviderFetchError("boom")
        return ProviderProfile(self.provider, self.external_id, self.username)

    async def fetch_emails(self, access_token: str) -> List[ProviderEmail]:
        self.calls.append("emails")
        if self.fail_emails:
            raise ProviderFetchError("boom")
        return self.emails


def callback(pending: Optional[str] = "alice", stored: Optional[str] = "abc", state: Optional[str] = "abc", code: Optional[str] = "code"):
    return CallbackInput(stored_state=stored, pending_username=pending, code=code, state=state)


@pytest.fixture
def linker(directory, settings):
    return IdentityLinker(directory, settings)


class TestGuards:
    @pytest.mark.parametrize(
        "kwargs",
        [
            {"stored": None},
            {"state": None},
            {"code": None},
            {"pending": None},
        ],
    )
    async def test_missing_parameters_restart_login(self, linker, kwargs):
        provider = FakeProvider()

        outcome = await linker.link(callback(**kwargs), provider)

        assert outcome.status == LinkStatus.REJECTED
        assert outcome.reason == linking.RESTART_LOGIN
        assert outcome.fatal_status is None
        assert provider.calls == []

    async def test_state_mismatch_restarts_login(self, linker):
        provider = FakeProvider()

        outcome = await linker.link(callback(state="xyz"), provider)

        assert outcome.reason == linking.RESTART_LOGIN
        assert provider.calls == []

    async def test_code_exchange_failure_is_fatal_400(self, linker):
        outcome = await linker.link(callback(), FakeProvider(fail_exchange=True))

        assert outcome.status == LinkStatus.REJECTED
        assert outcome.fatal_status == 400

    async def test_profile_failure_is_fatal_500(self, linker):
        outcome = await linker.link(callback(), FakeProvider(fail_profile=True))

        assert outcome.fatal_status == 500

    async def test_username_mismatch_creates_nothing(self, linker, directory):
        outcome = await linker.link(callback(pending="bob"), FakeProvider(username="carol"))

        assert outcome.status == LinkStatus.REJECTED
        assert outcome.reason == linking.USERNAME_MISMATCH
        assert outcome.clear_pending_username is True
        assert await directory.list_all() == []

    async def test_username_comparison_ignores_case(self, linker):
        outcome = await linker.link(callback(pending="alice"), FakeProvider(username="Alice"))

        assert outcome.status == LinkStatus.CREATED
        assert outcome.user.username == "Alice"


class TestNewUser:
    async def test_created_when_registration_allowed(self, linker, directory):
        outcome = await linker.link(callback(), FakeProvider())

        assert outcome.status == LinkStatus.CREATED
        assert outcome.succeeded
        user = outcome.user
        assert user.auth_source == AuthSource.GITHUB
        assert user.is_active is True
        assert user.email == "a@example.com"
        assert user.external_id == "1001"
        assert (await directory.lookup_by_external_id("1001")).id == user.id

    async def test_registration_disabled(self, directory, settings):
        linker = IdentityLinker(directory, settings, registration_enabled=False)

        outcome = await linker.link(callback(), FakeProvider())

        assert outcome.reason == linking.REGISTRATION_DISABLED
        assert outcome.fatal_status is None
        assert await directory.list_all() == []

    async def test_production_closes_registration_by_default(self, directory, settings):
        prod = settings.model_copy(update={"production": True})

        outcome = await IdentityLinker(directory, prod).link(callback(), FakeProvider())

        assert outcome.reason == linking.REGISTRATION_DISABLED

    async def test_no_verified_primary_email(self, linker, directory):
        provider = FakeProvider(
            emails=[
                ProviderEmail("a@example.com", primary=True, verified=False),
                ProviderEmail("b@example.com", primary=False, verified=True),
            ]
        )

        outcome = await linker.link(callback(), provider)

        assert outcome.reason == linking.VERIFY_EMAIL
        assert outcome.fatal_status == 400
        assert await directory.list_all() == []

    async def test_email_fetch_failure_is_fatal(self, linker):
        outcome = await linker.link(callback(), FakeProvider(fail_emails=True))

        assert outcome.fatal_status == 500


class TestExistingUser:
    async def test_resumed_without_profile_mutation(self, linker, directory):
        user = await directory.create_user("1001", "a@example.com", "alice")

        provider = FakeProvider()
        outcome = await linker.link(callback(), provider)

        assert outcome.status == LinkStatus.RESUMED
        assert outcome.user.id == user.id
        assert outcome.user.updated_at == user.updated_at
        assert "emails" not in provider.calls

    async def test_deactivated_user_rejected(self, linker, directory):
        user = await directory.create_user("1001", "a@example.com", "alice")
        await directory.set_active(user.id, False)

        outcome = await linker.link(callback(), FakeProvider())

        assert outcome.reason == linking.ACCOUNT_DEACTIVATED

    async def test_username_bound_to_other_identity_is_not_rebound(self, linker, directory):
        owner = await directory.create_user("2002", "a@example.com", "alice")

        outcome = await linker.link(callback(), FakeProvider(external_id="1001"))

        assert outcome.reason == linking.USERNAME_TAKEN
        assert (await directory.lookup_by_username("alice")).external_id == owner.external_id


class TestPreRegisteredUser:
    async def test_linked_when_all_checks_pass(self, linker, directory):
        user = await directory.create_pre_registered_user(
            "alice", "A@Example.com", "editor", "github"
        )

        outcome = await linker.link(callback(), FakeProvider())

        assert outcome.status == LinkStatus.LINKED
        assert outcome.user.id == user.id
        assert outcome.user.external_id == "1001"
        assert outcome.user.email == "a@example.com"
        assert (await directory.lookup_by_external_id("1001")).id == user.id

    async def test_auth_source_mismatch_leaves_user_unchanged(self, linker, directory):
        dave = await directory.create_pre_registered_user(
            "dave", "dave@example.com", "reader", "google"
        )

        outcome = await linker.link(
            callback(pending="dave"),
            FakeProvider(username="dave", emails=[ProviderEmail("dave@example.com", True, True)]),
        )

        assert outcome.status == LinkStatus.REJECTED
        assert outcome.reason == linking.WRONG_AUTH_SOURCE
        stored = await directory.lookup_by_id(dave.id)
        assert stored.external_id is None
        assert stored.updated_at == dave.updated_at

    async def test_email_mismatch(self, linker, directory):
        await directory.create_pre_registered_user("alice", "other@example.com", "reader", "github")

        outcome = await linker.link(callback(), FakeProvider())

        assert outcome.reason == linking.EMAIL_MISMATCH
        assert (await directory.lookup_by_username("alice")).external_id is None

    async def test_deactivated_pre_registered_user(self, linker, directory):
        user = await directory.create_pre_registered_user("alice", "a@example.com", "reader", "github")
        await directory.set_active(user.id, False)

        outcome = await linker.link(callback(), FakeProvider())

        assert outcome.reason == linking.ACCOUNT_DEACTIVATED

    async def test_pre_registered_link_ignores_registration_flag(self, directory, settings):
        await directory.create_pre_registered_user("alice", "a@example.com", "reader", "github")
        linker = IdentityLinker(directory, settings, registration_enabled=False)

        outcome = await linker.link(callback(), FakeProvider())

        assert outcome.status == LinkStatus.LINKED
