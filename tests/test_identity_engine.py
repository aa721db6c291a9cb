"""Unit tests for the identity lifecycle engine.

Covers:
- Registration and duplicate emails
- Login outcomes (unknown email, wrong password, locked, unverified policy)
- Login attempt ledger entries
- Logout revocation and lifecycle events
- Password change, email verification, status changes
"""

from datetime import timedelta

import pytest
from argon2.exceptions import HashingError as Argon2HashingError

from identifier.service.errors import (
    AccountLockedError,
    DuplicateEmailError,
    EmailNotVerifiedError,
    HashingError,
    InvalidCredentialsError,
    InvalidOrExpiredTokenError,
    NotFoundError,
    StoreError,
)
from identifier.service.runtime import Runtime
from identifier.storage.errors import ConstraintViolation
from identifier.storage.models import IdentityStatus

PASSWORD = "pw12345!"


async def _register(runtime, email="a@x.com", password=PASSWORD):
    return await runtime.identities.register(email, password, "A", "B")


def _active_tokens(store, identity_id):
    return [t for t in store.refresh_tokens.values() if t.identity_id == identity_id and t.is_active()]


class TestRegister:
    async def test_register_creates_unverified_identity(self, runtime, store):
        """New identities start unverified with a hashed password."""
        result = await _register(runtime)

        assert result.email == "a@x.com"
        assert result.message == "Registration successful. Please verify your email."
        identity = store.find_by_external_user_id(result.user_id)
        assert identity.status == IdentityStatus.UNVERIFIED
        assert identity.email_verified is False
        assert identity.password_hash != PASSWORD
        assert identity.password_hash.startswith("$argon2id$")

    async def test_register_publishes_registered_event(self, runtime, events):
        result = await _register(runtime)
        await runtime.events.drain()

        registered = events.of_type("identity.registered")
        assert len(registered) == 1
        assert registered[0].user_id == result.user_id
        assert registered[0].first_name == "A"
        assert registered[0].version == 1

    async def test_duplicate_email_is_rejected_without_changes(self, runtime, store):
        """A second register with the same email fails and leaves the first intact."""
        first = await _register(runtime)
        before = store.find_by_external_user_id(first.user_id)

        with pytest.raises(DuplicateEmailError) as excinfo:
            await _register(runtime, password="another-password")

        assert excinfo.value.error_code == "duplicate_email"
        after = store.find_by_external_user_id(first.user_id)
        assert after == before
        assert len(store.identities) == 1

    async def test_hashing_failure_creates_nothing(self, runtime, store, hasher, events, monkeypatch):
        class ExhaustedArgon2:
            def hash(self, password):
                raise Argon2HashingError("out of memory")

        monkeypatch.setattr(hasher, "_hasher", ExhaustedArgon2())
        with pytest.raises(HashingError) as excinfo:
            await _register(runtime)
        await runtime.events.drain()

        assert excinfo.value.status_code == 500
        assert store.identities == {}
        assert events.of_type("identity.registered") == []

    async def test_unique_index_race_maps_to_duplicate_email(self, runtime, store, monkeypatch):
        """When the lookup misses but the insert collides, DuplicateEmail is raised."""
        monkeypatch.setattr(store, "find_by_email", lambda email: None)

        def collide(identity):
            raise ConstraintViolation("email already exists", {"field": "email"})

        monkeypatch.setattr(store, "create", collide)
        with pytest.raises(DuplicateEmailError):
            await _register(runtime)

    async def test_event_sink_failure_does_not_fail_register(self, settings, store, hasher, resolver):
        class BrokenSink:
            async def publish(self, event):
                raise RuntimeError("bus down")

            async def close(self):
                return None

        runtime = Runtime(settings, store=store, resolver=resolver, event_sink=BrokenSink(), hasher=hasher)
        result = await _register(runtime)
        await runtime.events.drain()
        assert store.find_by_external_user_id(result.user_id) is not None


class TestLogin:
    async def test_login_success_issues_tokens(self, runtime, store):
        """A successful login returns a bearer access token and a refresh secret."""
        reg = await _register(runtime)
        result = await runtime.identities.login("a@x.com", PASSWORD, "pytest", "10.0.0.1")

        assert result.token_type == "Bearer"
        assert result.expires_in == 900
        claims = runtime.issuer.verify(result.access_token)
        assert claims.sub == reg.user_id
        assert claims.email == "a@x.com"
        assert claims.roles == ["member"]
        assert "classes:book" in claims.permissions

        identity = store.find_by_email("a@x.com")
        active = _active_tokens(store, identity.id)
        assert len(active) == 1
        # only the hash is stored
        assert active[0].token_hash != result.refresh_token
        assert active[0].token_hash == runtime.sessions.generator.hash(result.refresh_token)
        assert active[0].device_info == "pytest"
        assert active[0].ip_address == "10.0.0.1"

    async def test_successful_login_records_one_success_attempt(self, runtime, store):
        await _register(runtime)
        await runtime.identities.login("a@x.com", PASSWORD)

        identity = store.find_by_email("a@x.com")
        attempts = store.list_recent(identity.id)
        assert [a.success for a in attempts] == [True]

    async def test_wrong_password_records_failure_and_no_token(self, runtime, store):
        await _register(runtime)
        with pytest.raises(InvalidCredentialsError):
            await runtime.identities.login("a@x.com", "wrong-password", ip_address="10.0.0.2")

        identity = store.find_by_email("a@x.com")
        attempts = store.list_recent(identity.id)
        assert len(attempts) == 1
        assert attempts[0].success is False
        assert attempts[0].ip_address == "10.0.0.2"
        assert _active_tokens(store, identity.id) == []

    async def test_unknown_email_matches_wrong_password_error(self, runtime):
        """Unknown email and wrong password are indistinguishable to the caller."""
        await _register(runtime)

        with pytest.raises(InvalidCredentialsError) as unknown:
            await runtime.identities.login("nobody@x.com", PASSWORD)
        with pytest.raises(InvalidCredentialsError) as wrong:
            await runtime.identities.login("a@x.com", "not-the-password")

        assert type(unknown.value) is type(wrong.value)
        assert unknown.value.message == wrong.value.message
        assert unknown.value.error_code == wrong.value.error_code
        assert unknown.value.status_code == wrong.value.status_code

    async def test_unknown_email_attempt_has_no_identity(self, runtime, store):
        with pytest.raises(InvalidCredentialsError):
            await runtime.identities.login("ghost@x.com", PASSWORD)
        assert len(store.attempts) == 1
        assert store.attempts[0].identity_id is None
        assert store.attempts[0].email == "ghost@x.com"

    @pytest.mark.parametrize("status", [IdentityStatus.LOCKED, IdentityStatus.SUSPENDED])
    async def test_blocked_identity_cannot_login_with_correct_password(self, runtime, store, status):
        reg = await _register(runtime)
        identity = store.find_by_external_user_id(reg.user_id)
        store.update_status(identity.id, status)

        with pytest.raises(AccountLockedError) as excinfo:
            await runtime.identities.login("a@x.com", PASSWORD)
        assert excinfo.value.error_code == "account_locked"
        assert _active_tokens(store, identity.id) == []

    async def test_unverified_identity_can_login_by_default(self, runtime):
        """Unverified is not locked; login proceeds unless the policy requires verification."""
        await _register(runtime)
        result = await runtime.identities.login("a@x.com", PASSWORD)
        assert result.access_token

    async def test_unverified_identity_rejected_when_policy_requires_it(
        self, settings, store, hasher, events, resolver
    ):
        strict = settings.model_copy(update={"require_verified_email": True})
        runtime = Runtime(strict, store=store, resolver=resolver, event_sink=events, hasher=hasher)
        reg = await _register(runtime)

        with pytest.raises(EmailNotVerifiedError):
            await runtime.identities.login("a@x.com", PASSWORD)

        await runtime.identities.verify_email(reg.user_id)
        result = await runtime.identities.login("a@x.com", PASSWORD)
        assert result.refresh_token

    async def test_resolver_failure_degrades_to_empty_claims(self, settings, store, hasher, events):
        class FailingResolver:
            async def resolve(self, external_user_id):
                raise ConnectionError("auth service unreachable")

            async def close(self):
                return None

        runtime = Runtime(settings, store=store, resolver=FailingResolver(), event_sink=events, hasher=hasher)
        await _register(runtime)
        result = await runtime.identities.login("a@x.com", PASSWORD)

        claims = runtime.issuer.verify(result.access_token)
        assert claims.roles == []
        assert claims.permissions == []

    async def test_login_publishes_event_with_device_metadata(self, runtime, events):
        await _register(runtime)
        await runtime.identities.login("a@x.com", PASSWORD, "iPhone", "192.0.2.7")
        await runtime.events.drain()

        logged_in = events.of_type("identity.logged_in")
        assert len(logged_in) == 1
        assert logged_in[0].device_info == "iPhone"
        assert logged_in[0].ip_address == "192.0.2.7"

    async def test_three_failures_are_counted_in_window(self, runtime):
        reg = await _register(runtime)
        for _ in range(3):
            with pytest.raises(InvalidCredentialsError):
                await runtime.identities.login("a@x.com", "bad-password")

        assert await runtime.identities.recent_failures(reg.user_id) == 3
        assert await runtime.identities.recent_failures(reg.user_id, timedelta(minutes=15)) == 3
        # no automatic lockout
        result = await runtime.identities.login("a@x.com", PASSWORD)
        assert result.access_token


class TestLogout:
    async def test_logout_revokes_all_refresh_tokens(self, runtime, store, events):
        reg = await _register(runtime)
        first = await runtime.identities.login("a@x.com", PASSWORD, "laptop")
        await runtime.identities.login("a@x.com", PASSWORD, "phone")

        message = await runtime.identities.logout(reg.user_id)
        await runtime.events.drain()

        assert message == "Logged out successfully"
        identity = store.find_by_external_user_id(reg.user_id)
        assert _active_tokens(store, identity.id) == []
        with pytest.raises(InvalidOrExpiredTokenError):
            await runtime.sessions.refresh_access_token(first.refresh_token)
        logged_out = events.of_type("identity.logged_out")
        assert logged_out[0].revoked_tokens == 2

    async def test_logout_ignores_which_session_asks(self, runtime, store):
        """Logout is mass revocation; no single device survives it."""
        reg = await _register(runtime)
        laptop = await runtime.identities.login("a@x.com", PASSWORD, "laptop")
        phone = await runtime.identities.login("a@x.com", PASSWORD, "phone")

        await runtime.identities.logout(reg.user_id)

        identity = store.find_by_external_user_id(reg.user_id)
        assert len(_active_tokens(store, identity.id)) == 0
        for session in (laptop, phone):
            with pytest.raises(InvalidOrExpiredTokenError):
                await runtime.sessions.refresh_access_token(session.refresh_token)

    async def test_logout_store_failure_propagates(self, runtime, store, events, monkeypatch):
        reg = await _register(runtime)
        await runtime.identities.login("a@x.com", PASSWORD)

        def broken(identity_id):
            raise StoreError("storage failure")

        monkeypatch.setattr(store, "revoke_all_refresh_tokens_for", broken)
        with pytest.raises(StoreError):
            await runtime.identities.logout(reg.user_id)
        await runtime.events.drain()

        assert events.of_type("identity.logged_out") == []
        identity = store.find_by_external_user_id(reg.user_id)
        assert len(_active_tokens(store, identity.id)) == 1

    async def test_logout_unknown_identity_still_succeeds(self, runtime, events):
        message = await runtime.identities.logout("00000000-0000-0000-0000-000000000000")
        await runtime.events.drain()

        assert message == "Logged out successfully"
        assert events.of_type("identity.logged_out") == []

    async def test_unknown_identity_is_not_found(self, runtime):
        with pytest.raises(NotFoundError):
            await runtime.identities.get_identity("00000000-0000-0000-0000-000000000000")


class TestAccountOperations:
    async def test_change_password_requires_current_password(self, runtime):
        reg = await _register(runtime)
        with pytest.raises(InvalidCredentialsError):
            await runtime.identities.change_password(reg.user_id, "wrong-current", "new-password-1")

    async def test_change_password_rotates_hash_and_revokes_sessions(self, runtime, store, events):
        reg = await _register(runtime)
        session = await runtime.identities.login("a@x.com", PASSWORD)

        await runtime.identities.change_password(reg.user_id, PASSWORD, "new-password-1")
        await runtime.events.drain()

        with pytest.raises(InvalidOrExpiredTokenError):
            await runtime.sessions.refresh_access_token(session.refresh_token)
        with pytest.raises(InvalidCredentialsError):
            await runtime.identities.login("a@x.com", PASSWORD)
        assert (await runtime.identities.login("a@x.com", "new-password-1")).access_token
        assert events.of_type("identity.password_changed")[0].reason == "change"

    async def test_verify_email_activates_identity(self, runtime):
        reg = await _register(runtime)
        identity = await runtime.identities.verify_email(reg.user_id)
        assert identity.email_verified is True
        assert identity.status == IdentityStatus.ACTIVE

    async def test_verify_email_keeps_locked_status(self, runtime, store):
        reg = await _register(runtime)
        await runtime.identities.set_status(reg.user_id, IdentityStatus.LOCKED)
        identity = await runtime.identities.verify_email(reg.user_id)
        assert identity.status == IdentityStatus.LOCKED

    async def test_locking_revokes_refresh_tokens(self, runtime, store):
        reg = await _register(runtime)
        session = await runtime.identities.login("a@x.com", PASSWORD)

        await runtime.identities.set_status(reg.user_id, IdentityStatus.SUSPENDED)

        with pytest.raises(InvalidOrExpiredTokenError):
            await runtime.sessions.refresh_access_token(session.refresh_token)

    async def test_recent_attempts_newest_first(self, runtime):
        reg = await _register(runtime)
        with pytest.raises(InvalidCredentialsError):
            await runtime.identities.login("a@x.com", "bad-password")
        await runtime.identities.login("a@x.com", PASSWORD)

        attempts = await runtime.identities.recent_attempts(reg.user_id, limit=10)
        assert [a.success for a in attempts] == [True, False]
