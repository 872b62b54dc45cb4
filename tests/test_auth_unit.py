"""JWT lifecycle, password handling and the account flows of AuthService."""

import asyncio
import re
import time

import jwt
import pytest

from bookshelf.service.auth import TokenPair
from bookshelf.service.errors import AuthenticationError, ValidationError
from bookshelf.storage.models import TokenKind

PASSWORD = "Secret123"


def _token_from_mail(message):
    match = re.search(r"token=([0-9a-f]{64})", message.text_body)
    assert match, message.text_body
    return match.group(1)


async def _register(services, email="ada@example.com", password=PASSWORD):
    return await services.auth.register("Ada Reader", email, password, ip_addr="127.0.0.1")


class TestPasswords:
    async def test_hash_is_argon2id_and_verifies(self, services):
        result = await _register(services)
        stored_hash, algo = services.store.get_password_record(result.user.id)
        assert algo == "argon2id"
        assert stored_hash.startswith("$argon2id$")
        assert PASSWORD not in stored_hash
        assert services.auth.verify_password(result.user.id, PASSWORD)
        assert not services.auth.verify_password(result.user.id, "Wrong1234")

    async def test_missing_record_fails_verification(self, services):
        user = await services.users.create_user("No Password", "np@example.com")
        assert services.auth.verify_password(user.id, PASSWORD) is False


class TestJwt:
    async def test_pair_tokens_are_distinct_and_typed(self, services):
        pair = services.auth.issue_pair("user-1")
        again = services.auth.issue_pair("user-1")
        assert pair.access_token != again.access_token
        assert pair.refresh_token != again.refresh_token
        assert pair.expires_in == services.settings.access_token_ttl_minutes * 60

        assert await services.auth.verify_access(pair.access_token) == "user-1"
        assert await services.auth.verify_refresh(pair.refresh_token) == "user-1"

    async def test_token_type_confusion_is_rejected(self, services):
        pair = services.auth.issue_pair("user-1")
        assert await services.auth.verify_access(pair.refresh_token) is None
        assert await services.auth.verify_refresh(pair.access_token) is None

    async def test_token_signed_with_other_secret_is_rejected(self, services):
        forged = jwt.encode(
            {"sub": "user-1", "type": "access", "iat": time.time(), "exp": int(time.time()) + 60},
            "some-other-secret-that-is-long-enough-000",
            algorithm="HS256",
        )
        assert await services.auth.verify_access(forged) is None

    async def test_expired_access_token_is_rejected(self, services):
        services.clock.now = time.time() - 3600
        pair = services.auth.issue_pair("user-1")
        assert await services.auth.verify_access(pair.access_token) is None
        # the refresh token lives for days and is still fine
        assert await services.auth.verify_refresh(pair.refresh_token) == "user-1"

    async def test_garbage_and_missing_tokens(self, services):
        assert await services.auth.verify_access(None) is None
        assert await services.auth.verify_access("") is None
        assert await services.auth.verify_access("not.a.jwt") is None

    async def test_blacklist_entry_lives_until_token_expiry(self, services):
        pair = services.auth.issue_pair("user-1")
        assert await services.auth.blacklist(pair.access_token)

        ttl = services.backend.ttl(f"blacklist:{pair.access_token}")
        assert 0 < ttl <= services.settings.access_token_ttl_minutes * 60
        assert await services.auth.verify_access(pair.access_token) is None

    async def test_blacklisting_expired_token_is_noop(self, services):
        services.clock.now = time.time() - 3600
        pair = services.auth.issue_pair("user-1")
        services.clock.now = time.time()
        assert await services.auth.blacklist(pair.access_token) is False
        assert services.backend.ttl(f"blacklist:{pair.access_token}") is None

    async def test_blacklisting_garbage_is_noop(self, services):
        assert await services.auth.blacklist("garbage") is False
        assert await services.auth.blacklist(None) is False

    async def test_watermark_rejects_older_tokens_only(self, services):
        old = services.auth.issue_pair("user-1")
        services.clock.advance(1)
        await services.auth.revoke_user_tokens("user-1")
        services.clock.advance(1)
        fresh = services.auth.issue_pair("user-1")

        assert await services.auth.verify_access(old.access_token) is None
        assert await services.auth.verify_refresh(old.refresh_token) is None
        assert await services.auth.verify_access(fresh.access_token) == "user-1"

    async def test_authenticate_parses_bearer_header(self, services):
        result = await _register(services)
        header = f"Bearer {result.tokens.access_token}"

        ctx = await services.auth.authenticate(header, session_id=result.session_id)

        assert ctx.user_id == result.user.id
        assert ctx.session_id == result.session_id
        assert not ctx.is_admin
        assert await services.auth.authenticate(result.tokens.access_token) is None
        assert await services.auth.authenticate("Bearer ") is None

    async def test_authenticate_rejects_deleted_user(self, services):
        result = await _register(services)
        services.store.delete_user(result.user.id)
        await services.cache.invalidate_user(result.user.id)
        assert await services.auth.authenticate(f"Bearer {result.tokens.access_token}") is None


class TestFlows:
    async def test_register_creates_session_and_sends_verification(self, services):
        result = await _register(services)

        session = await services.sessions.get(result.session_id)
        assert session.user_id == result.user.id
        assert session.ip_addr == "127.0.0.1"
        assert len(services.sender.messages) == 1
        assert "/verify-email?token=" in services.sender.messages[0].text_body

    async def test_duplicate_registration_is_conflict(self, services):
        from bookshelf.service.errors import ConflictError

        await _register(services)
        with pytest.raises(ConflictError):
            await _register(services, email="ADA@example.com")

    async def test_login_with_bad_credentials_is_uniform(self, services):
        await _register(services)
        with pytest.raises(AuthenticationError) as wrong_password:
            await services.auth.login("ada@example.com", "Wrong1234")
        with pytest.raises(AuthenticationError) as unknown_email:
            await services.auth.login("nobody@example.com", PASSWORD)
        assert str(wrong_password.value) == str(unknown_email.value)

    async def test_login_records_last_login(self, services):
        registered = await _register(services)
        result = await services.auth.login("ada@example.com", PASSWORD)
        assert result.user.id == registered.user.id
        assert services.store.get_user(registered.user.id).last_login_at is not None

    async def test_refresh_rotates_and_rejects_replay(self, services):
        result = await _register(services)
        rotated = await services.auth.refresh(result.tokens.refresh_token)

        assert rotated.refresh_token != result.tokens.refresh_token
        assert await services.auth.verify_refresh(rotated.refresh_token) == result.user.id
        with pytest.raises(AuthenticationError):
            await services.auth.refresh(result.tokens.refresh_token)

    async def test_refresh_replay_loses_even_after_passing_verification(self, services, monkeypatch):
        result = await _register(services)

        async def never_blacklisted(token):
            return False

        # both rotations get past the blacklist lookup before either one claims the token
        monkeypatch.setattr(services.cache, "is_token_blacklisted", never_blacklisted)
        outcomes = await asyncio.gather(
            services.auth.refresh(result.tokens.refresh_token),
            services.auth.refresh(result.tokens.refresh_token),
            return_exceptions=True,
        )

        assert sum(isinstance(o, TokenPair) for o in outcomes) == 1
        assert sum(isinstance(o, AuthenticationError) for o in outcomes) == 1

    async def test_logout_revokes_presented_tokens_and_session(self, services):
        result = await _register(services)
        await services.auth.logout(
            result.tokens.access_token,
            result.tokens.refresh_token,
            user_id=result.user.id,
            session_id=result.session_id,
        )
        assert await services.auth.verify_access(result.tokens.access_token) is None
        assert await services.auth.verify_refresh(result.tokens.refresh_token) is None
        assert await services.sessions.get(result.session_id) is None

    async def test_forgot_password_for_unknown_email_is_silent(self, services):
        await services.auth.forgot_password("nobody@example.com")
        assert services.sender.messages == []

    async def test_reset_password_revokes_everything(self, services):
        result = await _register(services)
        await services.auth.forgot_password("ada@example.com")
        token = _token_from_mail(services.sender.messages[-1])
        services.clock.advance(1)

        await services.auth.reset_password(token, "NewSecret456")

        assert services.auth.verify_password(result.user.id, "NewSecret456")
        assert not services.auth.verify_password(result.user.id, PASSWORD)
        assert await services.auth.verify_access(result.tokens.access_token) is None
        assert await services.auth.verify_refresh(result.tokens.refresh_token) is None
        assert await services.sessions.get(result.session_id) is None
        with pytest.raises(ValidationError):
            await services.auth.reset_password(token, "Another789")

    async def test_reset_password_revokes_outstanding_verification_token(self, services):
        await _register(services)
        verification = _token_from_mail(services.sender.messages[0])
        await services.auth.forgot_password("ada@example.com")
        reset = _token_from_mail(services.sender.messages[-1])

        await services.auth.reset_password(reset, "NewSecret456")

        assert services.tokens.consume(verification, TokenKind.EMAIL_VERIFICATION) is None

    async def test_verify_email_marks_user_and_sends_welcome(self, services):
        result = await _register(services)
        token = _token_from_mail(services.sender.messages[0])

        verified = await services.auth.verify_email(token)

        assert verified.is_verified
        assert services.sender.messages[-1].subject == "Welcome to Bookshelf"
        with pytest.raises(ValidationError):
            await services.auth.verify_email(token)
        with pytest.raises(ValidationError):
            await services.auth.resend_verification(verified)
        assert (await services.users.get_user(result.user.id)).is_verified

    async def test_resend_verification_replaces_token(self, services):
        result = await _register(services)
        first = _token_from_mail(services.sender.messages[0])
        await services.auth.resend_verification(result.user)
        second = _token_from_mail(services.sender.messages[-1])

        assert first != second
        with pytest.raises(ValidationError):
            await services.auth.verify_email(first)
        await services.auth.verify_email(second)

    async def test_change_password_requires_current_password(self, services):
        result = await _register(services)
        with pytest.raises(AuthenticationError):
            await services.auth.change_password(result.user, "Wrong1234", "NewSecret456")

        services.clock.advance(1)
        await services.auth.change_password(result.user, PASSWORD, "NewSecret456")

        assert services.auth.verify_password(result.user.id, "NewSecret456")
        assert await services.auth.verify_access(result.tokens.access_token) is None

    async def test_failed_email_delivery_does_not_fail_registration(self, services):
        def broken_send(message):
            raise OSError("smtp down")

        services.sender.send = broken_send
        result = await _register(services)
        assert result.user.email == "ada@example.com"
