# tests/test_session_provider.py

from __future__ import annotations

import pytest

from app.auth.session import (
    AccountNotConfirmed,
    AuthError,
    AuthEvent,
    EmailAlreadyRegistered,
    InvalidConfirmationToken,
    InvalidCredentials,
    SessionProvider,
)


@pytest.mark.asyncio
async def test_sign_up_then_sign_in(sessions) -> None:
    result = await sessions.sign_up("Ada@Example.com ", "hunter22")
    assert result.session is not None
    assert result.session.email == "ada@example.com"

    session = await sessions.sign_in("ada@example.com", "hunter22")

    assert session.user_id == result.user_id
    current = await sessions.get_current_session(session.token)
    assert current is not None
    assert current.user_id == result.user_id
    assert not current.expired


@pytest.mark.asyncio
async def test_bad_credentials(sessions) -> None:
    await sessions.sign_up("ada@example.com", "hunter22")

    with pytest.raises(InvalidCredentials):
        await sessions.sign_in("ada@example.com", "wrong-password")
    with pytest.raises(InvalidCredentials):
        await sessions.sign_in("nobody@example.com", "hunter22")


@pytest.mark.asyncio
async def test_duplicate_and_invalid_sign_up(sessions) -> None:
    await sessions.sign_up("ada@example.com", "hunter22")

    with pytest.raises(EmailAlreadyRegistered):
        await sessions.sign_up("ADA@example.com", "another1")
    with pytest.raises(AuthError):
        await sessions.sign_up("not-an-email", "hunter22")
    with pytest.raises(AuthError):
        await sessions.sign_up("bob@example.com", "123")


@pytest.mark.asyncio
async def test_unconfirmed_account_cannot_sign_in(session_factory) -> None:
    provider = SessionProvider(session_factory, secret="test-secret", bcrypt_rounds=4, require_confirmation=True)

    result = await provider.sign_up("ada@example.com", "hunter22")
    assert result.session is None
    assert result.confirmation_token

    with pytest.raises(AccountNotConfirmed):
        await provider.sign_in("ada@example.com", "hunter22")

    assert await provider.confirm(result.confirmation_token) == "ada@example.com"
    session = await provider.sign_in("ada@example.com", "hunter22")
    assert session.email == "ada@example.com"


@pytest.mark.asyncio
async def test_confirm_rejects_session_tokens(sessions) -> None:
    result = await sessions.sign_up("ada@example.com", "hunter22")

    with pytest.raises(InvalidConfirmationToken):
        await sessions.confirm(result.session.token)


@pytest.mark.asyncio
async def test_sign_out_revokes_token(sessions) -> None:
    await sessions.sign_up("ada@example.com", "hunter22")
    session = await sessions.sign_in("ada@example.com", "hunter22")

    await sessions.sign_out(session.token)
    await sessions.sign_out(session.token)

    assert await sessions.get_current_session(session.token) is None


@pytest.mark.asyncio
async def test_garbage_tokens_have_no_session(sessions) -> None:
    assert await sessions.get_current_session(None) is None
    assert await sessions.get_current_session("not-a-jwt") is None

    other = SessionProvider(sessions._session_factory, secret="other-secret", bcrypt_rounds=4)
    result = await other.sign_up("eve@example.com", "hunter22")
    assert await sessions.get_current_session(result.session.token) is None


@pytest.mark.asyncio
async def test_on_change_listeners(sessions) -> None:
    seen = []

    async def async_listener(event, session):
        seen.append(("async", event, session.email))

    unsubscribe_sync = sessions.on_change(lambda event, session: seen.append(("sync", event, session.email)))
    sessions.on_change(async_listener)

    await sessions.sign_up("ada@example.com", "hunter22")
    session = await sessions.sign_in("ada@example.com", "hunter22")
    unsubscribe_sync()
    unsubscribe_sync()
    await sessions.sign_out(session.token)

    assert ("sync", AuthEvent.SIGNED_IN, "ada@example.com") in seen
    assert ("async", AuthEvent.SIGNED_OUT, "ada@example.com") in seen
    assert ("sync", AuthEvent.SIGNED_OUT, "ada@example.com") not in seen


@pytest.mark.asyncio
async def test_failing_listener_does_not_break_sign_in(sessions) -> None:
    def broken(event, session):
        raise RuntimeError("boom")

    sessions.on_change(broken)
    await sessions.sign_up("ada@example.com", "hunter22")

    session = await sessions.sign_in("ada@example.com", "hunter22")
    assert session.token


@pytest.mark.asyncio
async def test_sign_out_is_seen_by_other_workers(session_factory) -> None:
    worker_a = SessionProvider(session_factory, secret="test-secret", bcrypt_rounds=4)
    worker_b = SessionProvider(session_factory, secret="test-secret", bcrypt_rounds=4)
    await worker_a.sign_up("ada@example.com", "hunter22")
    session = await worker_a.sign_in("ada@example.com", "hunter22")
    assert await worker_b.get_current_session(session.token) is not None

    await worker_a.sign_out(session.token)

    assert await worker_a.get_current_session(session.token) is None
    assert await worker_b.get_current_session(session.token) is None
    restarted = SessionProvider(session_factory, secret="test-secret", bcrypt_rounds=4)
    assert await restarted.get_current_session(session.token) is None


@pytest.mark.asyncio
async def test_sign_out_leaves_other_sessions_alone(sessions) -> None:
    await sessions.sign_up("ada@example.com", "hunter22")
    laptop = await sessions.sign_in("ada@example.com", "hunter22")
    phone = await sessions.sign_in("ada@example.com", "hunter22")

    await sessions.sign_out(laptop.token)

    assert await sessions.get_current_session(laptop.token) is None
    assert await sessions.get_current_session(phone.token) is not None
