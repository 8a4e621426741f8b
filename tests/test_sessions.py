from datetime import datetime, timedelta

import pytest

from auth import hash_session_token
from errors import AuthFailure
from tests.conftest import Services


@pytest.mark.asyncio
async def test_login_resolve_logout(services: Services) -> None:
    account_id = await services.directory.create("bob", "bob@example.com", "pw123")
    token, account = await services.sessions.login("BOB", "pw123", user_agent="pytest")
    assert account.id == account_id

    stored = await services.db.fetch_session_by_token_hash(token.token_hash)
    assert stored is not None
    assert stored.token_hash != token.token

    assert await services.sessions.resolve(token.token) == account_id
    await services.sessions.logout(token.token)
    assert await services.sessions.resolve(token.token) is None


@pytest.mark.asyncio
async def test_login_failures_are_indistinguishable(services: Services) -> None:
    await services.directory.create("bob", "bob@example.com", "pw123")
    with pytest.raises(AuthFailure) as wrong_password:
        await services.sessions.login("bob", "nope")
    with pytest.raises(AuthFailure) as unknown_user:
        await services.sessions.login("nobody", "pw123")
    assert wrong_password.value.message == unknown_user.value.message
    assert wrong_password.value.status_code == unknown_user.value.status_code == 401


@pytest.mark.asyncio
async def test_resolve_rejects_unsigned_tokens(services: Services) -> None:
    assert await services.sessions.resolve(None) is None
    assert await services.sessions.resolve("forged") is None


@pytest.mark.asyncio
async def test_expired_session_is_revoked(services: Services) -> None:
    await services.directory.create("bob", "bob@example.com", "pw123")
    token, _ = await services.sessions.login("bob", "pw123")
    stored = await services.db.fetch_session_by_token_hash(hash_session_token(token.token))
    assert stored is not None
    past = (datetime.utcnow() - timedelta(seconds=1)).isoformat()
    await services.db.touch_session(stored.id, past, past)

    assert await services.sessions.resolve(token.token) is None
    revoked = await services.db.fetch_session_by_token_hash(token.token_hash)
    assert revoked is not None
    assert revoked.revoked_at is not None


@pytest.mark.asyncio
async def test_resolve_slides_expiry(services: Services) -> None:
    await services.directory.create("bob", "bob@example.com", "pw123")
    token, _ = await services.sessions.login("bob", "pw123")
    before = await services.db.fetch_session_by_token_hash(token.token_hash)
    assert before is not None
    soon = (datetime.utcnow() + timedelta(seconds=5)).isoformat()
    await services.db.touch_session(before.id, before.last_seen_at, soon)

    assert await services.sessions.resolve(token.token) is not None
    after = await services.db.fetch_session_by_token_hash(token.token_hash)
    assert after is not None
    assert after.expires_at > soon


@pytest.mark.asyncio
async def test_new_login_revokes_previous_session(services: Services) -> None:
    await services.directory.create("bob", "bob@example.com", "pw123")
    first, _ = await services.sessions.login("bob", "pw123")
    second, _ = await services.sessions.login("bob", "pw123", previous_token=first.token)
    assert await services.sessions.resolve(first.token) is None
    assert await services.sessions.resolve(second.token) is not None
