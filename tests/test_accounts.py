import asyncio

import pytest

from errors import Conflict, InvalidInput, NotFound
from tests.conftest import Services


@pytest.mark.asyncio
async def test_create_stores_hash_not_password(services: Services) -> None:
    account_id = await services.directory.create("bob", "bob@example.com", "pw123")
    account = await services.directory.find_by_id(account_id)
    assert account is not None
    assert account.password_hash != "pw123"
    assert "pw123" not in repr(account)
    assert not account.is_approved


@pytest.mark.asyncio
async def test_duplicate_username_conflicts_ignoring_case(services: Services) -> None:
    await services.directory.create("bob", "bob@example.com", "pw123")
    with pytest.raises(Conflict):
        await services.directory.create("Bob", "other@example.com", "pw456")


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "username,email",
    [("ab", "a@example.com"), ("bad name", "a@example.com"), ("valid", "no-at-sign")],
)
async def test_invalid_registration_fields(services: Services, username: str, email: str) -> None:
    with pytest.raises(InvalidInput):
        await services.directory.create(username, email, "pw123")


@pytest.mark.asyncio
async def test_public_list_respects_approval(services: Services) -> None:
    pending = await services.directory.create("pending", "p@example.com", "pw")
    approved = await services.directory.create("approved", "a@example.com", "pw")
    await services.directory.set_approved(approved, True)

    public_ids = [a.id for a in await services.directory.list_public()]
    assert approved in public_ids
    assert pending not in public_ids


@pytest.mark.asyncio
async def test_update_profile_keeps_avatar_when_none_given(services: Services) -> None:
    account_id = await services.directory.create("erika", "e@example.com", "pw")
    await services.directory.update_profile(
        account_id, "erika", "e@example.com", "hello", "/uploads/a.jpg"
    )
    await services.directory.update_profile(account_id, "erika2", "e2@example.com", "bio")

    account = await services.directory.find_by_id(account_id)
    assert account is not None
    assert account.username == "erika2"
    assert account.bio == "bio"
    assert account.profile_image_url == "/uploads/a.jpg"


@pytest.mark.asyncio
async def test_update_profile_rename_into_taken_name(services: Services) -> None:
    await services.directory.create("taken", "t@example.com", "pw")
    account_id = await services.directory.create("mine", "m@example.com", "pw")
    with pytest.raises(Conflict):
        await services.directory.update_profile(account_id, "TAKEN", "m@example.com", None)


@pytest.mark.asyncio
async def test_update_profile_missing_account(services: Services) -> None:
    with pytest.raises(NotFound):
        await services.directory.update_profile("missing", "ghost", "g@example.com", None)


@pytest.mark.asyncio
async def test_toggle_alternates(services: Services) -> None:
    account_id = await services.directory.create("toggler", "t@example.com", "pw")
    assert await services.directory.toggle_online(account_id) is True
    assert await services.directory.toggle_online(account_id) is False
    with pytest.raises(NotFound):
        await services.directory.toggle_online("missing")


@pytest.mark.asyncio
@pytest.mark.parametrize("count", [4, 5])
async def test_concurrent_toggles_are_not_lost(services: Services, count: int) -> None:
    account_id = await services.directory.create("racer", "r@example.com", "pw")
    await asyncio.gather(
        *(services.directory.toggle_online(account_id) for _ in range(count))
    )
    account = await services.directory.find_by_id(account_id)
    assert account is not None
    assert account.is_online is (count % 2 == 1)


@pytest.mark.asyncio
async def test_duplicate_username_conflicts_for_polish_letters(services: Services) -> None:
    await services.directory.create("Żaneta", "z@example.com", "pw123")
    with pytest.raises(Conflict):
        await services.directory.create("żaneta", "other@example.com", "pw456")


@pytest.mark.asyncio
async def test_find_by_username_folds_polish_letters(services: Services) -> None:
    account_id = await services.directory.create("Łucja", "l@example.com", "pw123")
    found = await services.directory.find_by_username("łucja")
    assert found is not None
    assert found.id == account_id
    assert found.username == "Łucja"


@pytest.mark.asyncio
async def test_rename_into_polish_name_differing_by_case(services: Services) -> None:
    await services.directory.create("Ślęża", "s@example.com", "pw")
    account_id = await services.directory.create("inna", "i@example.com", "pw")
    with pytest.raises(Conflict):
        await services.directory.update_profile(account_id, "ŚLĘŻA", "i@example.com", None)
