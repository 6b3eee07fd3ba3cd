"""Tests for the client registry and the client authenticator."""

import json

import pytest

from oauthabl.service.clients import ClientAuthenticator, ClientRegistry
from oauthabl.service.errors import AuthenticationError, NotFoundError, ServerError


@pytest.fixture
def registry(store):
    return ClientRegistry(store)


@pytest.fixture
def authenticator(store):
    return ClientAuthenticator(store)


async def test_create_writes_record_and_metadata(registry, store):
    client = await registry.create("acme", redirect_uri="https://acme.test/cb")

    stored = await store.get_with_metadata(f"client:{client.id}")
    assert stored.metadata == {"name": "acme", "secret": client.secret}
    assert json.loads(stored.value) == {
        "id": client.id,
        "secret": client.secret,
        "name": "acme",
        "redirect_uri": "https://acme.test/cb",
    }


async def test_create_ignores_caller_supplied_id_and_secret(registry):
    client = await registry.create("acme", id="mine", secret="guessable")
    assert client.id != "mine"
    assert client.secret != "guessable"
    assert "id" not in client.attributes


async def test_get_list_update_delete(registry):
    first = await registry.create("acme")
    second = await registry.create("globex")

    assert (await registry.get(first.id)).name == "acme"
    assert sorted(c.name for c in await registry.list()) == ["acme", "globex"]

    updated = await registry.update(second.id, name="globex corp", secret="x", plan="pro")
    assert updated.name == "globex corp"
    assert updated.secret == second.secret
    assert updated.attributes == {"plan": "pro"}

    await registry.delete(first.id)
    with pytest.raises(NotFoundError):
        await registry.get(first.id)
    with pytest.raises(NotFoundError):
        await registry.delete(first.id)


async def test_corrupt_client_record_is_server_error(registry, store):
    await store.put("client:broken", "{not json")
    with pytest.raises(ServerError):
        await registry.get("broken")


async def test_authenticate_accepts_matching_secret(registry, authenticator):
    client = await registry.create("acme")
    authed = await authenticator.authenticate(client.id, client.secret)
    assert authed.id == client.id
    assert await authenticator.is_allowed(client.id, client.secret)


@pytest.mark.parametrize("presented", [None, "", "wrong-secret"])
async def test_authenticate_rejects_bad_secret(registry, authenticator, presented):
    client = await registry.create("acme")
    with pytest.raises(AuthenticationError) as exc_info:
        await authenticator.authenticate(client.id, presented)
    assert exc_info.value.message == "invalid client credentials"
    assert not await authenticator.is_allowed(client.id, presented)


async def test_unknown_client_gets_the_same_denial(authenticator):
    with pytest.raises(AuthenticationError) as exc_info:
        await authenticator.authenticate("no-such-client", "anything")
    assert exc_info.value.message == "invalid client credentials"


async def test_store_failure_denies_with_server_error(flaky_store):
    registry = ClientRegistry(flaky_store)
    client = await registry.create("acme")
    flaky_store.fail_all = True

    authenticator = ClientAuthenticator(flaky_store)
    with pytest.raises(ServerError):
        await authenticator.authenticate(client.id, client.secret)
    with pytest.raises(ServerError):
        await authenticator.is_allowed(client.id, client.secret)
