import pytest

from oauthabl.service.errors import ConflictError, PartialWriteError, ValidationError
from oauthabl.service.indexes import IndexMaintainer


@pytest.fixture
def indexes(store):
    return IndexMaintainer(store)


async def test_claim_writes_username_and_email_indexes(indexes, store):
    steps = await indexes.claim(
        "c1", "u1", username="alice", emails=["alice@example.com"]
    )

    assert steps == ["username_index", "email_index"]
    assert await store.get("username:c1:alice") == "u1"
    stored = await store.get_with_metadata("email:c1:alice@example.com")
    assert stored.value == "u1"
    assert stored.metadata == {"emailVerified": False}


async def test_exists_reports_first_taken_identifier(indexes):
    await indexes.claim("c1", "u1", username="alice", emails=["a@example.com"])

    assert await indexes.exists("c1", username="alice") == "username"
    assert await indexes.exists("c1", username="bob", emails=["a@example.com"]) == "email"
    assert await indexes.exists("c1", username="bob", emails=["b@example.com"]) is None
    # Indexes are per client
    assert await indexes.exists("c2", username="alice") is None


async def test_losing_a_claim_race_is_a_conflict(indexes, store):
    await indexes.claim("c1", "u1", emails=["a@example.com"])

    with pytest.raises(ConflictError) as exc_info:
        await indexes.claim("c1", "u2", username="bob", emails=["a@example.com"])

    assert exc_info.value.detail == {
        "completed_steps": ["username_index"],
        "failed_step": "email_index",
    }
    assert await store.get("email:c1:a@example.com") == "u1"


async def test_store_failure_midway_reports_partial_write(flaky_store):
    indexes = IndexMaintainer(flaky_store)
    flaky_store.fail_puts.add("email:c1:a@example.com")

    with pytest.raises(PartialWriteError) as exc_info:
        await indexes.claim("c1", "u1", username="alice", emails=["a@example.com"])

    assert exc_info.value.completed_steps == ["username_index"]
    assert exc_info.value.failed_step == "email_index"
    assert exc_info.value.status_code == 500


async def test_release_deletes_indexes(indexes, store):
    await indexes.claim("c1", "u1", username="alice", emails=["a@example.com"])

    steps = await indexes.release("c1", username="alice", emails=["a@example.com"])

    assert steps == ["username_index", "email_index"]
    assert store.keys() == []


async def test_resolve(indexes):
    await indexes.claim("c1", "u1", username="alice", emails=["a@example.com"])

    assert await indexes.resolve("c1", "username", "alice") == "u1"
    assert await indexes.resolve("c1", "email", "a@example.com") == "u1"
    assert await indexes.resolve("c1", "username", "nobody") is None
    with pytest.raises(ValidationError):
        await indexes.resolve("c1", "phone", "555")


async def test_set_email_verified_updates_index_metadata(indexes, store):
    await indexes.claim("c1", "u1", emails=["a@example.com"])
    await indexes.set_email_verified("c1", "u1", "a@example.com", True)

    stored = await store.get_with_metadata("email:c1:a@example.com")
    assert stored.value == "u1"
    assert stored.metadata == {"emailVerified": True}


async def test_prune_orphans_removes_dangling_entries_only(indexes, store):
    await indexes.claim("c1", "u1", username="alice", emails=["a@example.com"])
    await store.put("user:c1:u1", "{}", metadata={"emailVerified": False})
    # Left behind by a registration that died before writing its user record
    await indexes.claim("c1", "ghost", username="casper", emails=["g@example.com"])

    assert await indexes.prune_orphans("c1") == 2
    assert await indexes.resolve("c1", "username", "alice") == "u1"
    assert await indexes.resolve("c1", "username", "casper") is None
    assert await indexes.resolve("c1", "email", "g@example.com") is None
    assert await indexes.prune_orphans("c1") == 0
