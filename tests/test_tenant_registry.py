import asyncio
import json

import pytest

from multikick.constants import PersistenceError
from multikick.tenant import Tenant, TenantRecord
from multikick.tenant_registry import TenantRegistry


@pytest.fixture
def store_path(tmp_path):
    return tmp_path / "multi-streamers.json"


@pytest.fixture
def registry(store_path):
    return TenantRegistry(str(store_path))


def test_load_missing_store_is_empty(registry):
    assert registry.load() == []


def test_load_reads_records_in_order(registry, store_path):
    store_path.write_text(json.dumps({"streamers": [
        {"broadcasterUserId": 1, "slug": "one", "refreshToken": "r1", "subscriptionId": "s1"},
        {"broadcasterUserId": 2, "slug": "two", "refreshToken": "r2", "subscriptionId": None},
    ]}))

    records = registry.load()

    assert [r.broadcaster_user_id for r in records] == [1, 2]
    assert records[0].refresh_token == "r1"
    assert records[0].subscription_id == "s1"
    assert records[1].subscription_id is None


def test_load_skips_malformed_entries(registry, store_path):
    store_path.write_text(json.dumps({"streamers": [{"slug": "no-id"}, {"broadcasterUserId": 3}]}))
    records = registry.load()
    assert [r.broadcaster_user_id for r in records] == [3]


def test_load_corrupt_store_raises(registry, store_path):
    store_path.write_text("{not json")
    with pytest.raises(PersistenceError):
        registry.load()


def test_load_without_streamers_list_raises(registry, store_path):
    store_path.write_text(json.dumps({"tenants": []}))
    with pytest.raises(PersistenceError):
        registry.load()


@pytest.mark.asyncio
async def test_upsert_persists_without_access_token(registry, store_path):
    tenant = Tenant(42, slug="foo", refresh_token="RT1", subscription_id="sub-1")
    tenant.access_token = "AT1"

    await registry.upsert(tenant)

    data = json.loads(store_path.read_text())
    assert data == {"streamers": [
        {"broadcasterUserId": 42, "slug": "foo", "refreshToken": "RT1", "subscriptionId": "sub-1"}]}
    assert "AT1" not in store_path.read_text()
    assert registry.get(42) is tenant
    assert registry.by_subscription("sub-1") is tenant


@pytest.mark.asyncio
async def test_upsert_replaces_and_cancels_previous(registry):
    first = Tenant(42, slug="foo", refresh_token="RT1", subscription_id="old-sub")
    first.keep_alive_task = asyncio.create_task(asyncio.sleep(60))
    await registry.upsert(first)

    second = Tenant(42, slug="foo", refresh_token="RT2", subscription_id="new-sub")
    task = first.keep_alive_task
    await registry.upsert(second)
    await asyncio.sleep(0)

    assert len(registry) == 1
    assert registry.get(42) is second
    assert registry.by_subscription("old-sub") is None
    assert registry.by_subscription("new-sub") is second
    assert task.cancelled()
    assert not registry.is_current(first)


@pytest.mark.asyncio
async def test_set_subscription_updates_reverse_index(registry):
    tenant = Tenant(42, refresh_token="RT1", subscription_id="sub-1")
    await registry.upsert(tenant)

    await registry.set_subscription(tenant, "sub-2")

    assert registry.by_subscription("sub-1") is None
    assert registry.by_subscription("sub-2") is tenant
    assert tenant.subscription_id == "sub-2"


@pytest.mark.asyncio
async def test_remove_cancels_tasks_and_persists(registry, store_path):
    tenant = Tenant(42, refresh_token="RT1", subscription_id="sub-1")
    tenant.refresh_task = asyncio.create_task(asyncio.sleep(60))
    await registry.upsert(tenant)
    task = tenant.refresh_task

    removed = await registry.remove(42)
    await asyncio.sleep(0)

    assert removed is tenant
    assert 42 not in registry
    assert registry.by_subscription("sub-1") is None
    assert task.cancelled()
    assert json.loads(store_path.read_text()) == {"streamers": []}


@pytest.mark.asyncio
async def test_remove_unknown_returns_none(registry):
    assert await registry.remove(999) is None


@pytest.mark.asyncio
async def test_concurrent_persists_do_not_lose_updates(registry, store_path):
    tenants = [Tenant(i, refresh_token=f"r{i}") for i in range(1, 11)]
    for tenant in tenants:
        registry.restore(tenant)

    async def rotate(tenant):
        tenant.refresh_token = f"rotated-{tenant.broadcaster_user_id}"
        await registry.persist()

    await asyncio.gather(*(rotate(t) for t in tenants))

    records = [TenantRecord.model_validate(e) for e in json.loads(store_path.read_text())["streamers"]]
    assert {r.refresh_token for r in records} == {f"rotated-{i}" for i in range(1, 11)}
    assert not store_path.with_name(store_path.name + ".tmp").exists()


@pytest.mark.asyncio
async def test_persist_failure_raises_persistence_error(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("file, not a directory")
    registry = TenantRegistry(str(blocker / "store.json"))
    registry.restore(Tenant(1, refresh_token="r1"))

    with pytest.raises(PersistenceError):
        await registry.persist()
    assert registry.get(1) is not None
