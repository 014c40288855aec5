import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import ValidationError

from .constants import PersistenceError
from .tenant import Tenant, TenantRecord

logger = logging.getLogger(__name__)


class TenantRegistry:
    """
    Owns every onboarded tenant and the JSON snapshot they are persisted to.

    Two indices are kept in step: broadcaster id -> tenant and subscription
    id -> tenant. Index mutations never await, so they are atomic with
    respect to other tasks; writes to disk are serialized by one lock and
    always rewrite the whole collection.
    """

    def __init__(self, store_path: str):
        self.store_path = Path(store_path).resolve()
        self._tenants: Dict[int, Tenant] = {}
        self._by_subscription: Dict[str, Tenant] = {}
        self._write_lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._tenants)

    def __contains__(self, broadcaster_user_id: int) -> bool:
        return broadcaster_user_id in self._tenants

    def get(self, broadcaster_user_id: int) -> Optional[Tenant]:
        return self._tenants.get(broadcaster_user_id)

    def by_subscription(self, subscription_id: Optional[str]) -> Optional[Tenant]:
        if not subscription_id:
            return None
        return self._by_subscription.get(subscription_id)

    def all(self) -> List[Tenant]:
        return list(self._tenants.values())

    def is_current(self, tenant: Tenant) -> bool:
        """True while `tenant` is the registered object for its broadcaster id."""
        return self._tenants.get(tenant.broadcaster_user_id) is tenant

    def load(self) -> List[TenantRecord]:
        """
        Read the persisted tenant records.

        Returns:
            The records in stored order; an empty list when no store exists yet

        Raises:
            PersistenceError: If the store exists but cannot be read or parsed
        """
        if not self.store_path.exists():
            logger.info(f"No tenant store at {self.store_path} yet.")
            return []

        try:
            with open(self.store_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise PersistenceError(f"Could not read tenant store {self.store_path}: {e}") from e

        entries = data.get("streamers") if isinstance(data, dict) else None
        if not isinstance(entries, list):
            raise PersistenceError(f"Tenant store {self.store_path} has no 'streamers' list.")

        records = []
        for entry in entries:
            try:
                records.append(TenantRecord.model_validate(entry))
            except ValidationError as e:
                logger.warning(f"Skipping malformed tenant entry in {self.store_path}: {e}")
        return records

    def restore(self, tenant: Tenant) -> None:
        """Insert a tenant loaded from disk without writing the store."""
        self._index(tenant)

    async def upsert(self, tenant: Tenant) -> None:
        """
        Store `tenant` as the record for its broadcaster id and flush the snapshot.
        A superseded tenant object loses its subscription mapping and its tasks.
        """
        self._index(tenant)
        await self.persist()

    async def set_subscription(self, tenant: Tenant, subscription_id: Optional[str], persist: bool = True) -> None:
        """Change a tenant's subscription id, keeping the reverse index consistent."""
        if tenant.subscription_id and self._by_subscription.get(tenant.subscription_id) is tenant:
            del self._by_subscription[tenant.subscription_id]
        tenant.subscription_id = subscription_id
        if subscription_id and self.is_current(tenant):
            self._by_subscription[subscription_id] = tenant
        if persist:
            await self.persist()

    async def remove(self, broadcaster_user_id: int) -> Optional[Tenant]:
        """Drop a tenant from both indices, cancel its tasks and flush the snapshot."""
        tenant = self._tenants.pop(broadcaster_user_id, None)
        if tenant is None:
            return None
        if tenant.subscription_id and self._by_subscription.get(tenant.subscription_id) is tenant:
            del self._by_subscription[tenant.subscription_id]
        tenant.cancel_tasks()
        await self.persist()
        return tenant

    async def persist(self) -> None:
        """
        Rewrite the store from the in-memory state.

        Raises:
            PersistenceError: If the write fails; memory stays authoritative
        """
        async with self._write_lock:
            # Snapshot inside the lock so the last writer always sees the latest state
            payload = {"streamers": [t.to_record().model_dump(by_alias=True) for t in self._tenants.values()]}
            try:
                await asyncio.to_thread(self._write_snapshot, payload)
            except OSError as e:
                raise PersistenceError(f"Could not write tenant store {self.store_path}: {e}") from e
        logger.info(f"Updated tenant store at {self.store_path} ({len(payload['streamers'])} streamers)")

    def _write_snapshot(self, payload: dict) -> None:
        self.store_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.store_path.with_name(self.store_path.name + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, self.store_path)

    def _index(self, tenant: Tenant) -> None:
        previous = self._tenants.get(tenant.broadcaster_user_id)
        if previous is not None and previous is not tenant:
            if previous.subscription_id and self._by_subscription.get(previous.subscription_id) is previous:
                del self._by_subscription[previous.subscription_id]
            previous.cancel_tasks()
        self._tenants[tenant.broadcaster_user_id] = tenant
        if tenant.subscription_id:
            self._by_subscription[tenant.subscription_id] = tenant
