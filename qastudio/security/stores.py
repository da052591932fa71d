"""Secret record stores used by key rotation."""

import asyncio
import logging
from typing import Iterable, Optional

from .rotation import SecretRecord
from .vault import VaultClient

logger = logging.getLogger(__name__)


class InMemorySecretStore:
    """Records kept in a dict (scripts and tests)."""

    def __init__(self, records: Optional[Iterable[SecretRecord]] = None):
        self._records: dict[str, SecretRecord] = {r.id: r for r in records or []}

    async def list_records(self) -> list[SecretRecord]:
        return list(self._records.values())

    async def update_record(self, record_id: str, value: str) -> None:
        record = self._records.get(record_id)
        if record is None:
            raise KeyError(f"Unknown record: {record_id}")
        self._records[record_id] = SecretRecord(id=record.id, name=record.name, value=value)

    def get(self, record_id: str) -> SecretRecord:
        return self._records[record_id]


class VaultSecretStore:
    """Records stored as Vault KV entries under a base path.

    Each entry ``{base_path}/{id}`` holds the envelope in ``field`` and an
    optional display name in ``name``. Other data in the entry is preserved
    on update.
    """

    def __init__(self, vault_client: VaultClient, base_path: str, field: str = "secret"):
        self.vault = vault_client
        self.base_path = base_path.strip("/")
        self.field = field

    async def list_records(self) -> list[SecretRecord]:
        names = await asyncio.to_thread(self.vault.list_secrets, self.base_path)
        records = []
        for name in names:
            if name.endswith("/"):
                continue
            data = await asyncio.to_thread(self.vault.read_secret, self._path(name))
            value = data.get(self.field)
            if not value:
                logger.warning(f"Vault entry {self._path(name)} has no '{self.field}' field, skipping")
                continue
            records.append(SecretRecord(id=name, name=data.get("name", name), value=value))
        return records

    async def update_record(self, record_id: str, value: str) -> None:
        path = self._path(record_id)
        data = await asyncio.to_thread(self.vault.read_secret, path)
        await asyncio.to_thread(self.vault.write_secret, path, {**data, self.field: value})

    def _path(self, record_id: str) -> str:
        return f"{self.base_path}/{record_id}"
