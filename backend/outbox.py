from __future__ import annotations
import json
import os
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Literal, Optional

import anyio
from pydantic import BaseModel

from config import settings
from schemas import CheckoutDraft, ShippingDetails


class OutboxEntry(BaseModel):
    """A captured payment whose order write has not landed yet."""
    payment_id: str
    gateway_order_id: str
    order_id: Optional[str] = None
    checkout: Optional[CheckoutDraft] = None
    shipping: Optional[ShippingDetails] = None
    amount: float
    signature: Optional[str] = None
    state: Literal["pending", "rejected"] = "pending"
    attempts: int = 0
    last_error: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class PaymentOutbox(ABC):
    """Payments awaiting their order write. Entries leave only through ``complete``."""

    def __init__(self, max_attempts: int = 5):
        self.max_attempts = max_attempts
        # held across every load-modify-save
        self._lock = anyio.Lock()

    @abstractmethod
    async def _load(self) -> dict[str, OutboxEntry]: ...

    @abstractmethod
    async def _save(self, entries: dict[str, OutboxEntry]) -> None: ...

    async def record(self, entry: OutboxEntry) -> OutboxEntry:
        async with self._lock:
            entries = await self._load()
            existing = entries.get(entry.payment_id)
            if existing:
                # Replayed callback; keep the attempt history
                return existing
            entries[entry.payment_id] = entry
            await self._save(entries)
            return entry

    async def get(self, payment_id: str) -> Optional[OutboxEntry]:
        async with self._lock:
            return (await self._load()).get(payment_id)

    async def all(self) -> list[OutboxEntry]:
        async with self._lock:
            entries = await self._load()
        return sorted(entries.values(), key=lambda e: e.created_at)

    async def retryable(self) -> list[OutboxEntry]:
        return [e for e in await self.all() if e.state == "pending" and e.attempts < self.max_attempts]

    async def mark_attempt(self, payment_id: str, error: str, rejected: bool = False) -> Optional[OutboxEntry]:
        async with self._lock:
            entries = await self._load()
            entry = entries.get(payment_id)
            if entry is None:
                return None
            entry.attempts += 1
            entry.last_error = error
            entry.updated_at = datetime.utcnow()
            if rejected:
                entry.state = "rejected"
            await self._save(entries)
            return entry

    async def complete(self, payment_id: str) -> None:
        async with self._lock:
            entries = await self._load()
            if entries.pop(payment_id, None) is not None:
                await self._save(entries)


class MemoryOutbox(PaymentOutbox):
    def __init__(self, max_attempts: int = 5):
        super().__init__(max_attempts)
        self._entries: dict[str, OutboxEntry] = {}

    async def _load(self) -> dict[str, OutboxEntry]:
        return {k: v.model_copy(deep=True) for k, v in self._entries.items()}

    async def _save(self, entries: dict[str, OutboxEntry]) -> None:
        self._entries = {k: v.model_copy(deep=True) for k, v in entries.items()}


class JsonFileOutbox(PaymentOutbox):
    """Outbox kept in one JSON file, rewritten atomically on every change.

    The lock is per process: run a single worker per outbox file.
    """

    def __init__(self, path: str, max_attempts: int = 5):
        super().__init__(max_attempts)
        self.path = path

    def _read(self) -> dict:
        if not os.path.exists(self.path):
            return {}
        with open(self.path, "r", encoding="utf-8") as fh:
            return json.load(fh)

    def _write(self, raw: dict) -> None:
        tmp = f"{self.path}.tmp"
        with open(tmp, "w", encoding="utf-8") as fh:
            json.dump(raw, fh, indent=2)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp, self.path)

    async def _load(self) -> dict[str, OutboxEntry]:
        raw = await anyio.to_thread.run_sync(self._read)
        return {k: OutboxEntry.model_validate(v) for k, v in raw.items()}

    async def _save(self, entries: dict[str, OutboxEntry]) -> None:
        raw = {k: v.model_dump(mode="json") for k, v in entries.items()}
        await anyio.to_thread.run_sync(self._write, raw)


_outbox: Optional[PaymentOutbox] = None


def get_outbox() -> PaymentOutbox:
    global _outbox
    if _outbox is None:
        _outbox = JsonFileOutbox(settings.PAYMENT_OUTBOX_PATH, settings.PAYMENT_OUTBOX_MAX_ATTEMPTS)
    return _outbox
