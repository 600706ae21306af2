"""
CardGuard — Card Store

Durable mapping card number → CardRecord (status, last-seen location,
bounded newest-first history).

Every mutation goes through one serialization point, ``update()``:
the record (or a fresh default) is loaded, mutated and persisted while the
key's lock is held, so concurrent checks and actions cannot lose updates.

Backends
--------
JsonCardStore : one human-readable document ``{"cards": [...]}``, rewritten
                wholesale on every mutation.  The whole file is the unit of
                write, so a single store-wide lock serializes all writers.
SqlCardStore  : ``cards`` + ``card_events`` tables.  Per-key locks; writes to
                different cards proceed independently.
"""

import asyncio
import json
import logging
import os
import weakref
from abc import ABC, abstractmethod
from collections import deque
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

from pydantic import ValidationError
from sqlalchemy import select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from cardguard.config import settings
from cardguard.models.models import Card, CardEventRow
from cardguard.models.schemas import CardEvent, CardRecord, LastSeen
from cardguard.services.db import build_engine, build_session_factory, init_db
from cardguard.services.errors import StoreCorruptionError, StoreError

logger = logging.getLogger("cardguard.store")

T = TypeVar("T")
Mutator = Callable[[CardRecord], T]


def push_history(
    history: Sequence[CardEvent],
    event: CardEvent,
    limit: int,
) -> List[CardEvent]:
    """Prepend *event*; anything beyond *limit* falls off the old end."""
    window: deque = deque(history[:limit], maxlen=limit)
    window.appendleft(event)
    return list(window)


# ===========================================================================
# Contract
# ===========================================================================
class CardStore(ABC):
    backend = "abstract"

    def __init__(self, history_limit: Optional[int] = None):
        self.history_limit = settings.HISTORY_LIMIT if history_limit is None else history_limit

    # ── lifecycle ──────────────────────────────────────────────────────────
    async def startup(self) -> None:
        """Prepare the backing resource.  Idempotent."""

    async def close(self) -> None:
        """Release the backing resource."""

    @abstractmethod
    async def ping(self) -> None:
        """Raise if the backing resource is unusable."""

    # ── reads ──────────────────────────────────────────────────────────────
    @abstractmethod
    async def get(self, card_number: str) -> Optional[CardRecord]:
        """Stored record, or None.  Never creates anything."""

    @abstractmethod
    async def list_all(self) -> List[CardRecord]:
        """All records in first-seen order."""

    async def get_or_default(self, card_number: str) -> CardRecord:
        """Stored record, or an unsaved default one."""
        record = await self.get(card_number)
        return record if record is not None else CardRecord.default(card_number)

    # ── writes ─────────────────────────────────────────────────────────────
    @abstractmethod
    async def _transact(
        self,
        card_number: str,
        fn: Callable[[CardRecord], Tuple[CardRecord, Any]],
    ) -> Tuple[CardRecord, Any]:
        """
        Load *card_number* (or a default), call ``fn(record)`` → (new_record,
        result) and persist new_record, all under the key's lock.  Nothing is
        written if *fn* raises.
        """

    async def update(
        self,
        card_number: str,
        mutator: Mutator,
    ) -> Tuple[CardRecord, Any]:
        """Mutate one record in place under the key's lock; returns (record, mutator result)."""

        def _apply(record: CardRecord) -> Tuple[CardRecord, Any]:
            result = mutator(record)
            return record, result

        return await self._transact(card_number, _apply)

    async def save(self, record: CardRecord) -> None:
        """Upsert *record* by card number."""
        replacement = record.model_copy(deep=True)
        await self._transact(record.card_number, lambda _current: (replacement, None))

    async def append_history(self, card_number: str, event: CardEvent) -> None:
        def _push(record: CardRecord) -> None:
            record.history = push_history(record.history, event, self.history_limit)

        await self.update(card_number, _push)

    async def set_last_seen(self, card_number: str, last_seen: LastSeen) -> None:
        def _set(record: CardRecord) -> None:
            record.last_seen = last_seen

        await self.update(card_number, _set)

    def _cap(self, record: CardRecord) -> CardRecord:
        if len(record.history) > self.history_limit:
            record.history = list(record.history[: self.history_limit])
        return record


# ===========================================================================
# JSON document backend
# ===========================================================================
class JsonCardStore(CardStore):
    backend = "json"

    def __init__(self, path: str, history_limit: Optional[int] = None):
        super().__init__(history_limit)
        self.path = Path(path)
        self._lock = asyncio.Lock()

    async def startup(self) -> None:
        await asyncio.to_thread(self._ensure)
        logger.info("JSON card store ready at %s", self.path)

    async def ping(self) -> None:
        await asyncio.to_thread(self._read_records)

    async def get(self, card_number: str) -> Optional[CardRecord]:
        for record in await asyncio.to_thread(self._read_records):
            if record.card_number == card_number:
                return record
        return None

    async def list_all(self) -> List[CardRecord]:
        return await asyncio.to_thread(self._read_records)

    async def _transact(self, card_number, fn):
        async with self._lock:
            records = await asyncio.to_thread(self._read_records)
            index = next(
                (i for i, r in enumerate(records) if r.card_number == card_number),
                None,
            )
            current = records[index] if index is not None else CardRecord.default(card_number)

            record, result = fn(current)
            record = self._cap(record)

            if index is None:
                records.append(record)
            else:
                records[index] = record
            await asyncio.to_thread(self._write_records, records)
            return record, result

    # ── file handling ──────────────────────────────────────────────────────
    def _ensure(self) -> None:
        """Create the directory and an empty document if missing.  Safe on every read."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with open(self.path, "x", encoding="utf-8") as fh:
                json.dump({"cards": []}, fh, indent=2)
        except FileExistsError:
            pass

    def _read_records(self) -> List[CardRecord]:
        self._ensure()
        raw = self.path.read_text(encoding="utf-8")
        try:
            document = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise StoreCorruptionError(f"{self.path}: invalid JSON ({exc})") from exc

        if not isinstance(document, dict) or not isinstance(document.get("cards"), list):
            raise StoreCorruptionError(f"{self.path}: expected an object with a 'cards' list")

        try:
            return [CardRecord.model_validate(item) for item in document["cards"]]
        except ValidationError as exc:
            raise StoreCorruptionError(
                f"{self.path}: card record failed validation ({exc.error_count()} errors)"
            ) from exc

    def _write_records(self, records: List[CardRecord]) -> None:
        document = {"cards": [r.to_document() for r in records]}
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as fh:
            json.dump(document, fh, indent=2)
        os.replace(tmp_path, self.path)


# ===========================================================================
# SQL backend
# ===========================================================================
class SqlCardStore(CardStore):
    backend = "sql"

    def __init__(self, engine: AsyncEngine, history_limit: Optional[int] = None):
        super().__init__(history_limit)
        self.engine = engine
        self._session_factory = build_session_factory(engine)
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    async def startup(self) -> None:
        database = self.engine.url.database
        if self.engine.url.get_backend_name() == "sqlite" and database and database != ":memory:":
            Path(database).parent.mkdir(parents=True, exist_ok=True)
        await init_db(self.engine)
        logger.info("SQL card store ready (%s)", self.engine.url.get_backend_name())

    async def close(self) -> None:
        await self.engine.dispose()

    async def ping(self) -> None:
        try:
            async with self.engine.connect() as conn:
                value = (await conn.execute(text("SELECT 1"))).scalar()
        except SQLAlchemyError as exc:
            raise StoreError(f"database unreachable: {exc}") from exc
        if value != 1:
            raise StoreError(f"unexpected ping result: {value!r}")

    async def get(self, card_number: str) -> Optional[CardRecord]:
        async with self._session_factory() as session:
            row = await self._fetch(session, card_number)
            return self._to_record(row) if row is not None else None

    async def list_all(self) -> List[CardRecord]:
        async with self._session_factory() as session:
            stmt = select(Card).order_by(Card.id)
            result = await session.execute(stmt)
            return [self._to_record(row) for row in result.scalars()]

    def _lock_for(self, card_number: str) -> asyncio.Lock:
        lock = self._locks.get(card_number)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[card_number] = lock
        return lock

    async def _transact(self, card_number, fn):
        async with self._lock_for(card_number):
            async with self._session_factory() as session:
                async with session.begin():
                    row = await self._fetch(session, card_number)
                    current = (
                        self._to_record(row) if row is not None
                        else CardRecord.default(card_number)
                    )
                    record, result = fn(current)
                    record = self._cap(record)

                    if row is None:
                        row = Card(card_number=card_number, events=[])
                        session.add(row)
                    self._apply(session, row, record)
            return record, result

    # ── row mapping ────────────────────────────────────────────────────────
    @staticmethod
    async def _fetch(session, card_number: str) -> Optional[Card]:
        stmt = (
            select(Card)
            .where(Card.card_number == card_number)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    def _to_record(row: Card) -> CardRecord:
        last_seen = None
        if row.last_seen_at is not None:
            last_seen = {
                "lat": row.last_seen_lat,
                "lon": row.last_seen_lon,
                "timestamp": row.last_seen_at,
            }
        try:
            return CardRecord.model_validate({
                "card_number": row.card_number,
                "status": row.status,
                "reported": row.reported,
                "last_seen": last_seen,
                "history": [
                    {
                        "id": ev.event_id,
                        "timestamp": ev.timestamp,
                        "lat": ev.lat,
                        "lon": ev.lon,
                        "risk": ev.risk,
                        "action": ev.action,
                    }
                    for ev in row.events
                ],
            })
        except ValidationError as exc:
            raise StoreCorruptionError(
                f"card row {row.id}: failed validation ({exc.error_count()} errors)"
            ) from exc

    @staticmethod
    def _apply(session, row: Card, record: CardRecord) -> None:
        row.status = record.status
        row.reported = record.reported
        if record.last_seen is not None:
            row.last_seen_lat = record.last_seen.lat
            row.last_seen_lon = record.last_seen.lon
            row.last_seen_at = record.last_seen.timestamp
        else:
            row.last_seen_lat = row.last_seen_lon = row.last_seen_at = None

        keep: Dict[str, CardEvent] = {event.id: event for event in record.history}
        existing = {ev.event_id for ev in row.events}

        # Evicted events go through delete-orphan
        for ev in list(row.events):
            if ev.event_id not in keep:
                row.events.remove(ev)

        # record.history is newest-first; insert oldest new event first so seq grows
        for event in reversed(record.history):
            if event.id in existing:
                continue
            ev_row = CardEventRow(
                event_id=event.id,
                timestamp=event.timestamp,
                lat=event.lat,
                lon=event.lon,
                risk=event.risk,
                action=event.action,
            )
            row.events.append(ev_row)
            session.add(ev_row)


# ===========================================================================
# Factory
# ===========================================================================
def build_card_store(backend: Optional[str] = None) -> CardStore:
    backend = (backend or settings.CARD_STORE_BACKEND).lower()
    if backend == "json":
        return JsonCardStore(settings.CARD_STORE_PATH)
    if backend == "sql":
        return SqlCardStore(build_engine(settings.DATABASE_URL))
    raise ValueError(f"Unknown CARD_STORE_BACKEND: {backend!r}")
