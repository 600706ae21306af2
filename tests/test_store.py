"""
CardGuard — Card Store Test Suite
Run:  pytest tests/ -v --tb=short
"""

import asyncio
import json
import threading
import uuid
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from pydantic import ValidationError

from cardguard.config import Settings
from cardguard.models.models import Card
from cardguard.models.schemas import CardEvent, CardRecord, LastSeen
from cardguard.services.db import build_engine
from cardguard.services.errors import StoreCorruptionError, StoreError
from cardguard.services.store import (
    JsonCardStore,
    SqlCardStore,
    build_card_store,
    push_history,
)

T0 = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
CARD = "4111111111111111"


def _event(i: int = 0, action: str = "checked", **kwargs) -> CardEvent:
    defaults = dict(
        id=f"evt-{i:04d}",
        timestamp=T0 + timedelta(minutes=i),
        action=action,
    )
    if action == "checked":
        defaults.update(lat=0.0, lon=0.0, risk="LOW")
    defaults.update(kwargs)
    return CardEvent(**defaults)


# ===========================================================================
# Fixtures
# ===========================================================================
@pytest.fixture()
def store_path(tmp_path):
    return tmp_path / "data" / "db.json"


@pytest_asyncio.fixture()
async def json_store(store_path):
    store = JsonCardStore(str(store_path))
    await store.startup()
    yield store
    await store.close()


@pytest_asyncio.fixture()
async def sql_store(tmp_path):
    store = SqlCardStore(build_engine(f"sqlite+aiosqlite:///{tmp_path / 'cards.db'}"))
    await store.startup()
    yield store
    await store.close()


@pytest_asyncio.fixture(params=["json", "sql"])
async def store(request, tmp_path):
    """Runs the shared contract against both backends."""
    if request.param == "json":
        s = JsonCardStore(str(tmp_path / "db.json"))
    else:
        s = SqlCardStore(build_engine(f"sqlite+aiosqlite:///{tmp_path / 'cards.db'}"))
    await s.startup()
    yield s
    await s.close()


# ===========================================================================
# ── Unit: bounded history ───────────────────────────────────────────────────
# ===========================================================================
class TestPushHistory:
    def test_newest_first(self):
        history = push_history([], _event(0), limit=200)
        history = push_history(history, _event(1), limit=200)
        assert [e.id for e in history] == ["evt-0001", "evt-0000"]

    def test_overflow_evicts_exactly_the_oldest(self):
        history = []
        for i in range(200):
            history = push_history(history, _event(i), limit=200)
        assert len(history) == 200

        history = push_history(history, _event(200), limit=200)
        assert len(history) == 200
        assert history[0].id == "evt-0200"
        assert history[-1].id == "evt-0001"
        assert "evt-0000" not in {e.id for e in history}

    def test_input_not_mutated(self):
        original = [_event(0)]
        push_history(original, _event(1), limit=1)
        assert [e.id for e in original] == ["evt-0000"]


# ===========================================================================
# ── Contract: both backends ─────────────────────────────────────────────────
# ===========================================================================
@pytest.mark.asyncio
class TestCardStoreContract:
    async def test_get_unknown_returns_none(self, store):
        assert await store.get(CARD) is None

    async def test_get_or_default_does_not_persist(self, store):
        record = await store.get_or_default(CARD)
        assert record.status == "active"
        assert record.reported is False
        assert record.last_seen is None
        assert record.history == []
        assert await store.get(CARD) is None
        assert await store.list_all() == []

    async def test_append_history_creates_record(self, store):
        await store.append_history(CARD, _event(0))
        record = await store.get(CARD)
        assert record is not None
        assert record.status == "active"
        assert [e.id for e in record.history] == ["evt-0000"]

    async def test_set_last_seen_creates_record(self, store):
        await store.set_last_seen(CARD, LastSeen(lat=1.5, lon=2.5, timestamp=T0))
        record = await store.get(CARD)
        assert record.last_seen.lat == 1.5
        assert record.last_seen.lon == 2.5
        assert record.last_seen.timestamp == T0
        assert record.history == []

    async def test_set_last_seen_keeps_unresolved_coordinates(self, store):
        await store.set_last_seen(CARD, LastSeen(lat=None, lon=None, timestamp=T0))
        record = await store.get(CARD)
        assert record.last_seen is not None
        assert record.last_seen.lat is None

    async def test_save_then_get_roundtrip(self, store):
        record = CardRecord(
            card_number=CARD,
            status="frozen",
            reported=True,
            last_seen=LastSeen(lat=-33.9, lon=18.4, timestamp=T0),
            history=[_event(1), _event(0, action="freeze")],
        )
        await store.save(record)
        assert await store.get(CARD) == record

    async def test_save_replaces_existing(self, store):
        await store.save(CardRecord(card_number=CARD))
        await store.save(CardRecord(card_number=CARD, status="blocked"))
        records = await store.list_all()
        assert len(records) == 1
        assert records[0].status == "blocked"

    async def test_get_is_idempotent(self, store):
        await store.append_history(CARD, _event(0))
        first = await store.get(CARD)
        second = await store.get(CARD)
        assert first == second

    async def test_list_all_in_first_seen_order(self, store):
        for number in ("3333", "1111", "2222"):
            await store.append_history(number, _event(0, id=str(uuid.uuid4())))
        assert [r.card_number for r in await store.list_all()] == ["3333", "1111", "2222"]

    async def test_history_capped_at_limit(self, store):
        store.history_limit = 5
        for i in range(6):
            await store.append_history(CARD, _event(i))
        record = await store.get(CARD)
        assert len(record.history) == 5
        assert record.history[0].id == "evt-0005"
        assert record.history[-1].id == "evt-0001"

    async def test_update_returns_mutator_result(self, store):
        def _freeze(record):
            record.status = "frozen"
            return "done"

        record, result = await store.update(CARD, _freeze)
        assert result == "done"
        assert record.status == "frozen"
        assert (await store.get(CARD)).status == "frozen"

    async def test_failed_mutator_persists_nothing(self, store):
        def _boom(record):
            record.status = "blocked"
            raise ValueError("nope")

        with pytest.raises(ValueError):
            await store.update(CARD, _boom)
        assert await store.get(CARD) is None

    async def test_concurrent_updates_same_key_lose_nothing(self, store):
        await asyncio.gather(*(
            store.append_history(CARD, _event(i)) for i in range(20)
        ))
        record = await store.get(CARD)
        assert len(record.history) == 20

    async def test_ping(self, store):
        await store.ping()


# ===========================================================================
# ── JSON backend specifics ──────────────────────────────────────────────────
# ===========================================================================
@pytest.mark.asyncio
class TestJsonCardStore:
    async def test_lazy_bootstrap_creates_empty_document(self, tmp_path):
        path = tmp_path / "nested" / "dir" / "db.json"
        store = JsonCardStore(str(path))
        assert await store.get(CARD) is None
        assert json.loads(path.read_text()) == {"cards": []}

    async def test_bootstrap_is_idempotent_and_never_clobbers(self, json_store, store_path):
        await json_store.append_history(CARD, _event(0))
        await json_store.startup()
        await json_store.ping()
        assert len(json.loads(store_path.read_text())["cards"]) == 1

    async def test_document_layout(self, json_store, store_path):
        await json_store.append_history(CARD, _event(1))
        await json_store.append_history(CARD, _event(2, action="block"))
        await json_store.set_last_seen(CARD, LastSeen(lat=10.0, lon=0.0, timestamp=T0))

        raw = store_path.read_text()
        assert raw.startswith("{\n  ")  # human readable

        doc = json.loads(raw)
        card = doc["cards"][0]
        assert set(card) == {"cardNumber", "status", "reported", "lastSeen", "history"}
        assert card["cardNumber"] == CARD
        assert card["lastSeen"]["lat"] == 10.0

        action_event, check_event = card["history"]
        assert action_event["action"] == "block"
        assert "risk" not in action_event
        assert "lat" not in action_event
        assert check_event["risk"] == "LOW"

    async def test_invalid_json_is_fatal(self, json_store, store_path):
        store_path.write_text("{not json")
        with pytest.raises(StoreCorruptionError):
            await json_store.get(CARD)
        # no repair attempted
        assert store_path.read_text() == "{not json"

    async def test_wrong_shape_is_fatal(self, json_store, store_path):
        store_path.write_text(json.dumps([{"cardNumber": CARD}]))
        with pytest.raises(StoreCorruptionError):
            await json_store.list_all()

    async def test_invalid_record_is_fatal(self, json_store, store_path):
        store_path.write_text(json.dumps({"cards": [{"cardNumber": CARD, "status": "melted"}]}))
        with pytest.raises(StoreCorruptionError):
            await json_store.get(CARD)

    async def test_corruption_blocks_writes(self, json_store, store_path):
        store_path.write_text("garbage")
        with pytest.raises(StoreCorruptionError):
            await json_store.append_history(CARD, _event(0))
        assert store_path.read_text() == "garbage"

    async def test_concurrent_updates_different_keys(self, json_store):
        await asyncio.gather(*(
            json_store.append_history(f"card-{i}", _event(i)) for i in range(15)
        ))
        assert len(await json_store.list_all()) == 15

    async def test_full_history_limit(self, json_store):
        for i in range(201):
            await json_store.append_history(CARD, _event(i))
        record = await json_store.get(CARD)
        assert len(record.history) == 200
        assert record.history[0].id == "evt-0200"
        assert record.history[-1].id == "evt-0001"

    async def test_file_io_runs_off_the_event_loop(self, json_store, monkeypatch):
        loop_thread = threading.get_ident()
        io_threads = []
        read, write = json_store._read_records, json_store._write_records

        def _read():
            io_threads.append(threading.get_ident())
            return read()

        def _write(records):
            io_threads.append(threading.get_ident())
            write(records)

        monkeypatch.setattr(json_store, "_read_records", _read)
        monkeypatch.setattr(json_store, "_write_records", _write)

        await json_store.append_history(CARD, _event(0))
        await json_store.get(CARD)
        await json_store.ping()

        assert len(io_threads) == 4
        assert loop_thread not in io_threads


# ===========================================================================
# ── SQL backend specifics ───────────────────────────────────────────────────
# ===========================================================================
@pytest.mark.asyncio
class TestSqlCardStore:
    async def test_evicted_events_are_deleted(self, sql_store):
        sql_store.history_limit = 3
        for i in range(5):
            await sql_store.append_history(CARD, _event(i))

        from sqlalchemy import func, select
        from cardguard.models.models import CardEventRow

        async with sql_store._session_factory() as session:
            count = (await session.execute(select(func.count()).select_from(CardEventRow))).scalar()
        assert count == 3

    async def test_invalid_row_is_fatal(self, sql_store):
        async with sql_store._session_factory() as session:
            session.add(Card(card_number=CARD, status="melted", reported=False))
            await session.commit()

        with pytest.raises(StoreCorruptionError):
            await sql_store.get(CARD)

    async def test_timestamps_come_back_as_utc(self, sql_store):
        sast = timezone(timedelta(hours=2))
        await sql_store.set_last_seen(
            CARD, LastSeen(lat=0.0, lon=0.0, timestamp=datetime(2024, 1, 1, 14, 0, tzinfo=sast)),
        )
        record = await sql_store.get(CARD)
        assert record.last_seen.timestamp == T0
        assert record.last_seen.timestamp.tzinfo is not None

    async def test_ping_unreachable_database_raises_store_error(self, tmp_path):
        store = SqlCardStore(build_engine(f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'cards.db'}"))
        with pytest.raises(StoreError):
            await store.ping()
        await store.close()


# ===========================================================================
# ── Factory ─────────────────────────────────────────────────────────────────
# ===========================================================================
class TestBuildCardStore:
    def test_json_backend(self, monkeypatch, tmp_path):
        from cardguard.config import settings
        monkeypatch.setattr(settings, "CARD_STORE_PATH", str(tmp_path / "db.json"))
        store = build_card_store("json")
        assert isinstance(store, JsonCardStore)
        assert store.history_limit == settings.HISTORY_LIMIT

    def test_sql_backend(self, monkeypatch, tmp_path):
        from cardguard.config import settings
        monkeypatch.setattr(settings, "DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'x.db'}")
        assert isinstance(build_card_store("sql"), SqlCardStore)

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            build_card_store("redis")

    def test_explicit_history_limit_is_kept(self, tmp_path):
        assert JsonCardStore(str(tmp_path / "db.json"), history_limit=0).history_limit == 0
        assert JsonCardStore(str(tmp_path / "db.json"), history_limit=7).history_limit == 7

    def test_history_limit_defaults_to_settings(self, tmp_path):
        from cardguard.config import settings
        assert JsonCardStore(str(tmp_path / "db.json")).history_limit == settings.HISTORY_LIMIT

    @pytest.mark.parametrize("limit", [0, -1])
    def test_history_limit_setting_must_be_positive(self, limit):
        with pytest.raises(ValidationError):
            Settings(HISTORY_LIMIT=limit)
