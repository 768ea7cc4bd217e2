import asyncio

import pytest

from swapengine.errors import ArchivedRecordError, StaleWriteError
from swapengine.models import LockRef, SwapRecord, SwapStatus
from swapengine.store import InMemorySwapStore, JsonSwapStore


def record(swap_id="swap_1", **changes):
    return SwapRecord(
        swap_id=swap_id,
        source_lock=LockRef(ledger_id="src", lock_id="0x01"),
        commitment="0x" + "ab" * 32,
        source_timelock=1_700_100_000,
        **changes,
    )


@pytest.fixture(params=["memory", "json"])
def store(request, tmp_path):
    if request.param == "memory":
        return InMemorySwapStore()
    return JsonSwapStore(str(tmp_path / "state"))


class TestVersioning:
    def test_save_bumps_version(self, store):
        async def scenario():
            saved = await store.save(record())
            assert saved.version == 1
            again = await store.save(saved.model_copy(update={"status": SwapStatus.SOURCE_LOCKED}))
            assert again.version == 2
            loaded = await store.load("swap_1")
            assert loaded.status is SwapStatus.SOURCE_LOCKED
            assert loaded.version == 2

        asyncio.run(scenario())

    def test_stale_write_is_rejected(self, store):
        async def scenario():
            first = await store.save(record())
            await store.save(first)
            with pytest.raises(StaleWriteError):
                await store.save(first)
            with pytest.raises(StaleWriteError):
                await store.save(record())

        asyncio.run(scenario())

    def test_load_unknown_swap(self, store):
        assert asyncio.run(store.load("nope")) is None


class TestArchive:
    def test_archived_record_is_immutable(self, store):
        async def scenario():
            saved = await store.save(record(status=SwapStatus.COMPLETED))
            await store.archive("swap_1")
            with pytest.raises(ArchivedRecordError):
                await store.save(saved)
            assert (await store.load("swap_1")).status is SwapStatus.COMPLETED

        asyncio.run(scenario())

    def test_load_active_skips_terminal_records(self, store):
        async def scenario():
            await store.save(record("swap_a", status=SwapStatus.DEST_LOCKED))
            await store.save(record("swap_b", status=SwapStatus.COMPLETED))
            await store.save(record("swap_c", status=SwapStatus.FAILED))
            await store.archive("swap_c")
            active = await store.load_active()
            assert [r.swap_id for r in active] == ["swap_a"]
            assert sorted(r.swap_id for r in await store.list_all()) == ["swap_a", "swap_b", "swap_c"]

        asyncio.run(scenario())


class TestCheckpoints:
    def test_checkpoint_round_trip(self, store):
        async def scenario():
            assert await store.load_checkpoint("src") is None
            await store.save_checkpoint("src", 10)
            await store.save_checkpoint("dst", 4)
            await store.save_checkpoint("src", 12)
            assert await store.load_checkpoint("src") == 12
            assert await store.load_checkpoint("dst") == 4

        asyncio.run(scenario())


def test_json_store_survives_restart(tmp_path):
    async def scenario():
        path = str(tmp_path / "state")
        first = JsonSwapStore(path)
        saved = await first.save(record(secret="0x" + "11" * 32, processed_events=["src:0xtx:0"]))
        await first.save_checkpoint("src", 7)

        second = JsonSwapStore(path)
        loaded = await second.load("swap_1")
        assert loaded == saved
        assert await second.load_checkpoint("src") == 7
        assert (tmp_path / "state" / "swaps" / "swap_1.json").exists()

        await second.save(loaded.model_copy(update={"status": SwapStatus.FAILED}))
        await second.archive("swap_1")
        assert not (tmp_path / "state" / "swaps" / "swap_1.json").exists()
        assert (tmp_path / "state" / "archive" / "swap_1.json").exists()
        assert await second.load_active() == []

    asyncio.run(scenario())
