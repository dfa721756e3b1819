import asyncio

import discord
import pytest

from capture.scheduler import CaptureScheduler
from capture.snapshot import SnapshotBuilder
from common.config import Config
from common.errors import NotFound
from common.storage import JsonFileStore
from fakes import FakeGuild, FakeMessage, no_sleep
from restore.rate_limiter import RateLimitManager
from restore.retry import RetryExecutor
from vault.client import BackupClient


class MemoryStore:
    def __init__(self):
        self.docs = {}

    async def put(self, snapshot_id, snapshot):
        self.docs[snapshot_id] = snapshot


@pytest.fixture
def small_guild():
    g = FakeGuild(name="Small")
    chat = g.add_channel("chat", discord.ChannelType.text)
    chat.messages = [FakeMessage(1, "hello")]
    return g


def make_client(tmp_path):
    return BackupClient(
        store=JsonFileStore(str(tmp_path)),
        config=Config(),
        retry=RetryExecutor(sleep=no_sleep),
        pacing=RateLimitManager(sleep=no_sleep),
    )


def make_builder():
    return SnapshotBuilder(retry=RetryExecutor(sleep=no_sleep), pacing=RateLimitManager(sleep=no_sleep))


# ── scheduler ─────────────────────────────────────────────────────────────────


def test_tick_skips_unchanged_guild(small_guild):
    store = MemoryStore()
    sched = CaptureScheduler(make_builder(), store, small_guild, interval=60)

    async def go():
        first = await sched.tick()
        second = await sched.tick()
        small_guild.channels[0].name = "general"
        third = await sched.tick()
        return first, second, third

    first, second, third = asyncio.run(go())

    assert first is not None
    assert second is None
    assert third is not None and third is not first
    assert sched.saved == 2
    assert sched.last is third


def test_tick_always_saves_without_change_detection(small_guild):
    store = MemoryStore()
    sched = CaptureScheduler(
        make_builder(), store, small_guild, interval=60, skip_if_unchanged=False
    )

    async def go():
        await sched.tick()
        await sched.tick()

    asyncio.run(go())

    assert sched.saved == 2


def test_interval_has_a_floor(small_guild):
    sched = CaptureScheduler(make_builder(), MemoryStore(), small_guild, interval=0)
    assert sched.interval == 1.0


def test_loop_survives_failures_and_stops(small_guild):
    waits = []

    class FlakyStore(MemoryStore):
        calls = 0

        async def put(self, snapshot_id, snapshot):
            FlakyStore.calls += 1
            if FlakyStore.calls == 1:
                raise OSError("disk full")
            await super().put(snapshot_id, snapshot)

    async def go():
        done = asyncio.Event()

        async def fake_sleep(seconds):
            waits.append(seconds)
            if len(waits) >= 2:
                done.set()
            await asyncio.sleep(0)

        sched = CaptureScheduler(
            make_builder(), FlakyStore(), small_guild, interval=5, sleep=fake_sleep
        )
        sched.start()
        assert sched.running
        await asyncio.wait_for(done.wait(), timeout=5)
        await sched.stop()
        return sched

    sched = asyncio.run(go())

    assert not sched.running
    assert waits[:2] == [5.0, 5.0]
    assert sched.saved >= 1


# ── client ────────────────────────────────────────────────────────────────────


def test_create_fetch_list_remove(tmp_path, small_guild):
    async def go():
        async with make_client(tmp_path) as client:
            snap = await client.create(small_guild, {"backup_id": "nightly"})
            info = await client.fetch("nightly")
            ids = await client.list()
            await client.remove("nightly")
            return snap, info, ids, await client.list()

    snap, info, ids, after = asyncio.run(go())

    assert snap.id == "nightly"
    assert info.snapshot == snap
    assert info.size_kb > 0
    assert ids == ["nightly"]
    assert after == []
    assert not (tmp_path / "nightly.json").exists()


def test_create_without_json_save_writes_nothing(tmp_path, small_guild):
    async def go():
        async with make_client(tmp_path) as client:
            await client.create(small_guild, {"backup_id": "x", "json_save": False})
            return await client.list()

    assert asyncio.run(go()) == []


def test_create_honours_json_beautify(tmp_path, small_guild):
    async def go():
        async with make_client(tmp_path) as client:
            await client.create(small_guild, {"backup_id": "pretty"})
            await client.create(small_guild, {"backup_id": "flat", "json_beautify": False})
            return await client.fetch("flat")

    info = asyncio.run(go())

    assert "\n    " in (tmp_path / "pretty.json").read_text(encoding="utf-8")
    assert "\n" not in (tmp_path / "flat.json").read_text(encoding="utf-8")
    assert info.snapshot.name == "Small"


def test_fetch_unknown_raises(tmp_path):
    async def go():
        async with make_client(tmp_path) as client:
            await client.fetch("missing")

    with pytest.raises(NotFound):
        asyncio.run(go())


def test_diff_by_id(tmp_path, small_guild):
    async def go():
        async with make_client(tmp_path) as client:
            await client.create(small_guild, {"backup_id": "before"})
            small_guild.channels[0].topic = "changed"
            await client.create(small_guild, {"backup_id": "after"})
            return await client.diff("before", "after")

    d = asyncio.run(go())

    assert d.channels.changed == [str(small_guild.channels[0].id)]
    assert not d.config_changed


def test_load_restores_stored_snapshot(tmp_path, small_guild):
    target = FakeGuild(name="Empty")

    async def go():
        async with make_client(tmp_path) as client:
            await client.create(small_guild, {"backup_id": "base"})
            return await client.load_with_report(
                "base", target, {"clear_guild_before_restore": False}
            )

    report = asyncio.run(go())

    assert report.snapshot.name == "Small"
    assert [c.name for c in target.channels] == ["chat"]
    assert target.channels[0].webhooks[0].sent[0]["content"] == "hello"


def test_schedule_handle_stops_with_client(tmp_path, small_guild):
    async def go():
        client = make_client(tmp_path)
        sched = client.schedule(small_guild, interval=3600)
        assert sched.running
        await client.close()
        return sched

    sched = asyncio.run(go())

    assert not sched.running
