import asyncio
import json

import pytest

from common.config import Config
from common.errors import NotFound
from common.models import BanRecord, RoleRecord, Snapshot
from common.storage import JsonFileStore, SqliteSnapshotStore, store_from_config


def snap(sid, **kw):
    return Snapshot(id=sid, guild_id="g", name="Guild", **kw)


@pytest.fixture(params=["json", "sqlite"])
def store(request, tmp_path):
    if request.param == "json":
        return JsonFileStore(str(tmp_path / "backups"))
    return SqliteSnapshotStore(str(tmp_path / "data" / "vault.db"))


def run(store, coro_fn):
    async def go():
        async with store:
            return await coro_fn(store)

    return asyncio.run(go())


def test_put_get_list_delete(store):
    async def scenario(s):
        await s.put("a", snap("a", created_timestamp=1, roles=(RoleRecord("mods", role_id="4"),)))
        await s.put("b", snap("b", created_timestamp=2))
        got = await s.get("a")
        ids = await s.list()
        await s.delete("a")
        return got, ids, await s.list()

    got, ids, after = run(store, scenario)

    assert got.roles[0].name == "mods"
    assert ids == ["a", "b"]
    assert after == ["b"]


def test_put_replaces_existing(store):
    async def scenario(s):
        await s.put("a", snap("a", bans=(BanRecord("1"),)))
        await s.put("a", snap("a", bans=(BanRecord("1"), BanRecord("2"))))
        return await s.get("a"), await s.list()

    got, ids = run(store, scenario)

    assert [b.user_id for b in got.bans] == ["1", "2"]
    assert ids == ["a"]


def test_missing_snapshot_raises_not_found(store):
    async def scenario(s):
        for op in (s.get, s.delete, s.size_kb):
            with pytest.raises(NotFound):
                await op("nope")

    run(store, scenario)


def test_size_kb_is_positive(store):
    async def scenario(s):
        await s.put("a", snap("a"))
        return await s.size_kb("a")

    assert run(store, scenario) > 0


def test_json_store_rejects_path_like_ids(tmp_path):
    store = JsonFileStore(str(tmp_path))

    async def scenario(s):
        for bad in ("../escape", "a/b", ".."):
            with pytest.raises(NotFound):
                await s.get(bad)

    run(store, scenario)


def test_json_store_writes_readable_documents(tmp_path):
    store = JsonFileStore(str(tmp_path), beautify=True)

    run(store, lambda s: s.put("pretty", snap("pretty")))

    text = (tmp_path / "pretty.json").read_text(encoding="utf-8")
    assert "\n    " in text
    assert json.loads(text)["name"] == "Guild"
    # no temp files left behind
    assert [p.name for p in tmp_path.iterdir()] == ["pretty.json"]


def test_json_store_reports_corrupt_file(tmp_path):
    (tmp_path / "broken.json").write_text("{not json", encoding="utf-8")

    with pytest.raises(NotFound):
        run(JsonFileStore(str(tmp_path)), lambda s: s.get("broken"))


def test_store_from_config(monkeypatch, tmp_path):
    monkeypatch.setenv("BACKUP_DIR", str(tmp_path))
    assert isinstance(store_from_config(Config()), JsonFileStore)

    monkeypatch.setenv("BACKUP_STORAGE", "sqlite")
    monkeypatch.setenv("DB_PATH", str(tmp_path / "v.db"))
    chosen = store_from_config(Config())
    assert isinstance(chosen, SqliteSnapshotStore)
    assert chosen.db_path == str(tmp_path / "v.db")
