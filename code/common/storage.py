# =============================================================================
#  Guildvault
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

"""
Snapshot persistence peers.

Both stores expose the same async interface (get / put / delete / list /
size_kb) and upsert by snapshot id; the engine does not care which one is
active. Each store owns its handle and must be opened before use and
closed afterwards.
"""

from __future__ import annotations
import os
import re
import json
import logging
import tempfile
from pathlib import Path
from typing import List, Optional

import aiofiles

from common.db import DBManager
from common.errors import NotFound
from common.logctx import format_prefix
from common.models import Snapshot
from common.serializer import dumps_snapshot, loads_snapshot

logger = logging.getLogger("common.storage")

_SAFE_ID = re.compile(r"^[A-Za-z0-9_.-]+$")


def _check_id(snapshot_id: str) -> str:
    sid = str(snapshot_id)
    if not _SAFE_ID.match(sid) or sid in (".", ".."):
        raise NotFound(f"Snapshot {sid!r} not found")
    return sid


class SnapshotStore:
    async def open(self) -> None:
        pass

    async def close(self) -> None:
        pass

    async def get(self, snapshot_id: str) -> Snapshot:
        raise NotImplementedError

    async def put(
        self, snapshot_id: str, snapshot: Snapshot, beautify: Optional[bool] = None
    ) -> None:
        raise NotImplementedError

    async def delete(self, snapshot_id: str) -> None:
        raise NotImplementedError

    async def list(self) -> List[str]:
        raise NotImplementedError

    async def size_kb(self, snapshot_id: str) -> float:
        raise NotImplementedError

    async def __aenter__(self):
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()


class JsonFileStore(SnapshotStore):
    """One `<id>.json` document per snapshot inside `directory`."""

    def __init__(self, directory: str, beautify: bool = True):
        self.directory = Path(directory)
        self.beautify = beautify

    async def open(self) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, snapshot_id: str) -> Path:
        return self.directory / f"{_check_id(snapshot_id)}.json"

    async def get(self, snapshot_id: str) -> Snapshot:
        path = self._path(snapshot_id)
        if not path.exists():
            raise NotFound(f"Snapshot {snapshot_id!r} not found")
        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            text = await f.read()
        try:
            return loads_snapshot(text)
        except (json.JSONDecodeError, KeyError, ValueError) as e:
            raise NotFound(f"Snapshot {snapshot_id!r} is unreadable: {e}") from e

    async def put(
        self, snapshot_id: str, snapshot: Snapshot, beautify: Optional[bool] = None
    ) -> None:
        """`beautify` overrides the store-wide setting for this one write."""
        path = self._path(snapshot_id)
        self.directory.mkdir(parents=True, exist_ok=True)
        content = dumps_snapshot(
            snapshot, beautify=self.beautify if beautify is None else bool(beautify)
        )

        temp_fd, temp_path = tempfile.mkstemp(
            dir=str(self.directory), prefix=f".{snapshot_id}.", suffix=".tmp"
        )
        os.close(temp_fd)
        try:
            async with aiofiles.open(temp_path, "w", encoding="utf-8") as f:
                await f.write(content)
            os.replace(temp_path, path)
        except Exception:
            if os.path.exists(temp_path):
                os.remove(temp_path)
            raise
        logger.debug("%s[💾] Wrote snapshot %s → %s", format_prefix(), snapshot_id, path)

    async def delete(self, snapshot_id: str) -> None:
        path = self._path(snapshot_id)
        if not path.exists():
            raise NotFound(f"Snapshot {snapshot_id!r} not found")
        path.unlink()
        logger.debug("%s[💾] Deleted snapshot %s", format_prefix(), snapshot_id)

    async def list(self) -> List[str]:
        if not self.directory.exists():
            return []
        return sorted(p.stem for p in self.directory.glob("*.json"))

    async def size_kb(self, snapshot_id: str) -> float:
        path = self._path(snapshot_id)
        if not path.exists():
            raise NotFound(f"Snapshot {snapshot_id!r} not found")
        return round(path.stat().st_size / 1024, 2)


class SqliteSnapshotStore(SnapshotStore):
    """Snapshots kept as JSON documents in the `snapshots` table."""

    def __init__(self, db_path: str, db: Optional[DBManager] = None):
        self.db_path = db_path
        self.db = db
        self._owns_db = db is None

    async def open(self) -> None:
        if self.db is None:
            parent = os.path.dirname(os.path.abspath(self.db_path))
            os.makedirs(parent, exist_ok=True)
            self.db = DBManager(self.db_path, init_schema=True)
            self._owns_db = True
        else:
            self.db._init_schema()

    async def close(self) -> None:
        if self.db is not None and self._owns_db:
            self.db.close()
            self.db = None

    def _conn(self) -> DBManager:
        if self.db is None:
            raise RuntimeError("SqliteSnapshotStore is not open")
        return self.db

    async def get(self, snapshot_id: str) -> Snapshot:
        data = self._conn().get_snapshot_data(str(snapshot_id))
        if data is None:
            raise NotFound(f"Snapshot {snapshot_id!r} not found")
        return loads_snapshot(data)

    async def put(
        self, snapshot_id: str, snapshot: Snapshot, beautify: Optional[bool] = None
    ) -> None:
        # rows are always stored compact
        self._conn().upsert_snapshot(
            str(snapshot_id),
            snapshot.guild_id,
            dumps_snapshot(snapshot),
            snapshot.created_timestamp,
        )
        logger.debug("%s[💾] Stored snapshot %s in %s", format_prefix(), snapshot_id, self.db_path)

    async def delete(self, snapshot_id: str) -> None:
        if not self._conn().delete_snapshot(str(snapshot_id)):
            raise NotFound(f"Snapshot {snapshot_id!r} not found")

    async def list(self) -> List[str]:
        return self._conn().list_snapshot_ids()

    async def size_kb(self, snapshot_id: str) -> float:
        n = self._conn().snapshot_size_bytes(str(snapshot_id))
        if n is None:
            raise NotFound(f"Snapshot {snapshot_id!r} not found")
        return round(n / 1024, 2)


def store_from_config(config) -> SnapshotStore:
    if config.BACKUP_STORAGE == "sqlite":
        return SqliteSnapshotStore(config.DB_PATH)
    return JsonFileStore(config.BACKUP_DIR, beautify=config.JSON_BEAUTIFY)
