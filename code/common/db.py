# =============================================================================
#  Guildvault
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

import sqlite3, threading
from typing import List, Optional


class DBManager:
    def __init__(self, db_path: str, init_schema: bool = False):
        self.path = db_path
        self.conn = sqlite3.connect(self.path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row

        self.conn.execute("PRAGMA journal_mode = DELETE;")
        self.conn.execute("PRAGMA synchronous = FULL;")
        self.conn.execute("PRAGMA busy_timeout = 5000;")
        self.lock = threading.RLock()
        if init_schema:
            self._init_schema()

    def _init_schema(self):
        """
        Initializes the database schema: the snapshot document table and the
        key/value app_config table used for configuration overrides.
        """
        self._ensure_table(
            name="snapshots",
            create_sql_template="""
                CREATE TABLE {table} (
                    id            TEXT PRIMARY KEY,
                    guild_id      TEXT NOT NULL DEFAULT '',
                    data          TEXT NOT NULL,
                    created_at    INTEGER NOT NULL DEFAULT 0,
                    last_updated  TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                );
            """,
            required_columns={"id", "guild_id", "data", "created_at", "last_updated"},
            copy_map={
                "id": "id",
                "guild_id": "guild_id",
                "data": "data",
                "created_at": "created_at",
                "last_updated": "last_updated",
            },
            post_sql=[
                "CREATE INDEX IF NOT EXISTS ix_snapshots_guild ON snapshots(guild_id);",
            ],
        )

        self.conn.execute(
            """
        CREATE TABLE IF NOT EXISTS app_config(
        key           TEXT PRIMARY KEY,
        value         TEXT NOT NULL DEFAULT '',
        last_updated  TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        );
        """
        )
        self.conn.commit()

    def _table_exists(self, name: str) -> bool:
        row = self.conn.execute(
            "SELECT 1 FROM sqlite_master WHERE type='table' AND name=?",
            (name,),
        ).fetchone()
        return row is not None

    def _table_columns(self, name: str) -> set[str]:
        return {
            r[1] for r in self.conn.execute(f"PRAGMA table_info({name})").fetchall()
        }

    def _ensure_table(
        self,
        *,
        name: str,
        create_sql_template: str,
        required_columns: set[str],
        copy_map: dict[str, str],
        post_sql: list[str] | None = None,
    ):
        """
        Create or rebuild table `name` to match the target schema.
        """
        post_sql = post_sql or []

        if not self._table_exists(name):
            self.conn.execute(create_sql_template.replace("{table}", name))
            for stmt in post_sql:
                self.conn.execute(stmt)
            return

        existing_cols = self._table_columns(name)
        if required_columns.issubset(existing_cols):
            for stmt in post_sql:
                self.conn.execute(stmt)
            return

        temp = f"_{name}_new"
        try:
            self.conn.execute("BEGIN;")
            self.conn.execute(create_sql_template.replace("{table}", temp))

            new_cols = list(copy_map.keys())
            select_exprs = []
            for new_col in new_cols:
                expr = copy_map[new_col].strip()
                if expr.isidentifier() and expr not in existing_cols:
                    expr = (
                        "CURRENT_TIMESTAMP"
                        if expr.lower() == "last_updated"
                        else "NULL"
                    )
                select_exprs.append(expr)

            self.conn.execute(
                f"INSERT OR IGNORE INTO {temp} ({', '.join(new_cols)}) "
                f"SELECT {', '.join(select_exprs)} FROM {name}"
            )
            self.conn.execute(f"DROP TABLE {name};")
            self.conn.execute(f"ALTER TABLE {temp} RENAME TO {name};")

            for stmt in post_sql:
                self.conn.execute(stmt)
            self.conn.execute("COMMIT;")
        except Exception:
            self.conn.execute("ROLLBACK;")
            raise

    def close(self) -> None:
        with self.lock:
            self.conn.close()

    # ── app_config ────────────────────────────────────────────────────────────

    def set_config(self, key: str, value: str) -> None:
        with self.lock, self.conn:
            self.conn.execute(
                "INSERT INTO app_config(key,value) VALUES(?,?) "
                "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
                (key, value),
            )

    def get_config(self, key: str, default: str = "") -> str:
        row = self.conn.execute(
            "SELECT value FROM app_config WHERE key=?", (key,)
        ).fetchone()
        return row["value"] if row else default

    # ── snapshots ─────────────────────────────────────────────────────────────

    def upsert_snapshot(
        self, snapshot_id: str, guild_id: str, data: str, created_at: int
    ) -> None:
        with self.lock, self.conn:
            self.conn.execute(
                """
                INSERT INTO snapshots(id, guild_id, data, created_at)
                VALUES(?,?,?,?)
                ON CONFLICT(id) DO UPDATE SET
                    guild_id=excluded.guild_id,
                    data=excluded.data,
                    created_at=excluded.created_at,
                    last_updated=CURRENT_TIMESTAMP
                """,
                (snapshot_id, guild_id, data, int(created_at)),
            )

    def get_snapshot_data(self, snapshot_id: str) -> Optional[str]:
        row = self.conn.execute(
            "SELECT data FROM snapshots WHERE id=?", (snapshot_id,)
        ).fetchone()
        return row["data"] if row else None

    def delete_snapshot(self, snapshot_id: str) -> bool:
        with self.lock, self.conn:
            cur = self.conn.execute("DELETE FROM snapshots WHERE id=?", (snapshot_id,))
            return cur.rowcount > 0

    def list_snapshot_ids(self, guild_id: Optional[str] = None) -> List[str]:
        if guild_id is None:
            rows = self.conn.execute(
                "SELECT id FROM snapshots ORDER BY created_at, id"
            ).fetchall()
        else:
            rows = self.conn.execute(
                "SELECT id FROM snapshots WHERE guild_id=? ORDER BY created_at, id",
                (str(guild_id),),
            ).fetchall()
        return [r["id"] for r in rows]

    def snapshot_size_bytes(self, snapshot_id: str) -> Optional[int]:
        row = self.conn.execute(
            "SELECT length(CAST(data AS BLOB)) AS n FROM snapshots WHERE id=?",
            (snapshot_id,),
        ).fetchone()
        return int(row["n"]) if row else None
