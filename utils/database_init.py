import asyncio
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

import aiosqlite


class AsyncDatabaseInitializer:
    """
    Manage the async SQLite library database.

    - The database file is located at: <db_dir>/app.db
    - `db_dir` defaults to the DATABASE_DIR environment variable. A
      RuntimeError is raised if neither is given or the path is invalid
      (not a directory and cannot be created).
    - On the first call to `ensure_database()` for a given instance the
      `request_snapshots` and `result_records` tables are created if missing.
      Existing rows are kept: library records are only removed by an
      explicit delete.
    - Subsequent calls to `ensure_database()` on the same instance are no-ops,
      so it is safe for `connection()` to call it.
    """

    def __init__(self, db_dir: Optional[Path | str] = None) -> None:
        if db_dir is None:
            env_dir = os.getenv("DATABASE_DIR")
            if env_dir is None or not env_dir.strip():
                raise RuntimeError(
                    "DATABASE_DIR environment variable must be set to a writable "
                    "directory path where the SQLite database file will be stored."
                )
            db_dir = env_dir

        db_dir = Path(db_dir).expanduser()

        # If the path exists but is not a directory, that's a configuration error.
        if db_dir.exists() and not db_dir.is_dir():
            raise RuntimeError(
                f"DATABASE_DIR={str(db_dir)!r} points to a file, not a directory "
                f"({db_dir}). Please set DATABASE_DIR to a directory path."
            )

        try:
            db_dir.mkdir(parents=True, exist_ok=True)
        except Exception as exc:
            raise RuntimeError(
                f"Failed to create or access database directory at {db_dir}"
            ) from exc

        self.db_dir = db_dir
        self.db_path = self.db_dir / "app.db"

        self._initialized = False
        self._init_lock = asyncio.Lock()

    async def ensure_database(self) -> None:
        """
        Ensure the SQLite schema exists at `self.db_path`.

        Subsequent calls on the same instance are no-ops.
        """
        if self._initialized:
            return

        async with self._init_lock:
            if self._initialized:
                return

            max_attempts = 3
            for attempt in range(1, max_attempts + 1):
                try:
                    async with aiosqlite.connect(self.db_path) as db:
                        await db.execute("PRAGMA journal_mode=WAL;")
                        await db.execute(
                            """
                            CREATE TABLE IF NOT EXISTS request_snapshots (
                                id INTEGER PRIMARY KEY AUTOINCREMENT,
                                concept TEXT NOT NULL,
                                subject_name TEXT NOT NULL DEFAULT '',
                                point_of_view TEXT NOT NULL DEFAULT 'first',
                                knowledge_base TEXT,
                                reference_description TEXT NOT NULL DEFAULT '',
                                reference_image TEXT NOT NULL DEFAULT '',
                                fingerprint TEXT NOT NULL,
                                created_at TEXT NOT NULL,
                                updated_at TEXT NOT NULL
                            )
                            """
                        )
                        await db.execute(
                            "CREATE INDEX IF NOT EXISTS idx_request_snapshots_updated_at "
                            "ON request_snapshots(updated_at);"
                        )
                        await db.execute(
                            "CREATE INDEX IF NOT EXISTS idx_request_snapshots_fingerprint "
                            "ON request_snapshots(fingerprint);"
                        )
                        await db.execute(
                            """
                            CREATE TABLE IF NOT EXISTS result_records (
                                id INTEGER PRIMARY KEY AUTOINCREMENT,
                                subject_name TEXT NOT NULL DEFAULT '',
                                name TEXT NOT NULL DEFAULT '',
                                description TEXT NOT NULL DEFAULT '',
                                personality TEXT NOT NULL DEFAULT '',
                                scenario TEXT NOT NULL DEFAULT '',
                                first_message TEXT NOT NULL DEFAULT '',
                                illustration BLOB,
                                illustration_type TEXT,
                                illustration_thumbnail BLOB,
                                created_at TEXT NOT NULL,
                                updated_at TEXT NOT NULL
                            )
                            """
                        )
                        await db.execute(
                            "CREATE INDEX IF NOT EXISTS idx_result_records_updated_at "
                            "ON result_records(updated_at);"
                        )
                        await db.commit()
                    break
                except FileNotFoundError:
                    # On some platforms a transient missing file error may occur; retry a few times.
                    if attempt >= max_attempts:
                        raise
                    await asyncio.sleep(0.1 * attempt)

            self._initialized = True

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[aiosqlite.Connection]:
        """
        Async context manager yielding an `aiosqlite.Connection`.

        The schema is created on first use via `ensure_database()`.
        """
        await self.ensure_database()
        conn = await aiosqlite.connect(self.db_path, timeout=30.0)
        try:
            yield conn
        finally:
            await conn.close()
