"""Per-gem hit/miss bookkeeping backed by SQL."""

from __future__ import annotations

from pathlib import Path

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import make_url


class GemCacheStats:
    def __init__(self, database_url: str):
        self._engine = self._create_engine(database_url)
        self._initialise()

    @staticmethod
    def _create_engine(database_url: str) -> Engine:
        url = make_url(database_url)
        if url.drivername.startswith("sqlite") and url.database and url.database != ":memory:":
            db_path = Path(url.database).expanduser()
            if not db_path.is_absolute():
                db_path = (Path.cwd() / db_path).resolve()
            db_path.parent.mkdir(parents=True, exist_ok=True)
            url = url.set(database=db_path.as_posix())
            database_url = url.render_as_string(hide_password=False)
        return create_engine(database_url, future=True, pool_pre_ping=True)

    def _initialise(self) -> None:
        with self._engine.begin() as conn:
            conn.execute(
                text(
                    """
                    CREATE TABLE IF NOT EXISTS gem_cache_stats (
                        gem_id TEXT PRIMARY KEY,
                        upstream TEXT,
                        total_hits INTEGER NOT NULL DEFAULT 0,
                        total_misses INTEGER NOT NULL DEFAULT 0,
                        bytes_served INTEGER NOT NULL DEFAULT 0,
                        last_access TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
                    )
                    """
                )
            )

    def record_hit(self, gem_id: str, upstream: str, bytes_served: int) -> None:
        with self._engine.begin() as conn:
            conn.execute(
                text(
                    """
                    INSERT INTO gem_cache_stats (gem_id, upstream, total_hits, bytes_served, last_access)
                    VALUES (:gem_id, :upstream, 1, :bytes_served, CURRENT_TIMESTAMP)
                    ON CONFLICT(gem_id) DO UPDATE SET
                        total_hits = total_hits + 1,
                        bytes_served = bytes_served + :bytes_served,
                        last_access = CURRENT_TIMESTAMP
                    """
                ),
                {"gem_id": gem_id, "upstream": upstream, "bytes_served": bytes_served},
            )

    def record_miss(self, gem_id: str, upstream: str, bytes_served: int = 0) -> None:
        with self._engine.begin() as conn:
            conn.execute(
                text(
                    """
                    INSERT INTO gem_cache_stats (gem_id, upstream, total_misses, bytes_served, last_access)
                    VALUES (:gem_id, :upstream, 1, :bytes_served, CURRENT_TIMESTAMP)
                    ON CONFLICT(gem_id) DO UPDATE SET
                        total_misses = total_misses + 1,
                        bytes_served = bytes_served + :bytes_served,
                        last_access = CURRENT_TIMESTAMP
                    """
                ),
                {"gem_id": gem_id, "upstream": upstream, "bytes_served": bytes_served},
            )

    def get(self, gem_id: str) -> dict[str, object] | None:
        with self._engine.connect() as conn:
            row = conn.execute(
                text(
                    """
                    SELECT gem_id, upstream, total_hits, total_misses, bytes_served, last_access
                    FROM gem_cache_stats
                    WHERE gem_id = :gem_id
                    """
                ),
                {"gem_id": gem_id},
            ).mappings().first()
        return dict(row) if row else None

    def top_entries(self, limit: int = 10) -> list[dict[str, object]]:
        with self._engine.connect() as conn:
            result = conn.execute(
                text(
                    """
                    SELECT gem_id, upstream, total_hits, total_misses, bytes_served, last_access
                    FROM gem_cache_stats
                    ORDER BY total_hits DESC, gem_id ASC
                    LIMIT :limit
                    """
                ),
                {"limit": limit},
            )
            rows = result.mappings().all()
        return [dict(row) for row in rows]

    def total_entries(self) -> int:
        with self._engine.connect() as conn:
            count = conn.execute(text("SELECT COUNT(*) FROM gem_cache_stats")).scalar_one()
        return int(count)

    def dispose(self) -> None:
        self._engine.dispose()
