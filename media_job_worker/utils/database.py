"""
Database utilities for the media job worker

Provides the asyncpg connection pool and the queries behind the PostgreSQL
checkpoint store.
"""

import json
import asyncpg
from typing import Dict, Optional
from contextlib import asynccontextmanager

from ..core.exceptions import DatabaseError


SCHEMA = """
CREATE TABLE IF NOT EXISTS job_checkpoints (
    job_id      TEXT PRIMARY KEY,
    cursors     JSONB NOT NULL DEFAULT '{}'::jsonb,
    updated_at  TIMESTAMPTZ NOT NULL DEFAULT now()
)
"""


class DatabaseManager:
    """
    Manages the PostgreSQL connection pool for the worker.

    One row per job holds every stage cursor of that job; writes are single
    upsert statements so a cursor update is atomic on its own.
    """

    def __init__(
        self,
        connection_string: str,
        min_size: int = 1,
        max_size: int = 5,
        command_timeout: float = 30.0
    ):
        """
        Initialize database manager.

        Args:
            connection_string: PostgreSQL connection string
            min_size: Minimum pool size
            max_size: Maximum pool size
            command_timeout: Per-statement timeout in seconds
        """
        self.connection_string = connection_string
        self.min_size = min_size
        self.max_size = max_size
        self.command_timeout = command_timeout
        self.pool: Optional[asyncpg.Pool] = None

    async def initialize(self) -> None:
        """Create the connection pool and make sure the schema exists."""
        if self.pool:
            return
        try:
            self.pool = await asyncpg.create_pool(
                self.connection_string,
                min_size=self.min_size,
                max_size=self.max_size,
                command_timeout=self.command_timeout
            )
            async with self.pool.acquire() as connection:
                await connection.execute(SCHEMA)
        except Exception as e:
            raise DatabaseError("initialization", f"Failed to create connection pool: {str(e)}")

    async def close(self) -> None:
        """Close database connection pool."""
        if self.pool:
            await self.pool.close()
            self.pool = None

    @asynccontextmanager
    async def get_connection(self):
        """Get a database connection from the pool."""
        if not self.pool:
            raise DatabaseError("connection", "Database pool not initialized")

        async with self.pool.acquire() as connection:
            yield connection

    # Checkpoint queries
    async def fetch_checkpoint(self, job_id: str) -> Dict[str, int]:
        """Get every stage cursor stored for a job."""
        try:
            async with self.get_connection() as conn:
                raw = await conn.fetchval(
                    "SELECT cursors FROM job_checkpoints WHERE job_id = $1", job_id
                )
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError("fetch_checkpoint", str(e), table="job_checkpoints")

        if raw is None:
            return {}
        cursors = json.loads(raw) if isinstance(raw, str) else dict(raw)
        return {stage: int(cursor) for stage, cursor in cursors.items()}

    async def upsert_checkpoint(self, job_id: str, stage: str, cursor: int) -> None:
        """Set one stage cursor for a job, keeping the other stages."""
        try:
            async with self.get_connection() as conn:
                await conn.execute("""
                    INSERT INTO job_checkpoints (job_id, cursors, updated_at)
                    VALUES ($1, jsonb_build_object($2::text, $3::int), now())
                    ON CONFLICT (job_id) DO UPDATE SET
                        cursors = job_checkpoints.cursors || EXCLUDED.cursors,
                        updated_at = EXCLUDED.updated_at
                """, job_id, stage, cursor)
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError("upsert_checkpoint", str(e), table="job_checkpoints")

    async def delete_checkpoint(self, job_id: str) -> bool:
        """Remove a job's checkpoint row."""
        try:
            async with self.get_connection() as conn:
                result = await conn.execute(
                    "DELETE FROM job_checkpoints WHERE job_id = $1", job_id
                )
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError("delete_checkpoint", str(e), table="job_checkpoints")
        return result.endswith(" 1")
