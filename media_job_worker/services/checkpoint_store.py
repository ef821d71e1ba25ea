"""
Checkpoint stores for the media job worker

A checkpoint maps a job id to the cursor of each resumable stage: the number
of leading units of that stage that are fully complete. ``set`` returns only
once the cursor is durable, so a crash repeats at most one unit.

The same mapping holds the highest progress percent reported for the job,
under the reserved ``PROGRESS_KEY``.
"""

import os
import json
import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional

import aiofiles

from ..core.exceptions import CheckpointWriteError, DatabaseError
from ..utils.database import DatabaseManager
from ..utils.logger import get_logger

PROGRESS_KEY = "_progress"


class CheckpointStore(ABC):
    """Durable per-job stage cursors."""

    @abstractmethod
    async def get_all(self, job_id: str) -> Dict[str, int]:
        """
        Get every stage cursor of a job.

        Args:
            job_id: Job identifier

        Returns:
            Mapping of stage name to cursor (empty if the job has none)
        """

    @abstractmethod
    async def set(self, job_id: str, stage: str, cursor: int) -> None:
        """
        Persist a stage cursor.

        Raises:
            CheckpointWriteError: If the cursor could not be made durable
        """

    @abstractmethod
    async def clear(self, job_id: str) -> None:
        """Forget every cursor of a job."""

    async def get(self, job_id: str, stage: str) -> int:
        """Get one stage cursor, 0 when nothing was stored."""
        return (await self.get_all(job_id)).get(stage, 0)

    async def get_progress(self, job_id: str) -> int:
        """Highest progress percent persisted for a job, 0 when none."""
        return await self.get(job_id, PROGRESS_KEY)

    async def set_progress(self, job_id: str, percent: int) -> None:
        await self.set(job_id, PROGRESS_KEY, percent)

    async def close(self) -> None:
        pass


class InMemoryCheckpointStore(CheckpointStore):
    """Process-local store. Does not survive restarts; for tests and one-shot runs."""

    def __init__(self):
        self._cursors: Dict[str, Dict[str, int]] = {}

    async def get_all(self, job_id: str) -> Dict[str, int]:
        return dict(self._cursors.get(job_id, {}))

    async def set(self, job_id: str, stage: str, cursor: int) -> None:
        self._cursors.setdefault(job_id, {})[stage] = cursor

    async def clear(self, job_id: str) -> None:
        self._cursors.pop(job_id, None)


class FileCheckpointStore(CheckpointStore):
    """
    One JSON document per job in a local directory.

    Writes go to a temporary file that is flushed, fsynced and atomically
    renamed over the previous document.
    """

    def __init__(self, directory: str):
        self.directory = Path(directory)
        self._locks: Dict[str, asyncio.Lock] = {}
        self.logger = get_logger(__name__)

    def _path(self, job_id: str) -> Path:
        safe_id = "".join(c if c.isalnum() or c in "-_." else "_" for c in job_id)
        return self.directory / f"{safe_id}.json"

    def _lock(self, job_id: str) -> asyncio.Lock:
        return self._locks.setdefault(job_id, asyncio.Lock())

    async def get_all(self, job_id: str) -> Dict[str, int]:
        path = self._path(job_id)
        try:
            async with aiofiles.open(path, "r", encoding="utf-8") as f:
                document = json.loads(await f.read())
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as e:
            self.logger.warning("Unreadable checkpoint, starting fresh", extra={
                "job_id": job_id,
                "path": str(path),
                "error": str(e)
            })
            return {}
        return {stage: int(cursor) for stage, cursor in document.get("cursors", {}).items()}

    async def set(self, job_id: str, stage: str, cursor: int) -> None:
        async with self._lock(job_id):
            cursors = await self.get_all(job_id)
            cursors[stage] = cursor
            document = {
                "job_id": job_id,
                "cursors": cursors,
                "updated_at": datetime.utcnow().isoformat()
            }

            path = self._path(job_id)
            tmp_path = path.with_suffix(".json.tmp")
            try:
                self.directory.mkdir(parents=True, exist_ok=True)
                async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
                    await f.write(json.dumps(document))
                    await f.flush()
                    await asyncio.get_running_loop().run_in_executor(None, os.fsync, f.fileno())
                os.replace(tmp_path, path)
            except OSError as e:
                raise CheckpointWriteError(job_id, stage, cursor, str(e))

    async def clear(self, job_id: str) -> None:
        try:
            self._path(job_id).unlink()
        except FileNotFoundError:
            pass
        self._locks.pop(job_id, None)


class PostgresCheckpointStore(CheckpointStore):
    """Checkpoints in the ``job_checkpoints`` table, one row per job."""

    def __init__(self, database_manager: DatabaseManager):
        self.db = database_manager

    async def get_all(self, job_id: str) -> Dict[str, int]:
        return await self.db.fetch_checkpoint(job_id)

    async def set(self, job_id: str, stage: str, cursor: int) -> None:
        try:
            await self.db.upsert_checkpoint(job_id, stage, cursor)
        except DatabaseError as e:
            raise CheckpointWriteError(job_id, stage, cursor, e.message)

    async def clear(self, job_id: str) -> None:
        await self.db.delete_checkpoint(job_id)

    async def close(self) -> None:
        await self.db.close()


def create_checkpoint_store(backend: str, directory: Optional[str] = None,
                            database_manager: Optional[DatabaseManager] = None) -> CheckpointStore:
    """Build the checkpoint store named by configuration."""
    if backend == "postgres":
        if database_manager is None:
            raise ValueError("postgres checkpoint store requires a database manager")
        return PostgresCheckpointStore(database_manager)
    if backend == "file":
        return FileCheckpointStore(directory or "checkpoints")
    if backend == "memory":
        return InMemoryCheckpointStore()
    raise ValueError(f"unknown checkpoint backend: {backend}")
