"""
Fetch stage: download a job's source objects from object storage.

Objects are listed under the job's source bucket and prefix; each object is
one unit. The MinIO client is synchronous, so listing and streaming run in
the default executor while progress is handed back to the event loop.
"""

import asyncio
import os
from pathlib import Path
from typing import Any, List, Optional

from minio import Minio
from minio.error import S3Error

from .base import StageUnitProvider, ProgressCallback
from ..models.job import JobStatus
from ..models.execution import UnitRef
from ..core.exceptions import UnitError
from ..utils.config import StorageConfig
from ..utils.logger import get_logger


class FetchStage(StageUnitProvider):
    """Downloads source objects into ``<download_path>/<job_id>``."""

    name = "fetch"
    status = JobStatus.FETCHING

    def __init__(
        self,
        storage: StorageConfig,
        client: Optional[Minio] = None,
        resumable: bool = True,
        watch_interval: Optional[float] = 10.0,
        unit_timeout: Optional[float] = None
    ):
        """
        Initialize the fetch stage.

        Args:
            storage: Object storage settings
            client: Optional pre-built MinIO client
            resumable: Checkpoint after every object
            watch_interval: Stall-detection interval in seconds
            unit_timeout: Total time budget per object in seconds
        """
        super().__init__(resumable=resumable, watch_interval=watch_interval, unit_timeout=unit_timeout)
        self.storage = storage
        self.client = client or Minio(
            storage.endpoint,
            access_key=storage.access_key,
            secret_key=storage.secret_key,
            secure=storage.secure
        )
        self.logger = get_logger(__name__)

    def job_directory(self, job_id: str) -> Path:
        return Path(self.storage.download_path) / job_id

    async def enumerate_units(self, ctx) -> List[UnitRef]:
        source = ctx.job.media.source
        loop = asyncio.get_running_loop()

        def list_objects():
            return [
                obj for obj in self.client.list_objects(source.bucket, prefix=source.prefix, recursive=True)
                if not obj.is_dir
            ]

        try:
            objects = await loop.run_in_executor(None, list_objects)
        except S3Error as e:
            raise UnitError(self.name, None, f"cannot list {source.bucket}/{source.prefix}: {e.code}",
                            retryable=False, error_code="STORAGE_LIST_ERROR")

        target = self.job_directory(ctx.job_id)
        units = [
            UnitRef(
                key=obj.object_name,
                name=os.path.basename(obj.object_name),
                path=str(target / os.path.basename(obj.object_name)),
                size=obj.size,
                metadata={"bucket": source.bucket, "etag": obj.etag}
            )
            for obj in objects
        ]

        ctx.logger.info("Listed source objects", extra={
            "bucket": source.bucket,
            "prefix": source.prefix,
            "objects": len(units)
        })
        return units

    async def process_unit(self, ctx, unit: UnitRef, progress: ProgressCallback) -> Any:
        destination = Path(unit.path)
        destination.parent.mkdir(parents=True, exist_ok=True)

        if unit.size is not None and destination.exists() and destination.stat().st_size == unit.size:
            ctx.logger.info("Source object already downloaded", extra={"object": unit.key})
            progress(unit.size)
            return str(destination)

        loop = asyncio.get_running_loop()

        def report(written: int):
            loop.call_soon_threadsafe(progress, written)

        try:
            await loop.run_in_executor(
                None, self._download, unit.metadata["bucket"], unit.key, destination, report
            )
        except S3Error as e:
            raise UnitError(self.name, unit.key, f"download failed: {e.code}",
                            retryable=False, error_code="STORAGE_READ_ERROR")
        except OSError as e:
            raise UnitError(self.name, unit.key, f"cannot write {destination}: {e}",
                            error_code="STORAGE_WRITE_ERROR")

        return str(destination)

    def _download(self, bucket: str, object_name: str, destination: Path, report) -> int:
        """Stream one object to disk through a ``.part`` file. Runs in a worker thread."""
        partial = destination.with_name(destination.name + ".part")
        written = 0

        response = self.client.get_object(bucket, object_name)
        try:
            with open(partial, "wb") as handle:
                for chunk in response.stream(self.storage.chunk_size):
                    handle.write(chunk)
                    written += len(chunk)
                    report(written)
                handle.flush()
                os.fsync(handle.fileno())
        finally:
            response.close()
            response.release_conn()

        os.replace(partial, destination)
        return written
