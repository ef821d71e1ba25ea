"""
Publish stage: register the media with the catalog and upload its files.
"""

import uuid
from pathlib import Path
from typing import Any, AsyncIterator, List, Optional, Tuple

import aiofiles
import httpx

from .base import StageUnitProvider, ProgressCallback
from ..models.job import JobStatus
from ..models.execution import StageRun, UnitRef
from ..core.exceptions import UnitError
from ..utils.config import CatalogConfig, TranscodeConfig
from ..utils.logger import get_logger


class PublishStage(StageUnitProvider):
    """
    Uploads transcoded files to the media catalog.

    ``prepare`` creates the catalog record once per attempt; a 409 from the
    catalog means the record already exists from an earlier delivery. Each
    unit is a single multipart upload, streamed from disk.
    """

    name = "publish"
    status = JobStatus.PUBLISHING

    def __init__(
        self,
        catalog: CatalogConfig,
        transcode: TranscodeConfig,
        client: Optional[httpx.AsyncClient] = None,
        resumable: bool = False,
        watch_interval: Optional[float] = None,
        unit_timeout: Optional[float] = None,
        chunk_size: int = 1024 * 1024
    ):
        super().__init__(resumable=resumable, watch_interval=watch_interval, unit_timeout=unit_timeout)
        self.catalog = catalog
        self.transcode = transcode
        self.chunk_size = chunk_size
        self._client = client
        self._owns_client = client is None
        self.logger = get_logger(__name__)

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.catalog.media_host, timeout=self.catalog.timeout)
        return self._client

    async def close(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def enumerate_units(self, ctx) -> List[UnitRef]:
        directory = Path(self.transcode.transcoding_path) / ctx.job_id
        if not directory.is_dir():
            return []
        return [
            UnitRef(key=path.name, name=path.name, path=str(path), size=path.stat().st_size)
            for path in directory.glob("*.mkv")
            if path.is_file()
        ]

    async def prepare(self, ctx, run: StageRun) -> None:
        media = ctx.job.media
        body = {
            "name": media.name,
            "id": ctx.job_id,
            "files": run.total,
            "type": media.kind.value,
        }
        response = await self.client.post("/v1/media", json=body)

        if response.status_code == 409:
            ctx.logger.info("Catalog record already exists", extra={"media_name": media.name})
            return
        self._check_response(response, None, "create media record")
        ctx.logger.info("Created catalog record", extra={
            "media_name": media.name,
            "files": run.total,
            "type": media.kind.value
        })

    async def process_unit(self, ctx, unit: UnitRef, progress: ProgressCallback) -> Any:
        path = Path(unit.path)
        if not path.is_file():
            raise UnitError(self.name, unit.key, f"{path} not found", error_code="PUBLISH_FILE_MISSING")

        boundary = uuid.uuid4().hex
        head, tail = self._multipart_envelope(boundary, path.name)
        length = len(head) + path.stat().st_size + len(tail)

        response = await self.client.put(
            f"/v1/media/{ctx.job_id}",
            content=self._multipart_body(path, head, tail, progress),
            headers={
                "Content-Type": f"multipart/form-data; boundary={boundary}",
                "Content-Length": str(length)
            }
        )

        self._check_response(response, unit.key, "upload")
        return response.status_code

    def _multipart_envelope(self, boundary: str, filename: str) -> Tuple[bytes, bytes]:
        filename = filename.replace('"', "%22")
        head = (
            f"--{boundary}\r\n"
            f'Content-Disposition: form-data; name="file"; filename="{filename}"\r\n'
            f"Content-Type: {self.catalog.content_type}\r\n\r\n"
        ).encode("utf-8")
        tail = f"\r\n--{boundary}--\r\n".encode("ascii")
        return head, tail

    async def _multipart_body(self, path: Path, head: bytes, tail: bytes,
                              progress: ProgressCallback) -> AsyncIterator[bytes]:
        """Yield the form field around the file, read in chunks through aiofiles."""
        yield head
        sent = 0
        async with aiofiles.open(path, "rb") as handle:
            while True:
                chunk = await handle.read(self.chunk_size)
                if not chunk:
                    break
                sent += len(chunk)
                progress(sent)
                yield chunk
        yield tail

    def _check_response(self, response: httpx.Response, unit: Optional[str], action: str):
        if response.is_success:
            return

        retryable = response.status_code >= 500
        try:
            payload = response.json()
        except ValueError:
            payload = None
        if isinstance(payload, dict) and payload.get("retryable") is True:
            retryable = True

        raise UnitError(
            self.name,
            unit,
            f"{action} failed with HTTP {response.status_code}",
            retryable=retryable,
            error_code="PUBLISH_HTTP_ERROR"
        )
