"""
Transform stage: encode downloaded media with HandBrakeCLI.

Each media file in the job's download directory is one unit, encoded to
``<transcoding_path>/<job_id>/<stem>.mkv``. Files that already use the target
codecs can optionally be copied as-is after an ffprobe check.
"""

import asyncio
import json
import os
import re
from collections import deque
from pathlib import Path
from typing import Any, Dict, List, Optional

from .base import StageUnitProvider, ProgressCallback
from ..models.job import JobStatus
from ..models.execution import UnitRef
from ..core.exceptions import UnitError
from ..utils.config import TranscodeConfig, StorageConfig
from ..utils.logger import get_logger


MEDIA_EXTENSIONS = (".mp4", ".mkv", ".mov", ".webm")

PROGRESS_PATTERN = re.compile(r"Encoding: task \d+ of \d+, (\d+(?:\.\d+)?) %")


def parse_progress(line: str) -> Optional[float]:
    """Extract the percent complete from a HandBrakeCLI status line."""
    match = PROGRESS_PATTERN.search(line)
    if match:
        return float(match.group(1))
    return None


def output_name(source: str) -> str:
    return Path(source).stem + ".mkv"


class TransformStage(StageUnitProvider):
    """Encodes each downloaded media file to Matroska."""

    name = "transform"
    status = JobStatus.TRANSFORMING

    def __init__(
        self,
        transcode: TranscodeConfig,
        storage: StorageConfig,
        resumable: bool = True,
        watch_interval: Optional[float] = 10.0,
        unit_timeout: Optional[float] = None
    ):
        super().__init__(resumable=resumable, watch_interval=watch_interval, unit_timeout=unit_timeout)
        self.transcode = transcode
        self.storage = storage
        self.logger = get_logger(__name__)

    def source_directory(self, job_id: str) -> Path:
        return Path(self.storage.download_path) / job_id

    def output_directory(self, job_id: str) -> Path:
        return Path(self.transcode.transcoding_path) / job_id

    def encoder_options(self) -> Dict[str, Any]:
        """HandBrakeCLI options from configuration, empty values dropped."""
        video = self.transcode.video
        audio = self.transcode.audio
        options = {
            "encoder": video.codec,
            "encoder-profile": video.profile,
            "encoder-preset": video.preset,
            "encoder-tune": video.tune,
            "quality": video.quality,
            "aencoder": audio.codec,
            "ab": audio.bitrate,
            "audio-fallback": audio.fallback,
            "arate": "auto",
            "mixdown": audio.mixdown,
            "all-subtitles": True,
            "all-audio": True,
            "no-usage-stats": True,
        }
        return {key: value for key, value in options.items() if value not in (None, "", False)}

    def build_command(self, source: str, destination: str) -> List[str]:
        command = [
            self.transcode.handbrake_binary,
            "--input", source,
            "--output", destination,
            "--format", "av_mkv",
        ]
        for key, value in self.encoder_options().items():
            if value is True:
                command.append(f"--{key}")
            else:
                command.extend([f"--{key}", str(value)])
        return command

    async def enumerate_units(self, ctx) -> List[UnitRef]:
        source_dir = self.source_directory(ctx.job_id)
        output_dir = self.output_directory(ctx.job_id)
        if not source_dir.is_dir():
            return []

        units = []
        for path in sorted(source_dir.rglob("*")):
            if not path.is_file() or path.suffix.lower() not in MEDIA_EXTENSIONS:
                continue
            key = str(path.relative_to(source_dir))
            units.append(UnitRef(
                key=key,
                name=path.name,
                path=str(path),
                size=path.stat().st_size,
                metadata={"output": str(output_dir / output_name(key))}
            ))
        return units

    async def process_unit(self, ctx, unit: UnitRef, progress: ProgressCallback) -> Any:
        destination = Path(unit.metadata["output"])
        destination.parent.mkdir(parents=True, exist_ok=True)

        if destination.exists():
            ctx.logger.info("Transcoded output already present", extra={"unit": unit.key, "output": str(destination)})
            progress(100.0)
            return str(destination)

        partial = destination.with_name(destination.name + ".part")
        if partial.exists():
            partial.unlink()

        if self.transcode.skip_compatible and await self._is_compatible(unit.path):
            ctx.logger.info("Source already uses target codecs, copying", extra={"unit": unit.key})
            loop = asyncio.get_running_loop()
            size = unit.size or 0

            def report(copied: int):
                loop.call_soon_threadsafe(progress, copied * 100.0 / size if size else 100.0)

            try:
                await loop.run_in_executor(None, self._copy, unit.path, partial, report)
            except OSError as e:
                raise UnitError(self.name, unit.key, f"cannot copy {unit.path}: {e}",
                                error_code="TRANSCODE_COPY_ERROR")
        else:
            await self._encode(ctx, unit, str(partial), progress)

        if not partial.exists():
            raise UnitError(self.name, unit.key, f"encoder produced no output for {unit.path}",
                            error_code="TRANSCODE_NO_OUTPUT")

        os.replace(partial, destination)
        progress(100.0)
        return str(destination)

    def _copy(self, source: str, destination: Path, report) -> int:
        """Copy a compatible source in chunks, reporting bytes copied. Runs in a worker thread."""
        copied = 0
        with open(source, "rb") as reader, open(destination, "wb") as writer:
            while True:
                chunk = reader.read(self.storage.chunk_size)
                if not chunk:
                    break
                writer.write(chunk)
                copied += len(chunk)
                report(copied)
            writer.flush()
            os.fsync(writer.fileno())
        return copied

    async def _encode(self, ctx, unit: UnitRef, destination: str, progress: ProgressCallback):
        command = self.build_command(unit.path, destination)
        ctx.logger.info("Starting encoder", extra={"unit": unit.key, "command": command})

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT
            )
        except OSError as e:
            raise UnitError(self.name, unit.key, f"cannot start {command[0]}: {e}",
                            error_code="TRANSCODE_SPAWN_ERROR")

        tail = deque(maxlen=20)
        buffer = ""
        last_percent = None
        try:
            while True:
                chunk = await process.stdout.read(4096)
                if not chunk:
                    break
                buffer += chunk.decode("utf-8", errors="replace")
                lines = re.split(r"[\r\n]", buffer)
                buffer = lines.pop()
                for line in lines:
                    if not line.strip():
                        continue
                    percent = parse_progress(line)
                    if percent is None:
                        tail.append(line)
                    elif percent != last_percent:
                        last_percent = percent
                        progress(percent)

            returncode = await process.wait()
        finally:
            if process.returncode is None:
                process.kill()
                await process.wait()

        if returncode != 0:
            raise UnitError(self.name, unit.key, f"encoder exited with status {returncode}",
                            error_code="TRANSCODE_FAILED")
        ctx.logger.debug("Encoder finished", extra={"unit": unit.key, "output_tail": list(tail)})

    async def _is_compatible(self, path: str) -> bool:
        """True when every audio and video stream already uses the target codecs."""
        streams = await self.probe_streams(path)
        media = [s for s in streams if s.get("codec_type") in ("audio", "video")]
        if not media:
            return False
        for stream in media:
            wanted = self.transcode.probe_video_codec if stream["codec_type"] == "video" else self.transcode.probe_audio_codec
            if stream.get("codec_name") != wanted:
                return False
        return True

    async def probe_streams(self, path: str) -> List[Dict[str, Any]]:
        process = await asyncio.create_subprocess_exec(
            self.transcode.ffprobe_binary, "-v", "error", "-show_streams", "-of", "json", path,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE
        )
        stdout, stderr = await process.communicate()
        if process.returncode != 0:
            raise UnitError(self.name, path, f"ffprobe failed: {stderr.decode('utf-8', errors='replace').strip()}",
                            error_code="PROBE_FAILED")
        try:
            return json.loads(stdout or b"{}").get("streams", [])
        except ValueError as e:
            raise UnitError(self.name, path, f"unreadable ffprobe output: {e}", error_code="PROBE_FAILED")
