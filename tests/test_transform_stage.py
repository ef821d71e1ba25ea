"""
Tests for the transform stage
"""

import stat
import sys
import time

import pytest

from media_job_worker.core.context import JobContext
from media_job_worker.core.orchestrator import PipelineOrchestrator
from media_job_worker.core.exceptions import UnitError
from media_job_worker.models.job import decode_job
from media_job_worker.stages.transform import TransformStage, output_name, parse_progress
from media_job_worker.utils.config import AudioSettings, StorageConfig, TranscodeConfig, VideoSettings

from tests.fakes import job_message

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="uses a shell script as encoder")


def write_encoder(path, body):
    """Install a shell script that stands in for HandBrakeCLI."""
    path.write_text("#!/bin/sh\n" + body, encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR)
    return str(path)


@pytest.fixture
def ctx():
    return JobContext.for_job(decode_job(job_message("job-1")))


@pytest.fixture
def dirs(tmp_path):
    source = tmp_path / "downloading" / "job-1"
    source.mkdir(parents=True)
    return source, tmp_path / "transcoding" / "job-1"


def make_stage(tmp_path, **transcode):
    return TransformStage(
        TranscodeConfig(transcoding_path=str(tmp_path / "transcoding"), **transcode),
        StorageConfig(download_path=str(tmp_path / "downloading"))
    )


class TestProgressParsing:

    def test_parse_encoding_line(self):
        assert parse_progress("Encoding: task 1 of 1, 42.17 % (88.61 fps, avg 90.12 fps, ETA 00h01m12s)") == 42.17

    def test_parse_integer_percent(self):
        assert parse_progress("Encoding: task 2 of 2, 7 %") == 7.0

    def test_ignores_other_lines(self):
        assert parse_progress("[12:00:00] libhb: scan thread found 1 valid title(s)") is None

    def test_output_name(self):
        assert output_name("season1/episode 01.mp4") == "episode 01.mkv"


class TestCommand:

    def test_build_command(self, tmp_path):
        stage = make_stage(
            tmp_path,
            video=VideoSettings(codec="x265", preset="slow", quality="20", tune=None),
            audio=AudioSettings(codec="opus", bitrate="160", fallback="", mixdown="stereo")
        )

        command = stage.build_command("in.mp4", "out.mkv")

        assert command[:7] == ["HandBrakeCLI", "--input", "in.mp4", "--output", "out.mkv", "--format", "av_mkv"]
        assert command[command.index("--encoder") + 1] == "x265"
        assert command[command.index("--encoder-preset") + 1] == "slow"
        assert command[command.index("--ab") + 1] == "160"
        assert "--encoder-tune" not in command
        assert "--audio-fallback" not in command
        assert "--all-subtitles" in command
        assert command[command.index("--all-audio") + 1].startswith("--")


class TestTransformStage:

    @pytest.mark.asyncio
    async def test_enumerate_media_files(self, tmp_path, ctx, dirs):
        source, output = dirs
        (source / "b.mp4").write_bytes(b"bb")
        (source / "notes.txt").write_text("skip me")
        (source / "extras").mkdir()
        (source / "extras" / "a.MKV").write_bytes(b"a")

        units = await make_stage(tmp_path).enumerate_units(ctx)

        assert [u.key for u in units] == ["b.mp4", "extras/a.MKV"]
        assert units[0].metadata["output"] == str(output / "b.mkv")
        assert units[1].metadata["output"] == str(output / "a.mkv")

    @pytest.mark.asyncio
    async def test_enumerate_without_downloads(self, tmp_path):
        ctx = JobContext.for_job(decode_job(job_message("job-2")))
        assert await make_stage(tmp_path).enumerate_units(ctx) == []

    @pytest.mark.asyncio
    async def test_existing_output_skipped(self, tmp_path, ctx, dirs):
        source, output = dirs
        (source / "a.mp4").write_bytes(b"raw")
        output.mkdir(parents=True)
        (output / "a.mkv").write_bytes(b"encoded")
        stage = make_stage(tmp_path, handbrake_binary=str(tmp_path / "missing"))
        unit = (await stage.enumerate_units(ctx))[0]
        reported = []

        await stage.process_unit(ctx, unit, reported.append)

        assert reported == [100.0]
        assert (output / "a.mkv").read_bytes() == b"encoded"

    @pytest.mark.asyncio
    async def test_compatible_source_copied(self, tmp_path, ctx, dirs, monkeypatch):
        source, output = dirs
        (source / "a.mkv").write_bytes(b"already hevc")
        stage = make_stage(tmp_path, skip_compatible=True, handbrake_binary=str(tmp_path / "missing"))

        async def probe(path):
            return [
                {"codec_type": "video", "codec_name": "hevc"},
                {"codec_type": "audio", "codec_name": "opus"},
                {"codec_type": "subtitle", "codec_name": "subrip"},
            ]

        monkeypatch.setattr(stage, "probe_streams", probe)
        unit = (await stage.enumerate_units(ctx))[0]

        reported = []
        await stage.process_unit(ctx, unit, reported.append)

        assert (output / "a.mkv").read_bytes() == b"already hevc"
        assert not (output / "a.mkv.part").exists()
        assert reported[-1] == 100.0

    @pytest.mark.asyncio
    async def test_slow_copy_keeps_watchdog_fed(self, tmp_path, dirs, monkeypatch, checkpoints, reporter):
        source, output = dirs
        (source / "a.mkv").write_bytes(b"x" * 20)
        stage = TransformStage(
            TranscodeConfig(transcoding_path=str(tmp_path / "transcoding"), skip_compatible=True),
            StorageConfig(download_path=str(tmp_path / "downloading"), chunk_size=1),
            watch_interval=0.1
        )

        async def probe(path):
            return [{"codec_type": "video", "codec_name": "hevc"}]

        real_copy = stage._copy

        def slow_copy(source_path, destination, report):
            def slow_report(copied):
                time.sleep(0.02)
                report(copied)
            return real_copy(source_path, destination, slow_report)

        monkeypatch.setattr(stage, "probe_streams", probe)
        monkeypatch.setattr(stage, "_copy", slow_copy)
        orchestrator = PipelineOrchestrator([stage], checkpoints, reporter)

        result = await orchestrator.run(decode_job(job_message("job-1")))

        assert result.processed_units == 1
        assert (output / "a.mkv").read_bytes() == b"x" * 20

    @pytest.mark.asyncio
    async def test_incompatible_source_encoded(self, tmp_path, ctx, dirs, monkeypatch):
        source, _ = dirs
        (source / "a.mp4").write_bytes(b"h264")
        stage = make_stage(tmp_path, skip_compatible=True)
        encoded = []

        async def probe(path):
            return [{"codec_type": "video", "codec_name": "h264"}]

        async def encode(ctx, unit, destination, progress):
            encoded.append(unit.key)
            with open(destination, "wb") as handle:
                handle.write(b"x265")

        monkeypatch.setattr(stage, "probe_streams", probe)
        monkeypatch.setattr(stage, "_encode", encode)
        unit = (await stage.enumerate_units(ctx))[0]

        await stage.process_unit(ctx, unit, lambda _: None)

        assert encoded == ["a.mp4"]

    @posix_only
    @pytest.mark.asyncio
    async def test_encoder_progress_and_output(self, tmp_path, ctx, dirs):
        source, output = dirs
        (source / "a.mp4").write_bytes(b"raw")
        binary = write_encoder(
            tmp_path / "HandBrakeCLI",
            "printf 'Encoding: task 1 of 1, 10.00 %%\\rEncoding: task 1 of 1, 55.50 %%\\r'\n"
            "echo 'muxing'\n"
            "cp \"$2\" \"$4\"\n"
        )
        stage = make_stage(tmp_path, handbrake_binary=binary)
        unit = (await stage.enumerate_units(ctx))[0]
        reported = []

        await stage.process_unit(ctx, unit, reported.append)

        assert reported == [10.0, 55.5, 100.0]
        assert (output / "a.mkv").read_bytes() == b"raw"
        assert not (output / "a.mkv.part").exists()

    @posix_only
    @pytest.mark.asyncio
    async def test_encoder_failure(self, tmp_path, ctx, dirs):
        source, output = dirs
        (source / "a.mp4").write_bytes(b"raw")
        binary = write_encoder(tmp_path / "HandBrakeCLI", "echo 'No title found' \nexit 3\n")
        stage = make_stage(tmp_path, handbrake_binary=binary)
        unit = (await stage.enumerate_units(ctx))[0]

        with pytest.raises(UnitError) as exc_info:
            await stage.process_unit(ctx, unit, lambda _: None)

        assert exc_info.value.error_code == "TRANSCODE_FAILED"
        assert not (output / "a.mkv").exists()

    @posix_only
    @pytest.mark.asyncio
    async def test_encoder_without_output(self, tmp_path, ctx, dirs):
        source, _ = dirs
        (source / "a.mp4").write_bytes(b"raw")
        binary = write_encoder(tmp_path / "HandBrakeCLI", "exit 0\n")
        stage = make_stage(tmp_path, handbrake_binary=binary)
        unit = (await stage.enumerate_units(ctx))[0]

        with pytest.raises(UnitError) as exc_info:
            await stage.process_unit(ctx, unit, lambda _: None)

        assert exc_info.value.error_code == "TRANSCODE_NO_OUTPUT"

    @pytest.mark.asyncio
    async def test_missing_encoder_binary(self, tmp_path, ctx, dirs):
        source, _ = dirs
        (source / "a.mp4").write_bytes(b"raw")
        stage = make_stage(tmp_path, handbrake_binary=str(tmp_path / "no-such-binary"))
        unit = (await stage.enumerate_units(ctx))[0]

        with pytest.raises(UnitError) as exc_info:
            await stage.process_unit(ctx, unit, lambda _: None)

        assert exc_info.value.error_code == "TRANSCODE_SPAWN_ERROR"
