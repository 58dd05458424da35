import subprocess
from pathlib import Path

import pytest

from app.schemas.options import VideoCompressOptions
from app.services.processors.errors import JobProcessingError, PermanentJobError, TransientJobError
from app.services.processors.video import build_ffmpeg_command, build_scale_filter, output_extension, run_ffmpeg

IN = Path("/tmp/in.mp4")
OUT = Path("/tmp/out.mp4")


def _value_after(command: list[str], flag: str) -> str:
    return command[command.index(flag) + 1]


def test_low_quality_is_clamped_to_crf_18():
    command = build_ffmpeg_command("ffmpeg", IN, OUT, VideoCompressOptions(quality=15))
    assert _value_after(command, "-crf") == "18"


def test_high_quality_is_clamped_to_crf_28():
    command = build_ffmpeg_command("ffmpeg", IN, OUT, VideoCompressOptions(quality=40))
    assert _value_after(command, "-crf") == "28"


def test_command_shape():
    command = build_ffmpeg_command("ffmpeg", IN, OUT, VideoCompressOptions(quality=23, preset="slow"))
    assert command[0] == "ffmpeg"
    assert "-y" in command
    assert _value_after(command, "-i") == str(IN)
    assert _value_after(command, "-c:v") == "libx264"
    assert _value_after(command, "-preset") == "slow"
    assert _value_after(command, "-c:a") == "copy"
    assert command[-1] == str(OUT)
    assert "-vf" not in command


def test_bitrate_takes_precedence_over_crf():
    command = build_ffmpeg_command("ffmpeg", IN, OUT, VideoCompressOptions(quality=20, bitrate_kbps=1500))
    assert _value_after(command, "-b:v") == "1500k"
    assert "-crf" not in command


def test_vp9_uses_constant_quality_without_preset():
    options = VideoCompressOptions(codec="libvpx-vp9", quality=30)
    command = build_ffmpeg_command("ffmpeg", IN, Path("/tmp/out.mkv"), options)
    assert _value_after(command, "-crf") == "28"
    assert _value_after(command, "-b:v") == "0"
    assert "-preset" not in command
    assert output_extension("libvpx-vp9") == ".mkv"
    assert output_extension("libx265") == ".mp4"


@pytest.mark.parametrize(
    ("width", "height", "expected"),
    [
        (1280, None, "scale=1280:-1:flags=lanczos"),
        (None, 720, "scale=-1:720:flags=lanczos"),
        (1280, 720, "scale=1280:720:flags=lanczos"),
        (None, None, None),
    ],
)
def test_scale_filter(width, height, expected):
    assert build_scale_filter(width, height) == expected


def test_scale_filter_is_passed_to_ffmpeg():
    command = build_ffmpeg_command("ffmpeg", IN, OUT, VideoCompressOptions(max_width=640))
    assert _value_after(command, "-vf") == "scale=640:-1:flags=lanczos"


def test_invalid_preset_is_rejected():
    with pytest.raises(ValueError):
        VideoCompressOptions(preset="warp-speed")


def test_timeout_is_transient(monkeypatch):
    def _run(command, **kwargs):
        raise subprocess.TimeoutExpired(command, kwargs["timeout"])

    monkeypatch.setattr("app.services.processors.video.subprocess.run", _run)
    with pytest.raises(TransientJobError):
        run_ffmpeg(["ffmpeg"], 5)


def test_corrupt_input_is_permanent(monkeypatch):
    def _run(command, **kwargs):
        return subprocess.CompletedProcess(command, 1, stdout="", stderr="in.mp4: Invalid data found when processing input")

    monkeypatch.setattr("app.services.processors.video.subprocess.run", _run)
    with pytest.raises(PermanentJobError):
        run_ffmpeg(["ffmpeg"], 5)


def test_other_nonzero_exit_carries_stderr_tail(monkeypatch):
    def _run(command, **kwargs):
        return subprocess.CompletedProcess(command, 3, stdout="", stderr="x" * 2000 + "encoder crashed")

    monkeypatch.setattr("app.services.processors.video.subprocess.run", _run)
    with pytest.raises(JobProcessingError) as info:
        run_ffmpeg(["ffmpeg"], 5)
    assert not isinstance(info.value, PermanentJobError)
    assert "encoder crashed" in str(info.value)
