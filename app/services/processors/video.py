import logging
import subprocess
from pathlib import Path

from app.models.enums import ToolType
from app.schemas.options import VideoCompressOptions
from app.services.processors.base import ProcessorContext, ProcessorResult, stderr_tail
from app.services.processors.errors import JobProcessingError, PermanentJobError, TransientJobError
from app.services.processors.registry import register

logger = logging.getLogger(__name__)

# FFmpeg stderr fragments that mean the input itself is unusable.
PERMANENT_FFMPEG_MARKERS = (
    "Invalid data found when processing input",
    "does not contain any stream",
    "moov atom not found",
    "Unknown encoder",
)


def output_extension(codec: str) -> str:
    # Matroska accepts any source audio codec, so audio can still be copied for VP9.
    return ".mkv" if codec == "libvpx-vp9" else ".mp4"


def build_scale_filter(max_width: int | None, max_height: int | None) -> str | None:
    if max_width and max_height:
        return f"scale={max_width}:{max_height}:flags=lanczos"
    if max_width:
        return f"scale={max_width}:-1:flags=lanczos"
    if max_height:
        return f"scale=-1:{max_height}:flags=lanczos"
    return None


def build_ffmpeg_command(binary: str, input_path: Path, output_path: Path, options: VideoCompressOptions) -> list[str]:
    command = [binary, "-hide_banner", "-nostdin", "-y", "-i", str(input_path), "-c:v", options.codec]
    if options.bitrate_kbps:
        command += ["-b:v", f"{options.bitrate_kbps}k"]
    else:
        command += ["-crf", str(options.crf)]
        if options.codec == "libvpx-vp9":
            command += ["-b:v", "0"]
    if options.codec in ("libx264", "libx265"):
        command += ["-preset", options.preset]
    scale = build_scale_filter(options.max_width, options.max_height)
    if scale:
        command += ["-vf", scale]
    command += ["-c:a", "copy", str(output_path)]
    return command


def run_ffmpeg(command: list[str], timeout_seconds: int) -> subprocess.CompletedProcess:
    try:
        completed = subprocess.run(command, capture_output=True, text=True, timeout=timeout_seconds, check=False)
    except subprocess.TimeoutExpired as exc:
        raise TransientJobError(f"Video compression timed out after {timeout_seconds} seconds") from exc
    except FileNotFoundError as exc:
        raise TransientJobError(f"FFmpeg executable not found: {command[0]}") from exc

    if completed.returncode != 0:
        tail = stderr_tail(completed.stderr)
        message = f"FFmpeg exited with code {completed.returncode}: {tail}"
        if any(marker in tail for marker in PERMANENT_FFMPEG_MARKERS):
            raise PermanentJobError(message)
        raise JobProcessingError(message)
    return completed


@register(ToolType.VIDEO_COMPRESS)
def compress_video(ctx: ProcessorContext) -> ProcessorResult:
    options = ctx.options
    if not isinstance(options, VideoCompressOptions):
        raise PermanentJobError("Video compression job carries the wrong options type")
    if ctx.input_path is None:
        raise PermanentJobError("Input file key is missing")

    if options.quality != options.crf:
        logger.info("video_crf_clamped", extra={"job_id": ctx.job.id, "requested": options.quality, "crf": options.crf})

    extension = output_extension(options.codec)
    output_path = ctx.workdir / f"compressed_{ctx.job.id}{extension}"
    command = build_ffmpeg_command(ctx.settings.ffmpeg_binary, ctx.input_path, output_path, options)
    ctx.report_progress(20)
    logger.info("video_encode_started", extra={"job_id": ctx.job.id, "codec": options.codec, "preset": options.preset})
    run_ffmpeg(command, ctx.settings.ffmpeg_timeout_seconds)

    if not output_path.is_file():
        raise JobProcessingError("FFmpeg finished without producing an output file")
    ctx.report_progress(90)

    stem = Path(options.original_file_name or "video").stem
    compressed_size = output_path.stat().st_size
    return ProcessorResult(
        output_path=output_path,
        file_name=f"{stem}_compressed{extension}",
        content_type="video/x-matroska" if extension == ".mkv" else "video/mp4",
        metadata={
            "original_size": options.original_size,
            "compressed_size": compressed_size,
            "crf": None if options.bitrate_kbps else options.crf,
            "bitrate_kbps": options.bitrate_kbps,
        },
    )
