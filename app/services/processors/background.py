import logging
from pathlib import Path

import numpy as np
import requests
from PIL import Image, ImageColor

from app.core.config import Settings
from app.models.enums import ToolType
from app.schemas.options import RemoveBackgroundOptions
from app.services.processors.base import ProcessorContext, ProcessorResult
from app.services.processors.errors import PermanentJobError, TransientJobError
from app.services.processors.registry import register

logger = logging.getLogger(__name__)

COLOR_DISTANCE_THRESHOLD = 25.0


def border_color(pixels: np.ndarray) -> np.ndarray:
    rgb = pixels[..., :3].astype(np.float64)
    edges = np.concatenate([rgb[0, :, :], rgb[-1, :, :], rgb[:, 0, :], rgb[:, -1, :]])
    return edges.mean(axis=0)


def remove_background_locally(image: Image.Image, target: tuple[int, int, int] | None = None) -> Image.Image:
    """Fade out pixels close to the background colour.

    The background colour is the average of the image border unless ``target``
    is given. Alpha falls off linearly with colour distance below the
    threshold, which keeps edges soft.
    """
    pixels = np.array(image.convert("RGBA"), dtype=np.uint8)
    reference = np.array(target, dtype=np.float64) if target is not None else border_color(pixels)
    distance = np.sqrt(((pixels[..., :3].astype(np.float64) - reference) ** 2).sum(axis=-1))
    mask = distance < COLOR_DISTANCE_THRESHOLD
    alpha = pixels[..., 3].astype(np.float64)
    alpha[mask] = alpha[mask] * (distance[mask] / COLOR_DISTANCE_THRESHOLD)
    pixels[..., 3] = np.clip(alpha, 0, 255).astype(np.uint8)
    return Image.fromarray(pixels, mode="RGBA")


def flatten_onto(image: Image.Image, color: str) -> Image.Image:
    background = Image.new("RGBA", image.size, ImageColor.getrgb(color) + (255,))
    return Image.alpha_composite(background, image.convert("RGBA"))


def remove_background_with_service(data: bytes, file_name: str, options: RemoveBackgroundOptions, settings: Settings) -> bytes:
    form = {"size": "auto", "format": "png"}
    if not options.transparent and options.background_color:
        form["bg_color"] = options.background_color.lstrip("#")
    try:
        response = requests.post(
            settings.removebg_api_url,
            files={"image_file": (file_name, data)},
            data=form,
            headers={"X-Api-Key": settings.removebg_api_key},
            timeout=settings.removebg_timeout_seconds,
        )
    except requests.RequestException as exc:
        raise TransientJobError(f"Background removal service unreachable: {exc}") from exc

    if response.status_code == 429 or response.status_code >= 500:
        raise TransientJobError(f"Background removal service unavailable (HTTP {response.status_code})")
    if response.status_code != 200:
        raise PermanentJobError(f"Background removal rejected the image (HTTP {response.status_code}): {response.text[:300]}")
    return response.content


@register(ToolType.IMAGE_REMOVE_BACKGROUND)
def remove_background(ctx: ProcessorContext) -> ProcessorResult:
    options = ctx.options
    if not isinstance(options, RemoveBackgroundOptions):
        raise PermanentJobError("Background removal job carries the wrong options type")
    if ctx.input_path is None:
        raise PermanentJobError("Input file key is missing")

    output_path = ctx.workdir / f"removed_bg_{ctx.job.id}.png"
    ctx.report_progress(20)
    if ctx.settings.removebg_api_key:
        result = remove_background_with_service(
            ctx.input_path.read_bytes(), options.original_file_name or ctx.input_path.name, options, ctx.settings
        )
        output_path.write_bytes(result)
        engine = "remove.bg"
    else:
        with Image.open(ctx.input_path) as source:
            processed = remove_background_locally(source)
        if not options.transparent and options.background_color:
            processed = flatten_onto(processed, options.background_color)
        processed.save(output_path, format="PNG", optimize=True)
        engine = "local"
    ctx.report_progress(90)
    logger.info("background_removed", extra={"job_id": ctx.job.id, "engine": engine})

    stem = Path(options.original_file_name or "image").stem
    return ProcessorResult(
        output_path=output_path,
        file_name=f"{stem}_no_bg.png",
        content_type="image/png",
        metadata={"engine": engine, "original_size": options.original_size},
    )
