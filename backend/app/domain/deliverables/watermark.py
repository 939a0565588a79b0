"""Watermarking pipeline for deliverable previews.

Runs once when a deliverable is uploaded. Raster images get a tiled diagonal
text pattern across the whole canvas; PDFs get the same text stamped at five
positions on every page. Anything else is reported as unsupported so gating can
refuse to hand out the clean file in its place.
"""

from __future__ import annotations

import asyncio
import io
import logging
import math
from dataclasses import dataclass
from functools import partial

from PIL import Image, ImageDraw, ImageFont
from pypdf import PdfReader, PdfWriter
from reportlab.lib.colors import Color
from reportlab.pdfgen import canvas

from app.domain.deliverables import statuses
from app.infra.metrics import metrics

logger = logging.getLogger(__name__)

DEFAULT_TEXT = "DRAFT - PREVIEW ONLY"
DEFAULT_OPACITY = 0.08

RASTER_FORMATS = {
    "image/png": "PNG",
    "image/jpeg": "JPEG",
    "image/jpg": "JPEG",
    "image/webp": "WEBP",
}
PDF_MIME_TYPES = {"application/pdf"}

# Fractions of page width/height where the PDF stamp is anchored.
PDF_STAMP_POSITIONS = (
    (0.5, 0.5),
    (0.2, 0.8),
    (0.8, 0.8),
    (0.2, 0.2),
    (0.8, 0.2),
)
PDF_ROTATION_DEGREES = -45
RASTER_ROTATION_DEGREES = 45


class UnsupportedMediaTypeError(ValueError):
    def __init__(self, mime_type: str):
        self.mime_type = mime_type
        super().__init__(f"Cannot watermark {mime_type}")


@dataclass(frozen=True)
class WatermarkResult:
    status: str
    data: bytes | None = None
    error: str | None = None

    @property
    def has_preview(self) -> bool:
        return self.data is not None


def normalize_mime_type(mime_type: str | None) -> str:
    return (mime_type or "").split(";")[0].strip().lower()


def supports(mime_type: str | None) -> bool:
    normalized = normalize_mime_type(mime_type)
    return normalized in RASTER_FORMATS or normalized in PDF_MIME_TYPES


def _load_font(size: int) -> ImageFont.ImageFont | ImageFont.FreeTypeFont:
    return ImageFont.load_default(size=size)


def watermark_image(
    data: bytes, mime_type: str, *, text: str = DEFAULT_TEXT, opacity: float = DEFAULT_OPACITY
) -> bytes:
    output_format = RASTER_FORMATS[normalize_mime_type(mime_type)]
    with Image.open(io.BytesIO(data)) as source:
        source.load()
        base = source.convert("RGBA")

    width, height = base.size
    font_size = max(14, min(width, height) // 20)
    font = _load_font(font_size)
    alpha = max(1, int(round(255 * opacity)))

    # Tile a square larger than the diagonal so the rotated pattern still
    # covers every corner after cropping back to the image size.
    side = int(math.hypot(width, height)) + font_size * 4
    tile = Image.new("RGBA", (side, side), (255, 255, 255, 0))
    draw = ImageDraw.Draw(tile)
    left, top, right, bottom = draw.textbbox((0, 0), text, font=font)
    step_x = (right - left) + font_size * 3
    step_y = (bottom - top) + font_size * 3
    for row, y in enumerate(range(0, side, step_y)):
        offset = (step_x // 2) if row % 2 else 0
        for x in range(-offset, side, step_x):
            draw.text((x, y), text, font=font, fill=(128, 128, 128, alpha))

    rotated = tile.rotate(RASTER_ROTATION_DEGREES, resample=Image.BICUBIC)
    crop_left = (side - width) // 2
    crop_top = (side - height) // 2
    overlay = rotated.crop((crop_left, crop_top, crop_left + width, crop_top + height))
    marked = Image.alpha_composite(base, overlay)

    buffer = io.BytesIO()
    if output_format == "JPEG":
        marked.convert("RGB").save(buffer, format="JPEG", quality=90)
    else:
        marked.save(buffer, format=output_format)
    return buffer.getvalue()


def _pdf_stamp(width: float, height: float, text: str, opacity: float) -> bytes:
    buffer = io.BytesIO()
    stamp = canvas.Canvas(buffer, pagesize=(width, height), pageCompression=0)
    stamp.setFillColor(Color(0.5, 0.5, 0.5, alpha=opacity))
    font_size = max(14.0, min(width, height) / 30)
    stamp.setFont("Helvetica-Bold", font_size)
    for fx, fy in PDF_STAMP_POSITIONS:
        stamp.saveState()
        stamp.translate(width * fx, height * fy)
        stamp.rotate(PDF_ROTATION_DEGREES)
        stamp.drawCentredString(0, 0, text)
        stamp.restoreState()
    stamp.showPage()
    stamp.save()
    return buffer.getvalue()


def watermark_pdf(data: bytes, *, text: str = DEFAULT_TEXT, opacity: float = DEFAULT_OPACITY) -> bytes:
    reader = PdfReader(io.BytesIO(data))
    writer = PdfWriter()
    for page in reader.pages:
        width = float(page.mediabox.width)
        height = float(page.mediabox.height)
        overlay = PdfReader(io.BytesIO(_pdf_stamp(width, height, text, opacity))).pages[0]
        page.merge_page(overlay)
        writer.add_page(page)
    buffer = io.BytesIO()
    writer.write(buffer)
    return buffer.getvalue()


def watermark(
    original: bytes, mime_type: str, *, text: str = DEFAULT_TEXT, opacity: float = DEFAULT_OPACITY
) -> bytes:
    """Return the watermarked rendition of ``original``.

    Raises :class:`UnsupportedMediaTypeError` for types without a renderer.
    """
    normalized = normalize_mime_type(mime_type)
    if normalized in RASTER_FORMATS:
        return watermark_image(original, normalized, text=text, opacity=opacity)
    if normalized in PDF_MIME_TYPES:
        return watermark_pdf(original, text=text, opacity=opacity)
    raise UnsupportedMediaTypeError(normalized or "unknown")


class WatermarkPipeline:
    """Runs :func:`watermark` off the event loop with a deadline.

    Failures and timeouts fall back to the original bytes so an upload never
    fails because of its preview.
    """

    def __init__(
        self,
        *,
        text: str = DEFAULT_TEXT,
        opacity: float = DEFAULT_OPACITY,
        timeout_seconds: float = 30.0,
    ) -> None:
        self.text = text
        self.opacity = opacity
        self.timeout_seconds = timeout_seconds

    async def run(self, original: bytes, mime_type: str) -> WatermarkResult:
        if not supports(mime_type):
            logger.info(
                "watermark_unsupported",
                extra={"extra": {"mime_type": normalize_mime_type(mime_type)}},
            )
            metrics.record_watermark(statuses.WATERMARK_UNSUPPORTED)
            return WatermarkResult(status=statuses.WATERMARK_UNSUPPORTED)

        render = partial(watermark, original, mime_type, text=self.text, opacity=self.opacity)
        try:
            data = await asyncio.wait_for(asyncio.to_thread(render), timeout=self.timeout_seconds)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "watermark_failed",
                extra={
                    "extra": {
                        "mime_type": normalize_mime_type(mime_type),
                        "reason": type(exc).__name__,
                    }
                },
            )
            metrics.record_watermark(statuses.WATERMARK_FAILED)
            return WatermarkResult(
                status=statuses.WATERMARK_FAILED, data=original, error=type(exc).__name__
            )

        metrics.record_watermark(statuses.WATERMARK_APPLIED)
        return WatermarkResult(status=statuses.WATERMARK_APPLIED, data=data)
