# app/infrastructure/cv/compression.py
"""
Byte-budget JPEG compression.

Both variants share one search: pick a starting quality from how far the
input is over budget, encode, and on overshoot lower quality by a power-law
step. The number of encode rounds is fixed by the policy so the search
always terminates, whatever the encoder's size curve looks like.

- client variant: Pillow encoder, fine quality tiers, one upward nudge.
- server variant: OpenCV encoder, coarse 95% -> 60% descent.
"""
import asyncio
import io
import logging
import math
from concurrent.futures import Executor
from dataclasses import dataclass
from typing import Any, Optional, Protocol, Tuple

import cv2
import numpy as np
from PIL import Image, UnidentifiedImageError

from app.domain.errors import EncodingFailure, PayloadTooLargeError
from app.infrastructure.cv.renderer import flatten, limit_dimensions

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CompressionPolicy:
    # (minimum budget/original ratio, starting quality), checked in order
    quality_tiers: Tuple[Tuple[float, float], ...]
    default_quality: float
    step_exponent: float
    quality_floor: float
    quality_ceiling: float
    max_refinements: int
    max_dimension: int
    min_step: float = 0.0
    nudge_threshold: float = 0.0   # nudge up when result < budget * threshold
    nudge_exponent: float = 0.0


CLIENT_POLICY = CompressionPolicy(
    quality_tiers=((0.8, 0.99), (0.6, 0.97), (0.3, 0.94)),
    default_quality=0.91,
    step_exponent=0.9,
    quality_floor=0.3,
    quality_ceiling=0.99,
    max_refinements=3,
    max_dimension=6000,
    min_step=0.02,
    nudge_threshold=0.8,
    nudge_exponent=0.3,
)

SERVER_POLICY = CompressionPolicy(
    quality_tiers=(),
    default_quality=0.95,
    step_exponent=1.0,
    quality_floor=0.6,
    quality_ceiling=0.95,
    max_refinements=2,
    max_dimension=6000,
    min_step=0.2,
)


@dataclass
class CompressionResult:
    blob: bytes
    original_size: int
    compressed_size: int
    ratio: float
    was_compressed: bool
    quality: Optional[float] = None
    attempts: int = 0


def bytes_to_mb(size: int) -> float:
    return size / (1024 * 1024)


def mb_to_bytes(mb: float) -> int:
    return int(mb * 1024 * 1024)


def file_size_string(size: int) -> str:
    if size == 0:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB"]
    i = min(int(math.floor(math.log(size, 1024))), len(units) - 1)
    value = round(size / (1024 ** i), 2)
    return f"{value:g} {units[i]}"


def ensure_within_ceiling(size: int, ceiling: int, label: str = "File") -> None:
    if size > ceiling:
        raise PayloadTooLargeError(size, ceiling, label=label)


def initial_quality(policy: CompressionPolicy, budget_ratio: float) -> float:
    for threshold, quality in policy.quality_tiers:
        if budget_ratio > threshold:
            return quality
    return policy.default_quality


def reduced_quality(policy: CompressionPolicy, quality: float, budget: int, size: int) -> float:
    stepped = quality * (budget / size) ** policy.step_exponent
    stepped = min(stepped, quality * (1 - policy.min_step))
    return max(policy.quality_floor, stepped)


class JpegEncoder(Protocol):
    def prepare(self, data: bytes, max_dimension: int) -> Any: ...

    def encode(self, prepared: Any, quality: float) -> bytes: ...


class PillowJpegEncoder:
    """Client-side encoder, equivalent of a canvas ``toBlob('image/jpeg', q)``."""

    def prepare(self, data: bytes, max_dimension: int) -> Image.Image:
        try:
            with Image.open(io.BytesIO(data)) as img:
                img.load()
                prepared = flatten(img)
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError) as e:
            raise EncodingFailure(f"Could not decode image for compression: {e}") from e
        return limit_dimensions(prepared, max_dimension)

    def encode(self, prepared: Image.Image, quality: float) -> bytes:
        return encode_jpeg(prepared, quality)


class OpenCVJpegEncoder:
    """Server-side encoder: progressive JPEG through OpenCV."""

    def prepare(self, data: bytes, max_dimension: int) -> np.ndarray:
        arr = np.frombuffer(data, np.uint8)
        img = cv2.imdecode(arr, cv2.IMREAD_COLOR)
        if img is None:
            raise EncodingFailure("Could not decode image for compression.")
        h, w = img.shape[:2]
        m = max(h, w)
        if m > max_dimension:
            scale = max_dimension / m
            img = cv2.resize(img, (max(1, round(w * scale)), max(1, round(h * scale))), interpolation=cv2.INTER_AREA)
        return img

    def encode(self, prepared: np.ndarray, quality: float) -> bytes:
        params = [int(cv2.IMWRITE_JPEG_QUALITY), int(round(quality * 100)), int(cv2.IMWRITE_JPEG_PROGRESSIVE), 1]
        ok, buf = cv2.imencode(".jpg", prepared, params)
        if not ok or buf is None or buf.size == 0:
            raise EncodingFailure("OpenCV produced no JPEG output.")
        return buf.tobytes()


def encode_jpeg(image: Image.Image, quality: float) -> bytes:
    """Encode a surface to JPEG bytes; quality is 0-1."""
    buf = io.BytesIO()
    flatten(image).save(buf, format="JPEG", quality=max(1, min(100, round(quality * 100))), optimize=True)
    data = buf.getvalue()
    if not data:
        raise EncodingFailure("Failed to create JPEG from surface.")
    return data


def _result(blob: bytes, original_size: int, was_compressed: bool, quality=None, attempts=0) -> CompressionResult:
    return CompressionResult(
        blob=blob,
        original_size=original_size,
        compressed_size=len(blob),
        ratio=len(blob) / original_size if original_size else 1.0,
        was_compressed=was_compressed,
        quality=quality,
        attempts=attempts,
    )


async def compress_to_budget(
    data: bytes,
    budget: int,
    policy: CompressionPolicy = CLIENT_POLICY,
    encoder: Optional[JpegEncoder] = None,
    executor: Optional[Executor] = None,
    ceiling: Optional[int] = None,
) -> CompressionResult:
    """Fit ``data`` under ``budget`` bytes with the highest quality the search finds.

    Inputs over ``ceiling`` are rejected, never compressed. Encoder failure
    falls back to the untouched input. Each encode runs in ``executor`` so
    the event loop keeps serving other work between rounds.
    """
    original_size = len(data)
    if ceiling is not None:
        ensure_within_ceiling(original_size, ceiling)
    if original_size <= budget:
        return _result(data, original_size, was_compressed=False)

    encoder = encoder or PillowJpegEncoder()
    loop = asyncio.get_running_loop()

    try:
        prepared = await loop.run_in_executor(executor, encoder.prepare, data, policy.max_dimension)
    except EncodingFailure as e:
        logger.warning(f"Compression skipped, returning original: {e}")
        return _result(data, original_size, was_compressed=False)

    quality = initial_quality(policy, budget / original_size)
    best: Optional[Tuple[bytes, float]] = None       # highest-quality result within budget
    smallest: Optional[Tuple[bytes, float]] = None   # fallback when nothing fits
    nudged = False
    attempts = 0

    for round_no in range(policy.max_refinements + 1):
        try:
            blob = await loop.run_in_executor(executor, encoder.encode, prepared, quality)
        except EncodingFailure as e:
            logger.warning(f"Encoder failed at quality {quality:.3f}: {e}")
            break
        attempts += 1
        size = len(blob)
        logger.debug(
            f"Compression attempt {attempts}: quality={quality:.3f}, "
            f"size={file_size_string(size)}, target={file_size_string(budget)}"
        )
        can_refine = round_no < policy.max_refinements

        if size <= budget:
            if best is None or quality > best[1]:
                best = (blob, quality)
            if policy.nudge_exponent and not nudged and can_refine and size < budget * policy.nudge_threshold:
                raised = min(policy.quality_ceiling, quality * (budget / size) ** policy.nudge_exponent)
                if raised > quality + 1e-3:
                    nudged = True
                    quality = raised
                    continue
            break

        if smallest is None or size < len(smallest[0]):
            smallest = (blob, quality)
        if best is not None or quality <= policy.quality_floor or not can_refine:
            break
        quality = reduced_quality(policy, quality, budget, size)

    chosen = best or smallest
    if chosen is None:
        logger.warning("Encoder produced no output, returning original.")
        return _result(data, original_size, was_compressed=False)

    blob, used_quality = chosen
    if best is None:
        logger.warning(
            f"Budget not met after {attempts} encodes: {file_size_string(len(blob))} > {file_size_string(budget)}"
        )
    logger.info(
        f"Compressed {file_size_string(original_size)} -> {file_size_string(len(blob))} "
        f"(quality {used_quality:.2f}, {attempts} encodes)"
    )
    return _result(blob, original_size, was_compressed=True, quality=used_quality, attempts=attempts)
