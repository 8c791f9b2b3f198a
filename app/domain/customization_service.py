# app/domain/customization_service.py
import asyncio
import base64
import gc
import io
import logging
import os
import time
import uuid
from concurrent.futures import Executor
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Dict, Optional

import aiofiles
import aiohttp
import psutil
from PIL import Image, UnidentifiedImageError

from app.config.settings import settings
from app.domain import geometry
from app.domain.errors import (
    LoadFailure,
    SaveInProgressError,
    SessionNotFoundError,
    ValidationError,
)
from app.domain.interaction import InteractionController
from app.domain.upload_orchestrator import UploadOrchestrator, UploadOutcome
from app.infrastructure.cv import renderer
from app.infrastructure.cv.compression import (
    CLIENT_POLICY,
    SERVER_POLICY,
    CompressionResult,
    OpenCVJpegEncoder,
    compress_to_budget,
    encode_jpeg,
    ensure_within_ceiling,
    file_size_string,
)
from app.infrastructure.database.customization_repository import CustomizationRepository
from app.infrastructure.database.models import CustomizationRecord

# --- LOGGER SETUP ---
# Dedicated logger for this module so its stage logs stay readable
# next to uvicorn's own output.
logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler()
    formatter = logging.Formatter('%(asctime)s [%(levelname)s] %(message)s', '%Y-%m-%d %H:%M:%S')
    handler.setFormatter(formatter)
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    logger.propagate = False


@dataclass
class CustomizationSession:
    session_id: str
    product_id: str
    product_handle: str
    frame_image_url: str
    frame: Image.Image
    frame_load_failed: bool
    controller: InteractionController
    image: Optional[Image.Image] = None
    saving: bool = False
    file_requested: bool = False
    created_at: float = field(default_factory=time.time)

    @property
    def canvas(self) -> geometry.CanvasDimensions:
        return self.controller.canvas

    def request_file(self) -> None:
        self.file_requested = True

    def state(self) -> Dict:
        handles = self.controller.handles()
        return {
            "session_id": self.session_id,
            "product_id": self.product_id,
            "canvas": {"width": self.canvas.width, "height": self.canvas.height},
            "transform": self.controller.transform.as_dict(),
            "mode": self.controller.mode.value,
            "has_image": self.controller.has_image,
            "image_size": list(self.controller.image_size) if self.controller.image_size else None,
            "frame_load_failed": self.frame_load_failed,
            "file_requested": self.file_requested,
            "saving": self.saving,
            "handles": None if handles is None else {
                **{name: [p.x, p.y] for name, p in handles.corners.items()},
                geometry.ROTATE_HANDLE: [handles.rotate.x, handles.rotate.y],
            },
        }


@dataclass
class SaveResult:
    outcomes: Dict[str, UploadOutcome]
    compression: Dict[str, CompressionResult]
    record: Optional[CustomizationRecord] = None

    @property
    def ok(self) -> bool:
        return self.record is not None


def _memory_mb() -> Optional[float]:
    try:
        return psutil.Process(os.getpid()).memory_info().rss / 1024 / 1024
    except Exception as mem_error:
        logger.warning(f"Could not get memory info: {mem_error}")
        return None


def _preview_png(image, frame, transform, canvas, pixel_ratio, handles) -> bytes:
    surface = renderer.render_composite(image, frame, transform, canvas, pixel_ratio=pixel_ratio, handles=handles)
    buf = io.BytesIO()
    surface.save(buf, format="PNG")
    return buf.getvalue()


def _decode_image(data: bytes) -> Image.Image:
    try:
        with Image.open(io.BytesIO(data)) as img:
            img.load()
            return img.copy()
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError) as e:
        raise ValidationError("Failed to load image", details={"reason": str(e)}) from e


class CustomizationService:
    def __init__(
        self,
        orchestrator: UploadOrchestrator,
        repository: CustomizationRepository,
        executor: Optional[Executor] = None,
        http_session: Optional[aiohttp.ClientSession] = None,
    ):
        self.orchestrator = orchestrator
        self.repository = repository
        self.executor = executor
        self.http_session = http_session
        self.sessions: Dict[str, CustomizationSession] = {}

    # --- Frame templates ---

    async def _load_frame_bytes_async(self, src: str) -> bytes:
        try:
            if src.startswith(("http://", "https://")):
                timeout = aiohttp.ClientTimeout(total=settings.FRAME_FETCH_TIMEOUT_SECONDS)
                if self.http_session is not None:
                    async with self.http_session.get(src, timeout=timeout) as response:
                        response.raise_for_status()
                        return await response.read()
                async with aiohttp.ClientSession() as session:
                    async with session.get(src, timeout=timeout) as response:
                        response.raise_for_status()
                        return await response.read()
            if os.path.isfile(src):
                async with aiofiles.open(src, "rb") as f:
                    return await f.read()
            if src.startswith("data:image"):
                _, encoded = src.split(",", 1)
                return base64.b64decode(encoded + "===")
        except Exception as e:
            raise LoadFailure(f"Failed to load frame image from '{src[:70]}': {type(e).__name__}") from e
        raise LoadFailure(f"Unsupported frame image source '{src[:70]}'")

    async def load_frame_template(self, src: str):
        """Frame image plus whether the placeholder had to stand in."""
        try:
            if not src or not src.strip():
                raise LoadFailure("No frame image URL supplied")
            data = await self._load_frame_bytes_async(src.strip())
            frame = _decode_image(data).convert("RGBA")
            return frame, False
        except (LoadFailure, ValidationError) as e:
            logger.warning(f"{e.message}; using placeholder frame.")
            return renderer.placeholder_frame(), True

    async def open_session(self, product_id: str, frame_image_url: str, product_handle: Optional[str] = None) -> CustomizationSession:
        frame, failed = await self.load_frame_template(frame_image_url)
        if failed:
            canvas = geometry.CanvasDimensions(settings.CANVAS_MAX_WIDTH, settings.CANVAS_MAX_HEIGHT)
        else:
            canvas = geometry.canvas_dimensions_for_frame(
                frame.width,
                frame.height,
                max_width=settings.CANVAS_MAX_WIDTH,
                max_height=settings.CANVAS_MAX_HEIGHT,
                min_width=settings.CANVAS_MIN_WIDTH,
                min_height=settings.CANVAS_MIN_HEIGHT,
            )

        session_id = uuid.uuid4().hex
        controller = InteractionController(canvas)
        session = CustomizationSession(
            session_id=session_id,
            product_id=product_id,
            product_handle=product_handle or product_id,
            frame_image_url=frame_image_url,
            frame=frame,
            frame_load_failed=failed,
            controller=controller,
        )
        controller.on_file_request = session.request_file
        self.sessions[session_id] = session
        logger.info(f"Session {session_id} opened for product {product_id} (canvas {canvas.width:g}x{canvas.height:g}).")
        return session

    def get_session(self, session_id: str) -> CustomizationSession:
        session = self.sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def close_session(self, session_id: str) -> None:
        session = self.sessions.pop(session_id, None)
        if session is None:
            raise SessionNotFoundError(session_id)
        # An in-flight save may still finish and persist its record.
        if session.image is not None and not session.saving:
            session.image.close()

    # --- Upload ingestion ---

    async def ingest_image(self, session_id: str, data: bytes, content_type: Optional[str]) -> CustomizationSession:
        session = self.get_session(session_id)
        if session.saving:
            raise SaveInProgressError(session_id)
        if not content_type or not content_type.startswith("image/"):
            raise ValidationError("Please select a valid image file.")
        ensure_within_ceiling(len(data), settings.MAX_INPUT_BYTES, label="File")

        if len(data) > settings.INGEST_COMPRESS_THRESHOLD_BYTES:
            logger.info(f"Compressing large image ({file_size_string(len(data))}) before placement...")
            result = await compress_to_budget(
                data,
                settings.INGEST_COMPRESS_THRESHOLD_BYTES,
                policy=replace(CLIENT_POLICY, max_dimension=settings.INGEST_MAX_DIMENSION),
                executor=self.executor,
            )
            if result.compressed_size > settings.INGEST_REJECT_BYTES:
                raise ValidationError("Could not compress image enough. Please use a smaller image.")
            data = result.blob

        loop = asyncio.get_running_loop()
        image = await loop.run_in_executor(self.executor, _decode_image, data)
        # A save may have started while this upload was decoding.
        if session.saving:
            image.close()
            raise SaveInProgressError(session_id)
        # The previous image is left to gc; a preview render may still hold it.
        session.image = image
        session.file_requested = False
        session.controller.set_image(image.width, image.height)
        logger.info(f"Session {session_id}: image {image.width}x{image.height} placed.")
        return session

    # --- Rendering ---

    async def render_preview(self, session_id: str, pixel_ratio: Optional[float] = None) -> bytes:
        session = self.get_session(session_id)
        ratio = pixel_ratio or settings.PREVIEW_PIXEL_RATIO
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            self.executor,
            _preview_png,
            session.image,
            session.frame,
            replace(session.controller.transform),
            session.canvas,
            ratio,
            session.controller.handles(),
        )

    def _encode_exports(self, image: Image.Image, frame: Image.Image, transform: geometry.Transform, canvas) -> Dict[str, bytes]:
        # Export renders never carry handles.
        ratio = settings.EXPORT_PIXEL_RATIO
        composite = renderer.render_composite(image, frame, transform, canvas, pixel_ratio=ratio)
        content = renderer.render_content(image, transform, canvas, pixel_ratio=ratio)
        original = renderer.limit_dimensions(image, settings.ORIGINAL_MAX_DIMENSION)
        return {
            "rendered": encode_jpeg(composite, settings.RENDER_JPEG_QUALITY),
            "cropped": encode_jpeg(content, settings.RENDER_JPEG_QUALITY),
            "original": encode_jpeg(original, settings.ORIGINAL_JPEG_QUALITY),
        }

    # --- Save cycle ---

    async def save(self, session_id: str) -> SaveResult:
        session = self.get_session(session_id)
        if session.image is None:
            raise ValidationError("Please upload an image first")
        if session.saving:
            raise SaveInProgressError(session_id)

        session.saving = True
        overall_start_time = time.perf_counter()
        try:
            logger.info(f"=== START SAVE for session {session_id} (product {session.product_id}) ===")
            logger.info(f"Memory usage at start: {_memory_mb() or 0:.1f}MB")

            # Stage 1: snapshot the transform and encode the export surfaces
            logger.info("Stage 1/4: Preparing images for upload...")
            transform = replace(session.controller.transform)
            image = session.image
            loop = asyncio.get_running_loop()
            blobs = await loop.run_in_executor(
                self.executor, self._encode_exports, image, session.frame, transform, session.canvas
            )
            logger.info(
                "Stage 1/4: Initial blob sizes: "
                + ", ".join(f"{name}={file_size_string(len(b))}" for name, b in blobs.items())
            )

            # Stage 2: fit every blob to its budget
            logger.info("Stage 2/4: Compressing images for optimal upload...")
            budgets = {
                "rendered": settings.RENDERED_BUDGET_BYTES,
                "cropped": settings.CROPPED_BUDGET_BYTES,
                "original": settings.ORIGINAL_BUDGET_BYTES,
            }
            compression = {}
            for name, blob in blobs.items():
                compression[name] = await compress_to_budget(blob, budgets[name], executor=self.executor)
            del blobs
            logger.info(f"Memory after compression: {_memory_mb() or 0:.1f}MB")

            # Stage 3: concurrent upload
            logger.info("Stage 3/4: Uploading images to cloud storage...")
            stamp = int(time.time() * 1000)
            outcomes = await self.orchestrator.upload_all(
                {
                    name: (result.blob, f"{session.product_handle}-{name}-{stamp}.jpg")
                    for name, result in compression.items()
                },
                folder=settings.CLOUDINARY_FOLDER,
            )
            failed = [name for name, outcome in outcomes.items() if not outcome.ok]
            if failed:
                logger.error(f"Stage 3/4: Upload failed for {', '.join(failed)}; customization not saved.")
                return SaveResult(outcomes=outcomes, compression=compression)

            # Stage 4: persist the record
            logger.info("Stage 4/4: Saving customization...")
            record = CustomizationRecord(
                product_id=session.product_id,
                original_image_url=outcomes["original"].asset.url,
                rendered_image_url=outcomes["rendered"].asset.url,
                cropped_image_url=outcomes["cropped"].asset.url,
                frame_image_url=session.frame_image_url,
                transform=transform.as_dict(),
                canvas_dimensions={"width": session.canvas.width, "height": session.canvas.height},
                created_at=datetime.now(timezone.utc).isoformat(),
            )
            record = await self.repository.save(record)

            overall_duration = time.perf_counter() - overall_start_time
            logger.info(f"=== COMPLETED SAVE for session {session_id} in {overall_duration:.2f}s ===")
            return SaveResult(outcomes=outcomes, compression=compression, record=record)
        finally:
            session.saving = False
            gc.collect()

    async def get_customization(self, product_id: str) -> Optional[CustomizationRecord]:
        return await self.repository.get(product_id)

    # --- Direct asset uploads ---

    async def upload_asset_file(self, data: bytes, filename: str):
        ensure_within_ceiling(len(data), settings.MAX_ASSET_UPLOAD_BYTES, label="File")
        return await self.orchestrator.upload_asset(data, filename, folder=settings.CLOUDINARY_FOLDER)

    async def upload_original_file(self, data: bytes, filename: str):
        """Store an original at high fidelity, compressing server-side above the threshold."""
        original_size = len(data)
        ensure_within_ceiling(original_size, settings.MAX_ORIGINAL_UPLOAD_BYTES, label="File")

        if original_size > settings.SERVER_COMPRESS_THRESHOLD_BYTES:
            logger.info("Compressing original image for storage...")
            result = await compress_to_budget(
                data,
                settings.SERVER_BUDGET_BYTES,
                policy=replace(
                    SERVER_POLICY,
                    default_quality=settings.SERVER_ORIGINAL_QUALITY,
                    quality_ceiling=settings.SERVER_ORIGINAL_QUALITY,
                    max_dimension=settings.SERVER_MAX_DIMENSION,
                ),
                encoder=OpenCVJpegEncoder(),
                executor=self.executor,
            )
            if result.was_compressed:
                logger.info(
                    f"Original image compressed: {file_size_string(original_size)} -> {file_size_string(result.compressed_size)}"
                )
                data = result.blob

        asset = await self.orchestrator.upload_asset(
            data, f"original-{filename}", folder=settings.CLOUDINARY_ORIGINALS_FOLDER
        )
        return asset, original_size, len(data)

    async def delete_asset(self, asset_id: str) -> bool:
        return await self.orchestrator.delete_asset(asset_id)

