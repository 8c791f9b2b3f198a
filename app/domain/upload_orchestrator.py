# app/domain/upload_orchestrator.py
import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Mapping, Optional, Protocol, Tuple

from app.domain.errors import (
    FrameCustomizationError,
    NonRetryableUploadError,
    UploadFailedError,
    ValidationError,
)
from app.infrastructure.cloudinary.upload_file import UploadedAsset
from app.infrastructure.cv.compression import ensure_within_ceiling, file_size_string

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler()
    formatter = logging.Formatter('%(asctime)s [%(levelname)s] [UPLOAD] %(message)s', '%Y-%m-%d %H:%M:%S')
    handler.setFormatter(formatter)
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    logger.propagate = False


class AssetStore(Protocol):
    async def upload(self, data: bytes, filename: str, folder: str = ...) -> UploadedAsset: ...

    async def delete(self, asset_id: str) -> bool: ...


@dataclass
class UploadOutcome:
    name: str
    asset: Optional[UploadedAsset] = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.asset is not None

    def to_dict(self) -> Dict:
        if self.ok:
            return {"name": self.name, "ok": True, "url": self.asset.url, "asset_id": self.asset.asset_id}
        message = self.error.message if isinstance(self.error, FrameCustomizationError) else str(self.error)
        return {"name": self.name, "ok": False, "error": message}


class UploadOrchestrator:
    """Uploads with timeout, retry and exponential backoff.

    Size over ``max_upload_bytes`` is rejected before any network call.
    Bad-request and payload-too-large answers are never retried.
    """

    def __init__(
        self,
        store: AssetStore,
        max_attempts: int = 3,
        timeout: float = 120.0,
        backoff_base: float = 1.0,
        max_upload_bytes: Optional[int] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.max_attempts = max(1, max_attempts)
        self.timeout = timeout
        self.backoff_base = backoff_base
        self.max_upload_bytes = max_upload_bytes
        self._sleep = sleep

    def backoff_delay(self, attempt: int) -> float:
        return (2 ** attempt) * self.backoff_base

    async def upload_asset(self, data: bytes, filename: str, folder: Optional[str] = None) -> UploadedAsset:
        if self.max_upload_bytes is not None:
            ensure_within_ceiling(len(data), self.max_upload_bytes)

        kwargs = {"folder": folder} if folder else {}
        last_error: Optional[Exception] = None
        for attempt in range(1, self.max_attempts + 1):
            logger.info(f"Uploading {filename} ({file_size_string(len(data))}), attempt {attempt}/{self.max_attempts}")
            try:
                # wait_for cancels the in-flight request on timeout
                asset = await asyncio.wait_for(self.store.upload(data, filename, **kwargs), timeout=self.timeout)
                logger.info(f"Upload successful: {asset.url}")
                return asset
            except (NonRetryableUploadError, ValidationError) as e:
                logger.error(f"Upload of {filename} rejected, not retrying: {e}")
                raise
            except asyncio.TimeoutError:
                last_error = TimeoutError(f"Upload timed out after {self.timeout:g}s")
            except Exception as e:
                last_error = e
            logger.warning(f"Upload error for {filename} (attempt {attempt}/{self.max_attempts}): {last_error}")
            if attempt < self.max_attempts:
                await self._sleep(self.backoff_delay(attempt))

        raise UploadFailedError(filename, self.max_attempts, last_error)

    async def upload_all(self, assets: Mapping[str, Tuple[bytes, str]], folder: Optional[str] = None) -> Dict[str, UploadOutcome]:
        """Upload every asset concurrently. One failure never rolls back the others."""
        names = list(assets)
        results = await asyncio.gather(
            *(self.upload_asset(data, filename, folder) for data, filename in assets.values()),
            return_exceptions=True,
        )
        outcomes = {}
        for name, result in zip(names, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                outcomes[name] = UploadOutcome(name=name, error=result)
            else:
                outcomes[name] = UploadOutcome(name=name, asset=result)
        return outcomes

    async def delete_asset(self, asset_id: str) -> bool:
        """Best-effort delete; a failure leaves the remote asset orphaned."""
        try:
            deleted = await self.store.delete(asset_id)
        except Exception as e:
            logger.warning(f"Failed to delete asset '{asset_id}': {type(e).__name__}: {e}")
            return False
        if not deleted:
            logger.warning(f"Asset store did not delete '{asset_id}'")
        return deleted
