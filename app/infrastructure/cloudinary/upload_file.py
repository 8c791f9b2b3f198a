# app/infrastructure/cloudinary/upload_file.py
import asyncio
import json
import time
from concurrent.futures import Executor
from dataclasses import dataclass
from typing import Optional

import aiohttp
import cloudinary, cloudinary.uploader, cloudinary.utils
from app.config.settings import settings
from app.domain.errors import NonRetryableUploadError, TransientIOError


# Configure once. CLOUDINARY_URL in the environment is parsed by the SDK itself;
# the split vars only override what they set.
cloudinary.config(
    **{
        key: value
        for key, value in {
            "cloud_name": settings.CLOUDINARY_CLOUD_NAME,
            "api_key": settings.CLOUDINARY_API_KEY,
            "api_secret": settings.CLOUDINARY_API_SECRET,
        }.items()
        if value
    },
    secure=True,
)

NON_RETRYABLE_STATUSES = (400, 413)


@dataclass(frozen=True)
class UploadedAsset:
    url: str
    asset_id: str


def public_id_for(filename: str) -> str:
    # Cloudinary appends the extension from `format`
    return filename.rsplit(".", 1)[0] if "." in filename else filename


def _error_message(body: bytes, fallback: str) -> str:
    # Proxies answer 413 with HTML; only Cloudinary sends {"error": {"message": ...}}
    try:
        payload = json.loads(body)
    except ValueError:
        return fallback
    error = payload.get("error") if isinstance(payload, dict) else None
    message = error.get("message") if isinstance(error, dict) else None
    return message or fallback


class CloudinaryAssetStore:
    """Asset store backed by Cloudinary.

    Uploads go through the REST upload endpoint with a signed multipart body
    so the request can be cancelled by the caller's timeout. Deletes use the
    SDK's ``destroy`` in an executor.
    """

    def __init__(self, executor: Optional[Executor] = None, session: Optional[aiohttp.ClientSession] = None):
        self.executor = executor
        self._session = session

    def is_configured(self) -> bool:
        cfg = cloudinary.config()
        return bool(cfg.cloud_name and cfg.api_key and cfg.api_secret)

    async def upload(
        self,
        data: bytes,
        filename: str,
        folder: str = settings.CLOUDINARY_FOLDER,
        fmt: str = "jpg",
        overwrite: bool = True,
    ) -> UploadedAsset:
        if not self.is_configured():
            raise NonRetryableUploadError(
                "Cloudinary configuration is missing. Please check your environment variables.",
                status_code=500,
            )

        params = cloudinary.utils.sign_request(
            {
                "timestamp": int(time.time()),
                "public_id": public_id_for(filename),
                "folder": folder,
                "format": fmt,
                "overwrite": overwrite,
            },
            {},
        )
        form = aiohttp.FormData()
        for key, value in params.items():
            form.add_field(key, str(value).lower() if isinstance(value, bool) else str(value))
        form.add_field("file", data, filename=filename, content_type="image/jpeg")

        url = cloudinary.utils.cloudinary_api_url("upload", resource_type="image")
        session = self._session or aiohttp.ClientSession()
        try:
            async with session.post(url, data=form) as response:
                body = await response.read()
                if response.status in NON_RETRYABLE_STATUSES:
                    message = _error_message(body, response.reason or str(response.status))
                    raise NonRetryableUploadError(f"Upload failed: {message}", status_code=response.status)
                if response.status >= 400:
                    raise TransientIOError(f"Upload failed with status {response.status}")
            payload = json.loads(body)
            if not isinstance(payload, dict) or not payload.get("secure_url") or not payload.get("public_id"):
                raise TransientIOError("Upload response did not include secure_url and public_id")
        except (aiohttp.ClientError, ValueError) as e:
            raise TransientIOError(f"Upload request failed: {type(e).__name__}: {e}") from e
        finally:
            if self._session is None:
                await session.close()

        return UploadedAsset(url=payload["secure_url"], asset_id=payload["public_id"])

    async def delete(self, asset_id: str) -> bool:
        loop = asyncio.get_running_loop()
        res = await loop.run_in_executor(
            self.executor,
            lambda: cloudinary.uploader.destroy(asset_id, resource_type="image", invalidate=True),
        )
        return res.get("result") == "ok"
