"""
Pytest configuration and fixtures for the frame customization tests.

Images are generated with Pillow on the fly and the asset store is faked,
so nothing here touches the network or the real database.
"""

import base64
import io
from typing import Callable, Dict, List, Optional

import numpy as np
import pytest
from PIL import Image, ImageDraw
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.config.database import init_db
from app.domain.customization_service import CustomizationService
from app.domain.upload_orchestrator import UploadOrchestrator
from app.infrastructure.cloudinary.upload_file import UploadedAsset, public_id_for
from app.infrastructure.database.customization_repository import CustomizationRepository


def image_bytes(img: Image.Image, fmt: str = "PNG", **save_kwargs) -> bytes:
    buf = io.BytesIO()
    img.save(buf, format=fmt, **save_kwargs)
    return buf.getvalue()


def make_photo(size=(120, 90), color=(200, 30, 30)) -> Image.Image:
    return Image.new("RGB", size, color)


def make_noise(size=(300, 300), seed: int = 7) -> Image.Image:
    rng = np.random.default_rng(seed)
    return Image.fromarray(rng.integers(0, 256, (size[1], size[0], 3), dtype=np.uint8), "RGB")


def make_frame(size=(600, 800), window=(100, 150, 500, 650), color=(30, 60, 200, 255)) -> Image.Image:
    frame = Image.new("RGBA", size, color)
    ImageDraw.Draw(frame).rectangle(window, fill=(0, 0, 0, 0))
    return frame


def data_url(img: Image.Image) -> str:
    return "data:image/png;base64," + base64.b64encode(image_bytes(img)).decode()


class FakeAssetStore:
    """In-memory asset store; ``script`` decides per call whether to fail."""

    def __init__(self, script: Optional[Callable[[str, int], Optional[Exception]]] = None):
        self.script = script
        self.calls: List[str] = []
        self.uploaded: Dict[str, bytes] = {}
        self.folders: Dict[str, str] = {}
        self.deleted: List[str] = []
        self.fail_delete: Optional[Exception] = None

    async def upload(self, data: bytes, filename: str, folder: str = "product-customizations") -> UploadedAsset:
        self.calls.append(filename)
        if self.script is not None:
            error = self.script(filename, self.calls.count(filename))
            if error is not None:
                raise error
        asset_id = f"{folder}/{public_id_for(filename)}"
        self.uploaded[asset_id] = data
        self.folders[filename] = folder
        return UploadedAsset(url=f"https://res.example.com/{asset_id}.jpg", asset_id=asset_id)

    async def delete(self, asset_id: str) -> bool:
        if self.fail_delete is not None:
            raise self.fail_delete
        self.deleted.append(asset_id)
        return self.uploaded.pop(asset_id, None) is not None


class MemoryRepository:
    def __init__(self):
        self.records = {}

    async def save(self, record):
        self.records[record.product_id] = record
        return record

    async def get(self, product_id):
        return self.records.get(product_id)


async def _no_sleep(seconds: float) -> None:
    return None


async def sqlite_repository():
    """Repository on a private in-memory SQLite; call inside the running loop."""
    engine = create_async_engine("sqlite+aiosqlite://", poolclass=StaticPool, connect_args={"check_same_thread": False})
    await init_db(bind=engine)
    factory = sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    return CustomizationRepository(factory), engine


@pytest.fixture
def photo_png() -> bytes:
    return image_bytes(make_photo())


@pytest.fixture
def photo_jpeg() -> bytes:
    return image_bytes(make_photo(), "JPEG", quality=90)


@pytest.fixture
def frame_url() -> str:
    return data_url(make_frame())


@pytest.fixture
def fake_store() -> FakeAssetStore:
    return FakeAssetStore()


@pytest.fixture
def make_orchestrator():
    def _make(store, **kwargs):
        kwargs.setdefault("sleep", _no_sleep)
        return UploadOrchestrator(store, **kwargs)
    return _make


@pytest.fixture
def service(fake_store, make_orchestrator) -> CustomizationService:
    return CustomizationService(orchestrator=make_orchestrator(fake_store), repository=MemoryRepository())
