"""
Persistence tests on an in-memory SQLite database.
"""

import asyncio

from app.infrastructure.database.models import CustomizationRecord

from tests.conftest import sqlite_repository


def _record(product_id, rotation, created_at):
    return CustomizationRecord(
        product_id=product_id,
        original_image_url=f"https://res.example.com/{product_id}-original.jpg",
        rendered_image_url=f"https://res.example.com/{product_id}-rendered.jpg",
        cropped_image_url=f"https://res.example.com/{product_id}-cropped.jpg",
        frame_image_url="https://frames.example.com/mug.png",
        transform={"x": 150, "y": 200, "scale": 1.0, "rotation": rotation},
        canvas_dimensions={"width": 300, "height": 400},
        created_at=created_at,
    )


def test_last_write_wins():
    async def scenario():
        repository, engine = await sqlite_repository()
        try:
            await repository.save(_record("prod-1", 0, "2026-01-01T00:00:00+00:00"))
            await repository.save(_record("prod-1", 45, "2026-01-02T00:00:00+00:00"))
            await repository.save(_record("prod-2", 10, "2026-01-03T00:00:00+00:00"))
            return await repository.get("prod-1"), await repository.get("prod-2"), await repository.get("prod-3")
        finally:
            await engine.dispose()

    first, second, missing = asyncio.run(scenario())

    assert first.transform["rotation"] == 45
    assert first.created_at == "2026-01-02T00:00:00+00:00"
    assert second.transform["rotation"] == 10
    assert missing is None


def test_record_dict_uses_camel_case_keys():
    record = _record("prod-1", 0, "2026-01-01T00:00:00+00:00")

    assert record.to_dict() == {
        "originalImageUrl": "https://res.example.com/prod-1-original.jpg",
        "renderedImageUrl": "https://res.example.com/prod-1-rendered.jpg",
        "croppedImageUrl": "https://res.example.com/prod-1-cropped.jpg",
        "frameImageUrl": "https://frames.example.com/mug.png",
        "transform": {"x": 150, "y": 200, "scale": 1.0, "rotation": 0},
        "canvasDimensions": {"width": 300, "height": 400},
        "createdAt": "2026-01-01T00:00:00+00:00",
    }
