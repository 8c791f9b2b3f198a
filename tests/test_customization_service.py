"""
Tests for the customization session lifecycle and the save cycle.
"""

import asyncio
import io
import re
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest
from PIL import Image

from app.config.settings import settings
from app.domain.customization_service import CustomizationService
from app.domain.errors import (
    PayloadTooLargeError,
    SaveInProgressError,
    SessionNotFoundError,
    TransientIOError,
    ValidationError,
)

from tests.conftest import (
    FakeAssetStore,
    MemoryRepository,
    data_url,
    image_bytes,
    make_frame,
    make_noise,
    make_photo,
    sqlite_repository,
)


def run(coro):
    return asyncio.run(coro)


async def _session_with_photo(service, frame_url, photo, product_id="prod-1", handle="mug"):
    session = await service.open_session(product_id, frame_url, product_handle=handle)
    await service.ingest_image(session.session_id, photo, "image/png")
    return session


class TestSessions:

    def test_frame_from_data_url_sizes_canvas(self, service, frame_url):
        session = run(service.open_session("prod-1", frame_url))

        assert session.frame_load_failed is False
        assert (session.canvas.width, session.canvas.height) == (300, 400)
        assert session.product_handle == "prod-1"

    def test_landscape_frame_gets_minimum_height(self, service):
        session = run(service.open_session("prod-1", data_url(make_frame(size=(1200, 600), window=(100, 100, 1100, 500)))))
        assert (session.canvas.width, session.canvas.height) == (300, 300)

    @pytest.mark.parametrize("src", ["", "ftp://frames/mug.png", "/no/such/frame.png"])
    def test_unloadable_frame_falls_back_to_placeholder(self, service, src):
        session = run(service.open_session("prod-1", src))

        assert session.frame_load_failed is True
        assert session.frame.size == (300, 400)
        assert (session.canvas.width, session.canvas.height) == (300, 400)

    def test_frame_from_file(self, service, tmp_path):
        path = tmp_path / "frame.png"
        make_frame().save(path)

        session = run(service.open_session("prod-1", str(path)))
        assert session.frame_load_failed is False

    def test_pointer_without_image_requests_file(self, service, frame_url):
        session = run(service.open_session("prod-1", frame_url))
        session.controller.on_pointer_down(10, 10)

        assert session.file_requested is True
        assert session.state()["file_requested"] is True

    def test_closed_session_is_gone(self, service, frame_url):
        session = run(service.open_session("prod-1", frame_url))
        service.close_session(session.session_id)

        with pytest.raises(SessionNotFoundError):
            service.get_session(session.session_id)


class TestIngest:

    def test_image_is_placed_and_centered(self, service, frame_url, photo_png):
        session = run(_session_with_photo(service, frame_url, photo_png))
        state = session.state()

        assert state["has_image"] is True
        assert state["image_size"] == [120, 90]
        assert state["transform"] == {"x": 150, "y": 200, "scale": 1.0, "rotation": 0.0}
        assert set(state["handles"]) == {"nw", "ne", "se", "sw", "rotate"}

    def test_non_image_content_type_is_rejected(self, service, frame_url, photo_png):
        session = run(service.open_session("prod-1", frame_url))

        with pytest.raises(ValidationError):
            run(service.ingest_image(session.session_id, photo_png, "application/pdf"))

    def test_undecodable_bytes_are_rejected(self, service, frame_url):
        session = run(service.open_session("prod-1", frame_url))

        with pytest.raises(ValidationError, match="Failed to load image"):
            run(service.ingest_image(session.session_id, b"garbage", "image/png"))
        assert session.controller.has_image is False

    def test_input_ceiling(self, service, frame_url, photo_png, monkeypatch):
        monkeypatch.setattr(settings, "MAX_INPUT_BYTES", 10)
        session = run(service.open_session("prod-1", frame_url))

        with pytest.raises(PayloadTooLargeError):
            run(service.ingest_image(session.session_id, photo_png, "image/png"))

    def test_large_input_is_compressed_before_placement(self, service, frame_url, monkeypatch):
        monkeypatch.setattr(settings, "INGEST_COMPRESS_THRESHOLD_BYTES", 50_000)
        monkeypatch.setattr(settings, "INGEST_MAX_DIMENSION", 100)
        noise = image_bytes(make_noise((300, 300)))

        session = run(_session_with_photo(service, frame_url, noise))
        assert session.controller.image_size == (100, 100)

    def test_ingest_blocked_while_saving(self, service, frame_url, photo_png):
        session = run(service.open_session("prod-1", frame_url))
        session.saving = True

        with pytest.raises(SaveInProgressError):
            run(service.ingest_image(session.session_id, photo_png, "image/png"))

    def test_huge_pixel_count_is_rejected(self, service, frame_url, photo_png, monkeypatch):
        monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 1000)
        session = run(service.open_session("prod-1", frame_url))

        with pytest.raises(ValidationError, match="Failed to load image"):
            run(service.ingest_image(session.session_id, photo_png, "image/png"))
        assert session.controller.has_image is False

    def test_upload_decoding_when_save_starts_is_refused(self, make_orchestrator, frame_url, photo_png):
        # One worker, held by a gate, so the decode is still queued when the save begins.
        executor = ThreadPoolExecutor(max_workers=1)
        gate = threading.Event()
        store = FakeAssetStore()
        service = CustomizationService(make_orchestrator(store), MemoryRepository(), executor=executor)

        async def scenario():
            session = await _session_with_photo(service, frame_url, photo_png)
            executor.submit(gate.wait, 5)
            ingest = asyncio.create_task(
                service.ingest_image(session.session_id, image_bytes(make_photo((60, 60))), "image/png")
            )
            await asyncio.sleep(0)
            save = asyncio.create_task(service.save(session.session_id))
            await asyncio.sleep(0)
            gate.set()
            results = await asyncio.gather(ingest, save, return_exceptions=True)
            return session, results

        try:
            session, (ingested, saved) = run(scenario())
        finally:
            executor.shutdown(wait=True)

        assert isinstance(ingested, SaveInProgressError)
        assert saved.ok
        assert len(store.uploaded) == 3
        assert session.image.size == (120, 90)
        assert session.controller.image_size == (120, 90)


class TestPreview:

    def test_preview_is_png_at_pixel_ratio(self, service, frame_url, photo_png):
        session = run(_session_with_photo(service, frame_url, photo_png))

        preview = Image.open(io.BytesIO(run(service.render_preview(session.session_id, pixel_ratio=1.5))))
        assert preview.format == "PNG"
        assert preview.size == (450, 600)


class TestSave:

    def test_save_uploads_three_assets_and_persists(self, service, fake_store, frame_url, photo_png):
        session = run(_session_with_photo(service, frame_url, photo_png))
        session.controller.set_scale(1.4)
        session.controller.set_rotation(30)

        result = run(service.save(session.session_id))

        assert result.ok
        assert len(fake_store.uploaded) == 3
        for name in ("rendered", "cropped", "original"):
            filename = next(f for f in fake_store.calls if f"-{name}-" in f)
            assert re.fullmatch(rf"mug-{name}-\d+\.jpg", filename)
            assert fake_store.folders[filename] == settings.CLOUDINARY_FOLDER
            assert result.compression[name].blob[:2] == b"\xff\xd8"

        record = result.record
        assert record.transform == {"x": 150, "y": 200, "scale": 1.4, "rotation": 30}
        assert record.canvas_dimensions == {"width": 300, "height": 400}
        assert record.frame_image_url == frame_url
        assert record.rendered_image_url.startswith("https://res.example.com/")
        assert run(service.get_customization("prod-1")) is record
        assert session.saving is False

    def test_rendered_export_is_at_export_ratio(self, service, fake_store, frame_url, photo_png):
        session = run(_session_with_photo(service, frame_url, photo_png))
        result = run(service.save(session.session_id))

        rendered = Image.open(io.BytesIO(result.compression["rendered"].blob))
        assert rendered.size == (300 * settings.EXPORT_PIXEL_RATIO, 400 * settings.EXPORT_PIXEL_RATIO)

    def test_save_without_image(self, service, frame_url):
        session = run(service.open_session("prod-1", frame_url))

        with pytest.raises(ValidationError):
            run(service.save(session.session_id))

    def test_concurrent_save_is_refused(self, service, frame_url, photo_png):
        session = run(_session_with_photo(service, frame_url, photo_png))
        session.saving = True

        with pytest.raises(SaveInProgressError):
            run(service.save(session.session_id))

    def test_partial_upload_failure_persists_nothing(self, make_orchestrator, frame_url, photo_png):
        def script(filename, call_count):
            return TransientIOError("timeout") if "-cropped-" in filename else None

        store = FakeAssetStore(script)
        repository = MemoryRepository()
        service = CustomizationService(orchestrator=make_orchestrator(store), repository=repository)
        session = run(_session_with_photo(service, frame_url, photo_png))

        result = run(service.save(session.session_id))

        assert not result.ok
        assert result.record is None
        assert result.outcomes["rendered"].ok and result.outcomes["original"].ok
        assert not result.outcomes["cropped"].ok
        assert repository.records == {}
        assert session.saving is False

    def test_second_save_overwrites_record(self, service, frame_url, photo_png):
        session = run(_session_with_photo(service, frame_url, photo_png))
        run(service.save(session.session_id))
        session.controller.set_rotation(90)
        run(service.save(session.session_id))

        assert run(service.get_customization("prod-1")).transform["rotation"] == 90

    def test_save_persists_to_sqlite(self, make_orchestrator, frame_url, photo_png):
        async def scenario():
            repository, engine = await sqlite_repository()
            try:
                service = CustomizationService(orchestrator=make_orchestrator(FakeAssetStore()), repository=repository)
                session = await _session_with_photo(service, frame_url, photo_png, product_id="prod-db")
                await service.save(session.session_id)
                return await service.get_customization("prod-db")
            finally:
                await engine.dispose()

        record = run(scenario())
        assert record is not None
        assert record.to_dict()["canvasDimensions"] == {"width": 300, "height": 400}
        assert record.to_dict()["transform"]["scale"] == 1.0


class TestDirectUploads:

    def test_asset_upload_ceiling(self, service, fake_store, monkeypatch):
        monkeypatch.setattr(settings, "MAX_ASSET_UPLOAD_BYTES", 10)

        with pytest.raises(PayloadTooLargeError):
            run(service.upload_asset_file(b"x" * 11, "a.jpg"))
        assert fake_store.calls == []

    def test_small_original_is_stored_as_is(self, service, fake_store, photo_jpeg):
        asset, original_size, processed_size = run(service.upload_original_file(photo_jpeg, "photo.jpg"))

        assert original_size == processed_size == len(photo_jpeg)
        assert fake_store.folders["original-photo.jpg"] == settings.CLOUDINARY_ORIGINALS_FOLDER
        assert asset.asset_id.endswith("original-photo")

    def test_large_original_is_compressed_server_side(self, service, fake_store, monkeypatch):
        monkeypatch.setattr(settings, "SERVER_COMPRESS_THRESHOLD_BYTES", 1000)
        monkeypatch.setattr(settings, "SERVER_BUDGET_BYTES", 20_000)
        data = image_bytes(make_noise((300, 300)))

        asset, original_size, processed_size = run(service.upload_original_file(data, "noise.png"))

        assert original_size == len(data)
        assert processed_size < original_size
        stored = fake_store.uploaded[asset.asset_id]
        assert stored[:2] == b"\xff\xd8"

    def test_delete_asset(self, service, fake_store, photo_jpeg):
        asset = run(service.upload_asset_file(photo_jpeg, "a.jpg"))
        assert run(service.delete_asset(asset.asset_id)) is True
