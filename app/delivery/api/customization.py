# app/delivery/api/customization.py
from fastapi import APIRouter, File, Form, HTTPException, Request, Response, UploadFile, status
from fastapi.responses import JSONResponse
from app.delivery.schemas.body import (
    DeleteImageRequest,
    PointerEvent,
    SaveResponse,
    SessionCreate,
    SessionState,
    TransformPatch,
)
from app.domain.customization_service import CustomizationService
from app.domain.errors import FrameCustomizationError
import logging
import traceback

router = APIRouter()
logger = logging.getLogger("uvicorn.error")


def get_service(request: Request) -> CustomizationService:
    service = getattr(request.app.state, "customization_service", None)
    if service is None:
        logger.error("Customization service not initialized")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service is not ready. Please try again in a moment.",
        )
    return service


def _internal_error(what: str, e: Exception) -> HTTPException:
    logger.error(f"=== {what} ERROR: {e} ===\n{traceback.format_exc()}")
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"{what} failed",
    )


# --- Sessions ---

@router.post("/sessions", response_model=SessionState, status_code=201)
async def open_session(request: Request, body: SessionCreate):
    service = get_service(request)
    session = await service.open_session(body.product_id, body.frame_image_url, body.product_handle)
    return session.state()


@router.get("/sessions/{session_id}", response_model=SessionState)
async def get_session(request: Request, session_id: str):
    return get_service(request).get_session(session_id).state()


@router.delete("/sessions/{session_id}", status_code=204)
async def close_session(request: Request, session_id: str):
    get_service(request).close_session(session_id)
    return Response(status_code=204)


@router.post("/sessions/{session_id}/image", response_model=SessionState)
async def upload_session_image(request: Request, session_id: str, file: UploadFile = File(...)):
    service = get_service(request)
    data = await file.read()
    logger.info(f"Session {session_id}: file selected name={file.filename} size={len(data)} type={file.content_type}")
    session = await service.ingest_image(session_id, data, file.content_type)
    return session.state()


@router.post("/sessions/{session_id}/pointer", response_model=SessionState)
async def pointer_event(request: Request, session_id: str, body: PointerEvent):
    session = get_service(request).get_session(session_id)
    controller = session.controller
    if body.event == "down":
        controller.on_pointer_down(body.x, body.y)
    elif body.event == "move":
        controller.on_pointer_move(body.x, body.y)
    elif body.event == "up":
        controller.on_pointer_up(body.x, body.y)
    elif body.event == "leave":
        controller.on_pointer_leave(body.x, body.y)
    else:
        controller.on_pointer_cancel(body.x, body.y)
    return {**session.state(), "cursor": controller.cursor_at(body.x, body.y)}


@router.patch("/sessions/{session_id}/transform", response_model=SessionState)
async def patch_transform(request: Request, session_id: str, body: TransformPatch):
    session = get_service(request).get_session(session_id)
    if body.scale is not None:
        session.controller.set_scale(body.scale)
    if body.rotation is not None:
        session.controller.set_rotation(body.rotation)
    return session.state()


@router.post("/sessions/{session_id}/reset", response_model=SessionState)
async def reset_transform(request: Request, session_id: str):
    session = get_service(request).get_session(session_id)
    session.controller.reset()
    return session.state()


@router.get("/sessions/{session_id}/preview")
async def preview(request: Request, session_id: str):
    png = await get_service(request).render_preview(session_id)
    return Response(content=png, media_type="image/png")


@router.post("/sessions/{session_id}/save", response_model=SaveResponse)
async def save_customization(request: Request, session_id: str):
    service = get_service(request)
    logger.info(f"=== SAVE START for session {session_id} ===")
    try:
        result = await service.save(session_id)
    except FrameCustomizationError:
        raise
    except Exception as e:
        raise _internal_error("Save", e)

    body = {
        "saved": result.ok,
        "assets": [outcome.to_dict() for outcome in result.outcomes.values()],
        "customization": result.record.to_dict() if result.record else None,
    }
    # Per-asset outcomes are reported either way; a partial failure is a gateway error.
    return JSONResponse(status_code=200 if result.ok else 502, content=body)


# --- Records ---

@router.get("/customizations/{product_id}")
async def get_customization(request: Request, product_id: str):
    record = await get_service(request).get_customization(product_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Customization not found")
    return record.to_dict()


# --- Direct asset uploads ---

@router.post("/upload-image")
async def upload_image(request: Request, file: UploadFile = File(...), filename: str = Form(None)):
    service = get_service(request)
    data = await file.read()
    name = filename or file.filename or "upload.jpg"
    logger.info(f"Upload request received: name={name} size={len(data)} type={file.content_type}")
    try:
        asset = await service.upload_asset_file(data, name)
    except FrameCustomizationError:
        raise
    except Exception as e:
        raise _internal_error("Upload", e)
    return {"secure_url": asset.url, "public_id": asset.asset_id}


@router.post("/upload-original-image")
async def upload_original_image(request: Request, file: UploadFile = File(...), filename: str = Form(None)):
    service = get_service(request)
    data = await file.read()
    name = filename or file.filename or "original.jpg"
    logger.info(f"Original image upload request received: name={name} size={len(data)}")
    try:
        asset, original_size, processed_size = await service.upload_original_file(data, name)
    except FrameCustomizationError:
        raise
    except Exception as e:
        raise _internal_error("Original image upload", e)
    return {
        "secure_url": asset.url,
        "public_id": asset.asset_id,
        "original_size": original_size,
        "processed_size": processed_size,
        "was_compressed": processed_size != original_size,
    }


@router.delete("/delete-image")
async def delete_image(request: Request, body: DeleteImageRequest):
    deleted = await get_service(request).delete_asset(body.publicId)
    return {"deleted": deleted}
