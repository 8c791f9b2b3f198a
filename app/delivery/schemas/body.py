from pydantic import BaseModel, Field
from typing import Dict, List, Literal, Optional

class TransformData(BaseModel):
    x: float
    y: float
    scale: float
    rotation: float

class CanvasData(BaseModel):
    width: float
    height: float

class SessionCreate(BaseModel):
    product_id: str
    product_handle: Optional[str] = None
    frame_image_url: str = ""              # URL, path or data URL; empty uses the placeholder

class PointerEvent(BaseModel):
    event: Literal["down", "move", "up", "leave", "cancel"]
    x: float = 0.0
    y: float = 0.0

class TransformPatch(BaseModel):
    scale: Optional[float] = Field(default=None, gt=0)
    rotation: Optional[float] = None

class SessionState(BaseModel):
    session_id: str
    product_id: str
    canvas: CanvasData
    transform: TransformData
    mode: str
    has_image: bool
    image_size: Optional[List[int]] = None
    frame_load_failed: bool
    file_requested: bool
    saving: bool
    handles: Optional[Dict[str, List[float]]] = None
    cursor: Optional[str] = None

class CustomizationOut(BaseModel):
    originalImageUrl: str
    renderedImageUrl: str
    croppedImageUrl: str
    frameImageUrl: Optional[str] = None
    transform: TransformData
    canvasDimensions: CanvasData
    createdAt: str

class AssetOutcome(BaseModel):
    name: str
    ok: bool
    url: Optional[str] = None
    asset_id: Optional[str] = None
    error: Optional[str] = None

class SaveResponse(BaseModel):
    saved: bool
    assets: List[AssetOutcome]
    customization: Optional[CustomizationOut] = None

class DeleteImageRequest(BaseModel):
    publicId: str
