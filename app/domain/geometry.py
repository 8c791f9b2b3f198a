# app/domain/geometry.py
"""
Pure 2D math for placing a photo inside a frame canvas.

Screen coordinates are y-down and rotation is in degrees, clockwise on
screen for positive values. Nothing here touches pixels.
"""
import math
from dataclasses import dataclass
from typing import Dict, NamedTuple, Optional, Tuple

MIN_SCALE = 0.1

HANDLE_DRAW_SIZE = 10
HANDLE_HIT_SIZE = 12          # +-6px box around each corner
ROTATE_HANDLE_OFFSET = 24     # screen-space, straight up from the rotated top-center
ROTATE_HANDLE_RADIUS = 8

CORNER_HANDLES = ("nw", "ne", "se", "sw")
ROTATE_HANDLE = "rotate"

# Unit offsets of each corner relative to the box center, in box space.
_CORNER_SIGNS = {
    "nw": (-1, -1),
    "ne": (1, -1),
    "se": (1, 1),
    "sw": (-1, 1),
}


class Point(NamedTuple):
    x: float
    y: float


@dataclass(frozen=True)
class CanvasDimensions:
    width: float
    height: float

    @property
    def aspect(self) -> float:
        return self.width / self.height

    @property
    def center(self) -> Point:
        return Point(self.width / 2, self.height / 2)


@dataclass
class Transform:
    x: float
    y: float
    scale: float = 1.0
    rotation: float = 0.0  # degrees, never normalized

    @classmethod
    def centered(cls, canvas: CanvasDimensions) -> "Transform":
        return cls(x=canvas.width / 2, y=canvas.height / 2, scale=1.0, rotation=0.0)

    @property
    def center(self) -> Point:
        return Point(self.x, self.y)

    def as_dict(self) -> Dict[str, float]:
        return {"x": self.x, "y": self.y, "scale": self.scale, "rotation": self.rotation}


@dataclass(frozen=True)
class HandleSet:
    corners: Dict[str, Point]
    top_center: Point
    rotate: Point


@dataclass(frozen=True)
class ResizeGrab:
    handle: str
    direction: Point
    initial_along: float
    reference: float
    start_scale: float


@dataclass(frozen=True)
class RotateGrab:
    start_angle: float  # radians
    start_rotation: float  # degrees


def canvas_dimensions_for_frame(
    frame_width: float,
    frame_height: float,
    max_width: float = 300,
    max_height: float = 400,
    min_width: float = 250,
    min_height: float = 300,
) -> CanvasDimensions:
    """Fit the frame's aspect ratio into max bounds, then clamp to the minimums."""
    aspect = frame_width / frame_height
    if aspect > 1:
        width = min(max_width, frame_width)
        height = width / aspect
    else:
        height = min(max_height, frame_height)
        width = height * aspect
    return CanvasDimensions(width=max(min_width, width), height=max(min_height, height))


def cover_fit_size(image_width: float, image_height: float, canvas: CanvasDimensions) -> Tuple[float, float]:
    """Size at scale 1 that fully covers the canvas, cropping overflow."""
    image_aspect = image_width / image_height
    if image_aspect > canvas.aspect:
        height = canvas.height
        width = height * image_aspect
    else:
        width = canvas.width
        height = width / image_aspect
    return width, height


def current_draw_size(image_size: Tuple[float, float], canvas: CanvasDimensions, scale: float) -> Tuple[float, float]:
    base_w, base_h = cover_fit_size(image_size[0], image_size[1], canvas)
    return base_w * scale, base_h * scale


def rotate_offset(ox: float, oy: float, rotation: float) -> Point:
    angle = math.radians(rotation)
    cos, sin = math.cos(angle), math.sin(angle)
    return Point(ox * cos - oy * sin, ox * sin + oy * cos)


def handle_positions(center: Point, width: float, height: float, rotation: float) -> HandleSet:
    half_w, half_h = width / 2, height / 2
    corners = {}
    for name, (sx, sy) in _CORNER_SIGNS.items():
        dx, dy = rotate_offset(sx * half_w, sy * half_h, rotation)
        corners[name] = Point(center.x + dx, center.y + dy)

    tx, ty = rotate_offset(0, -half_h, rotation)
    top_center = Point(center.x + tx, center.y + ty)
    # The offset is applied after rotation and is not itself rotated.
    rotate = Point(top_center.x, top_center.y - ROTATE_HANDLE_OFFSET)
    return HandleSet(corners=corners, top_center=top_center, rotate=rotate)


def hit_test(point: Point, handles: HandleSet) -> Optional[str]:
    """Return the handle under ``point``; corners win over the rotate handle."""
    half = HANDLE_HIT_SIZE / 2
    for name in CORNER_HANDLES:
        h = handles.corners[name]
        if abs(point.x - h.x) <= half and abs(point.y - h.y) <= half:
            return name
    dx = point.x - handles.rotate.x
    dy = point.y - handles.rotate.y
    if dx * dx + dy * dy <= ROTATE_HANDLE_RADIUS * ROTATE_HANDLE_RADIUS:
        return ROTATE_HANDLE
    return None


def begin_resize(handle: str, transform: Transform, draw_size: Tuple[float, float], pointer: Point) -> ResizeGrab:
    width, height = draw_size
    sx, sy = _CORNER_SIGNS[handle]
    dx, dy = rotate_offset(sx * width / 2, sy * height / 2, transform.rotation)
    length = math.hypot(dx, dy) or 1.0
    direction = Point(dx / length, dy / length)
    initial_along = (pointer.x - transform.x) * direction.x + (pointer.y - transform.y) * direction.y
    return ResizeGrab(
        handle=handle,
        direction=direction,
        initial_along=initial_along,
        reference=max(width, height),
        start_scale=transform.scale,
    )


def resize_scale(grab: ResizeGrab, center: Point, pointer: Point) -> float:
    along = (pointer.x - center.x) * grab.direction.x + (pointer.y - center.y) * grab.direction.y
    return max(MIN_SCALE, grab.start_scale * (1 + (along - grab.initial_along) / grab.reference))


def pointer_angle(center: Point, pointer: Point) -> float:
    return math.atan2(pointer.y - center.y, pointer.x - center.x)


def begin_rotate(transform: Transform, pointer: Point) -> RotateGrab:
    return RotateGrab(start_angle=pointer_angle(transform.center, pointer), start_rotation=transform.rotation)


def rotation_for(grab: RotateGrab, center: Point, pointer: Point) -> float:
    delta = pointer_angle(center, pointer) - grab.start_angle
    return grab.start_rotation + math.degrees(delta)
