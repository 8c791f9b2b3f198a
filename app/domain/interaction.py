# app/domain/interaction.py
"""
Pointer state machine that turns single-pointer input into Transform mutations.

States: idle, dragging, resizing (handle + projection), rotating (start angle).
Only one pointer is tracked; a second pointer-down while active simply
restarts the interaction from that point.
"""
from enum import Enum
from typing import Callable, Optional, Tuple

from app.domain import geometry
from app.domain.geometry import CanvasDimensions, HandleSet, Point, ResizeGrab, RotateGrab, Transform


class InteractionMode(str, Enum):
    IDLE = "idle"
    DRAGGING = "dragging"
    RESIZING = "resizing"
    ROTATING = "rotating"


_CURSORS = {
    "nw": "nwse-resize",
    "se": "nwse-resize",
    "ne": "nesw-resize",
    "sw": "nesw-resize",
    geometry.ROTATE_HANDLE: "grab",
}


class InteractionController:
    def __init__(self, canvas: CanvasDimensions, on_file_request: Optional[Callable[[], None]] = None):
        self.canvas = canvas
        self.transform = Transform.centered(canvas)
        self.image_size: Optional[Tuple[int, int]] = None
        self.mode = InteractionMode.IDLE
        self.on_file_request = on_file_request

        self._drag_offset = Point(0.0, 0.0)
        self._resize: Optional[ResizeGrab] = None
        self._rotate: Optional[RotateGrab] = None

    @property
    def has_image(self) -> bool:
        return self.image_size is not None

    @property
    def active_handle(self) -> Optional[str]:
        if self.mode is InteractionMode.RESIZING and self._resize:
            return self._resize.handle
        if self.mode is InteractionMode.ROTATING:
            return geometry.ROTATE_HANDLE
        return None

    def set_image(self, width: int, height: int) -> None:
        """Replace the image wholesale; placement starts over."""
        self.image_size = (width, height)
        self._to_idle()
        self.reset()

    def reset(self) -> Transform:
        self.transform = Transform.centered(self.canvas)
        return self.transform

    def set_scale(self, scale: float) -> None:
        self.transform.scale = max(geometry.MIN_SCALE, scale)

    def set_rotation(self, rotation: float) -> None:
        self.transform.rotation = rotation

    def draw_size(self) -> Tuple[float, float]:
        if not self.image_size:
            return 0.0, 0.0
        return geometry.current_draw_size(self.image_size, self.canvas, self.transform.scale)

    def handles(self) -> Optional[HandleSet]:
        """Handle positions for the current frame; derived, never stored."""
        if not self.image_size:
            return None
        width, height = self.draw_size()
        return geometry.handle_positions(self.transform.center, width, height, self.transform.rotation)

    def handle_at(self, x: float, y: float) -> Optional[str]:
        handles = self.handles()
        if handles is None:
            return None
        return geometry.hit_test(Point(x, y), handles)

    def cursor_at(self, x: float, y: float) -> str:
        if not self.image_size:
            return "pointer"
        return _CURSORS.get(self.handle_at(x, y), "move")

    def on_pointer_down(self, x: float, y: float) -> InteractionMode:
        if not self.image_size:
            if self.on_file_request is not None:
                self.on_file_request()
            return self.mode

        pointer = Point(x, y)
        handle = self.handle_at(x, y)
        if handle == geometry.ROTATE_HANDLE:
            self._rotate = geometry.begin_rotate(self.transform, pointer)
            self.mode = InteractionMode.ROTATING
        elif handle is not None:
            self._resize = geometry.begin_resize(handle, self.transform, self.draw_size(), pointer)
            self.mode = InteractionMode.RESIZING
        else:
            self._drag_offset = Point(x - self.transform.x, y - self.transform.y)
            self.mode = InteractionMode.DRAGGING
        return self.mode

    def on_pointer_move(self, x: float, y: float) -> bool:
        """Apply a move; returns True when the transform changed."""
        if not self.image_size or self.mode is InteractionMode.IDLE:
            return False

        pointer = Point(x, y)
        if self.mode is InteractionMode.ROTATING:
            self.transform.rotation = geometry.rotation_for(self._rotate, self.transform.center, pointer)
        elif self.mode is InteractionMode.RESIZING:
            self.transform.scale = geometry.resize_scale(self._resize, self.transform.center, pointer)
        else:
            self.transform.x = x - self._drag_offset.x
            self.transform.y = y - self._drag_offset.y
        return True

    def on_pointer_up(self, x: Optional[float] = None, y: Optional[float] = None) -> None:
        self._to_idle()

    on_pointer_leave = on_pointer_up
    on_pointer_cancel = on_pointer_up

    def _to_idle(self) -> None:
        self.mode = InteractionMode.IDLE
        self._resize = None
        self._rotate = None
