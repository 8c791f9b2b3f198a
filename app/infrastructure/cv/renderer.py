# app/infrastructure/cv/renderer.py
from typing import Optional, Tuple

from PIL import Image, ImageDraw, ImageFont

from app.domain import geometry
from app.domain.geometry import CanvasDimensions, HandleSet, Transform

BACKGROUND = (255, 255, 255, 255)
HANDLE_COLOR = "#2563eb"
ROTATE_KNOB_COLOR = "#f59e0b"
PLACEHOLDER_STROKE = "#cbd5e1"
PLACEHOLDER_TEXT = "#64748b"
PLACEHOLDER_HINT = "Click to upload your image"


def _scaled(canvas: CanvasDimensions, pixel_ratio: float) -> Tuple[int, int]:
    return max(1, round(canvas.width * pixel_ratio)), max(1, round(canvas.height * pixel_ratio))


def _draw_dashed_rectangle(draw: ImageDraw.ImageDraw, box, fill, width: int = 1, dash: int = 5, gap: int = 5):
    x1, y1, x2, y2 = box
    step = dash + gap
    x = x1
    while x < x2:
        end = min(x + dash, x2)
        draw.line([(x, y1), (end, y1)], fill=fill, width=width)
        draw.line([(x, y2), (end, y2)], fill=fill, width=width)
        x += step
    y = y1
    while y < y2:
        end = min(y + dash, y2)
        draw.line([(x1, y), (x1, end)], fill=fill, width=width)
        draw.line([(x2, y), (x2, end)], fill=fill, width=width)
        y += step


def _draw_centered_text(draw: ImageDraw.ImageDraw, center: Tuple[float, float], text: str, fill, size: int = 14):
    try:
        font = ImageFont.load_default(size=size)
    except TypeError:
        # Pillow < 10.1 has no sized default font
        font = ImageFont.load_default()
    left, top, right, bottom = draw.textbbox((0, 0), text, font=font)
    draw.text((center[0] - (right - left) / 2, center[1] - (bottom - top) / 2), text, fill=fill, font=font)


def placeholder_frame(width: int = 300, height: int = 400) -> Image.Image:
    """Stand-in frame template used when the real one cannot be loaded."""
    frame = Image.new("RGBA", (width, height), (248, 250, 252, 230))
    draw = ImageDraw.Draw(frame)
    draw.rectangle((0, 0, width - 1, height - 1), outline="#e2e8f0", width=2)
    # Transparent window where the photo shows through.
    inner = (round(width * 40 / 300), round(height * 80 / 400), round(width * 260 / 300), round(height * 320 / 400))
    draw.rectangle(inner, fill=(0, 0, 0, 0))
    _draw_dashed_rectangle(draw, inner, fill=PLACEHOLDER_STROKE)
    _draw_centered_text(draw, (width / 2, height / 2), "Your Image Here", fill=PLACEHOLDER_TEXT)
    return frame


def _transformed_layer(
    image: Image.Image,
    transform: Transform,
    canvas: CanvasDimensions,
    pixel_ratio: float,
) -> Image.Image:
    """Full-surface transparent layer holding the image placed per ``transform``."""
    size = _scaled(canvas, pixel_ratio)
    layer = Image.new("RGBA", size, (0, 0, 0, 0))

    draw_w, draw_h = geometry.current_draw_size(image.size, canvas, transform.scale)
    target = (max(1, round(draw_w * pixel_ratio)), max(1, round(draw_h * pixel_ratio)))
    placed = image.convert("RGBA").resize(target, Image.Resampling.LANCZOS)
    if transform.rotation % 360:
        # PIL rotates counter-clockwise; the canvas rotates clockwise on a y-down screen.
        placed = placed.rotate(-transform.rotation, resample=Image.Resampling.BICUBIC, expand=True)

    left = round(transform.x * pixel_ratio - placed.width / 2)
    top = round(transform.y * pixel_ratio - placed.height / 2)
    layer.paste(placed, (left, top))
    return layer


def draw_handles(surface: Image.Image, handles: HandleSet, pixel_ratio: float = 1.0) -> None:
    draw = ImageDraw.Draw(surface)
    half = geometry.HANDLE_DRAW_SIZE / 2 * pixel_ratio
    for point in handles.corners.values():
        cx, cy = point.x * pixel_ratio, point.y * pixel_ratio
        draw.rectangle((cx - half, cy - half, cx + half, cy + half), fill=HANDLE_COLOR)

    top = (handles.top_center.x * pixel_ratio, handles.top_center.y * pixel_ratio)
    knob = (handles.rotate.x * pixel_ratio, handles.rotate.y * pixel_ratio)
    draw.line([top, knob], fill=HANDLE_COLOR, width=max(1, round(2 * pixel_ratio)))
    r = geometry.ROTATE_HANDLE_RADIUS * pixel_ratio
    draw.ellipse((knob[0] - r, knob[1] - r, knob[0] + r, knob[1] + r), fill=ROTATE_KNOB_COLOR)


def _draw_empty_state(surface: Image.Image, canvas: CanvasDimensions, pixel_ratio: float) -> None:
    draw = ImageDraw.Draw(surface)
    margin = 20 * pixel_ratio
    box = (margin, margin, surface.width - margin, surface.height - margin)
    _draw_dashed_rectangle(draw, box, fill=PLACEHOLDER_STROKE, width=max(1, round(2 * pixel_ratio)))
    _draw_centered_text(
        draw,
        (surface.width / 2, surface.height / 2),
        PLACEHOLDER_HINT,
        fill=PLACEHOLDER_TEXT,
        size=round(14 * pixel_ratio),
    )


def render_composite(
    image: Optional[Image.Image],
    frame: Optional[Image.Image],
    transform: Transform,
    canvas: CanvasDimensions,
    pixel_ratio: float = 1.0,
    handles: Optional[HandleSet] = None,
) -> Image.Image:
    """Background, placed photo, frame stretched to the canvas, then optional handles."""
    surface = Image.new("RGBA", _scaled(canvas, pixel_ratio), BACKGROUND)

    if image is not None:
        surface.alpha_composite(_transformed_layer(image, transform, canvas, pixel_ratio))
    else:
        _draw_empty_state(surface, canvas, pixel_ratio)

    if frame is not None:
        stretched = frame.convert("RGBA").resize(surface.size, Image.Resampling.LANCZOS)
        surface.alpha_composite(stretched)

    # Handles last so they stay above the frame.
    if image is not None and handles is not None:
        draw_handles(surface, handles, pixel_ratio)
    return surface


def render_content(
    image: Image.Image,
    transform: Transform,
    canvas: CanvasDimensions,
    pixel_ratio: float = 1.0,
) -> Image.Image:
    """Same placement as the composite, without frame or handles, on a transparent surface."""
    return _transformed_layer(image, transform, canvas, pixel_ratio)


def limit_dimensions(image: Image.Image, max_dimension: int) -> Image.Image:
    """Downscale so the long side is at most ``max_dimension``, keeping aspect ratio."""
    width, height = image.size
    if width <= max_dimension and height <= max_dimension:
        return image
    aspect = width / height
    if width > height:
        new_w, new_h = max_dimension, max(1, round(max_dimension / aspect))
    else:
        new_w, new_h = max(1, round(max_dimension * aspect)), max_dimension
    return image.resize((new_w, new_h), Image.Resampling.LANCZOS)


def flatten(image: Image.Image, background=(255, 255, 255)) -> Image.Image:
    """Drop alpha over a solid background; JPEG can't carry transparency."""
    if image.mode == "RGB":
        return image
    rgba = image.convert("RGBA")
    base = Image.new("RGB", rgba.size, background)
    base.paste(rgba, mask=rgba.getchannel("A"))
    return base
