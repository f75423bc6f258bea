"""
Image helpers
Data URL encoding/decoding and the "generation failed" placeholder
"""
import base64
import binascii
from io import BytesIO
from typing import Tuple

from PIL import Image, ImageDraw, ImageFont, UnidentifiedImageError

PLACEHOLDER_SIZE = (512, 512)
PLACEHOLDER_BG = '#4A5568'
PLACEHOLDER_TITLE_COLOR = '#FBBF24'
PLACEHOLDER_TEXT_COLOR = '#E2E8F0'


class ImageDataError(ValueError):
    """Raised for malformed or undecodable image payloads"""
    pass


def to_data_url(data: bytes, mime_type: str = 'image/png') -> str:
    return f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"


def split_data_url(value: str) -> Tuple[bytes, str]:
    """
    Decode a data URL (or bare base64) into (bytes, mime_type).

    Bare base64 gets its mime type sniffed with Pillow.
    """
    if not value:
        raise ImageDataError('Empty image data')

    mime_type = None
    payload = value
    if value.startswith('data:'):
        header, _, payload = value.partition(',')
        mime_type = header[5:].split(';')[0] or None

    try:
        data = base64.b64decode(payload, validate=False)
    except (binascii.Error, ValueError) as e:
        raise ImageDataError(f'Invalid base64 image data: {e}')

    return data, mime_type or sniff_mime_type(data)


def sniff_mime_type(data: bytes) -> str:
    try:
        with Image.open(BytesIO(data)) as img:
            fmt = (img.format or 'PNG').lower()
    except (UnidentifiedImageError, OSError):
        return 'image/png'
    return 'image/jpeg' if fmt == 'jpeg' else f'image/{fmt}'


def _load_font(size: int):
    for name in ('DejaVuSans-Bold.ttf', '/usr/share/fonts/truetype/dejavu/DejaVuSans-Bold.ttf'):
        try:
            return ImageFont.truetype(name, size)
        except OSError:
            continue
    return ImageFont.load_default()


def render_placeholder(text: str) -> bytes:
    """Render the grey "GENERATION FAILED" card as PNG bytes."""
    img = Image.new('RGB', PLACEHOLDER_SIZE, PLACEHOLDER_BG)
    draw = ImageDraw.Draw(img)
    width, height = PLACEHOLDER_SIZE

    title_font = _load_font(32)
    text_font = _load_font(24)

    for line, font, color, center_y in (
        ('GENERATION FAILED', title_font, PLACEHOLDER_TITLE_COLOR, height * 0.45),
        (text, text_font, PLACEHOLDER_TEXT_COLOR, height * 0.60),
    ):
        left, top, right, bottom = draw.textbbox((0, 0), line, font=font)
        position = ((width - (right - left)) / 2, center_y - (bottom - top) / 2)
        draw.text(position, line, fill=color, font=font)

    out = BytesIO()
    img.save(out, format='PNG')
    return out.getvalue()


def placeholder_data_url(text: str) -> str:
    return to_data_url(render_placeholder(text), 'image/png')
