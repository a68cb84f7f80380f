"""
Image preprocessing for the smear classifier.

Turns an uploaded image (raw bytes, bare base64, or a data URL) into the
fixed 128x128x3 float32 tensor the CNN was trained on, and re-encodes
images for the remote multimodal service.
"""

import base64
import binascii
import io
import re
from dataclasses import dataclass

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from smearscan.config.config import get_settings
from smearscan.config.logging_config import get_logger
from smearscan.services.errors import DecodeError

logger = get_logger(__name__)

DATA_URL_PATTERN = re.compile(r"^data:[^,]*?;base64,", re.IGNORECASE)

RESIZE_FILTERS = {
    "bilinear": Image.BILINEAR,
    "nearest": Image.NEAREST,
}

MIME_TYPES = {
    "JPEG": "image/jpeg",
    "PNG": "image/png",
    "GIF": "image/gif",
    "BMP": "image/bmp",
    "WEBP": "image/webp",
    "TIFF": "image/tiff",
}

# Modes Pillow converts to RGB without losing range
RGB_CONVERTIBLE_MODES = frozenset(
    {"1", "L", "LA", "La", "P", "PA", "RGB", "RGBA", "RGBa", "RGBX", "CMYK", "YCbCr"}
)

# High bit depth grayscale modes and the value mapped to full white
HIGH_DEPTH_FULL_SCALE = {
    "I;16": 65535.0,
    "I;16L": 65535.0,
    "I;16B": 65535.0,
    "I;16N": 65535.0,
    "I": 65535.0,
    "F": 1.0,
}

# Alias for readability at call sites; the array itself is a plain ndarray.
ImageTensor = np.ndarray


@dataclass(frozen=True)
class InlineImage:
    """An image ready to be embedded in a remote request."""
    mime_type: str
    data_base64: str

    @property
    def data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.data_base64}"


def strip_data_url(payload: str) -> str:
    """Remove a leading ``data:<mime>;base64,`` prefix if present."""
    return DATA_URL_PATTERN.sub("", payload.strip(), count=1)


def _to_bytes(raw: bytes | bytearray | str) -> bytes:
    """Normalize any accepted input form to the encoded image bytes."""
    if isinstance(raw, (bytes, bytearray)):
        data = bytes(raw)
    elif isinstance(raw, str):
        cleaned = "".join(strip_data_url(raw).split())
        try:
            data = base64.b64decode(cleaned, validate=True)
        except (binascii.Error, ValueError) as e:
            raise DecodeError(f"Invalid base64 image payload: {e}") from e
    else:
        raise DecodeError(f"Unsupported image payload type: {type(raw).__name__}")

    if not data:
        raise DecodeError("Empty image payload")
    return data


def decode_image(raw: bytes | bytearray | str) -> Image.Image:
    """
    Decode an image payload into a fully loaded Pillow image.

    Raises:
        DecodeError: If the payload is not a readable image.
    """
    data = _to_bytes(raw)
    try:
        image = Image.open(io.BytesIO(data))
        image.load()
    except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as e:
        raise DecodeError(f"Unable to decode image: {e}") from e
    return image


def to_rgb(image: Image.Image) -> Image.Image:
    """
    Convert a decoded image to 8-bit RGB.

    16-bit and 32-bit integer grayscale is rescaled from the 16-bit range and
    float grayscale from [0, 1]; Pillow's own conversion would clip them.

    Raises:
        DecodeError: If the image mode has no RGB rendering.
    """
    if image.mode in RGB_CONVERTIBLE_MODES:
        return image.convert("RGB")

    full_scale = HIGH_DEPTH_FULL_SCALE.get(image.mode)
    if full_scale is None:
        raise DecodeError(f"Unsupported bit depth: image mode {image.mode}")

    levels = np.asarray(image, dtype=np.float64) / full_scale
    levels = np.clip(np.nan_to_num(levels), 0.0, 1.0)
    gray = Image.fromarray(np.round(levels * 255.0).astype(np.uint8))
    return gray.convert("RGB")


def preprocess(
    raw: bytes | bytearray | str,
    size: int | None = None,
    resize_filter: str | None = None,
) -> ImageTensor:
    """
    Decode, resize and normalize an image for the classifier.

    Args:
        raw: Raw bytes, bare base64 or a data URL.
        size: Square output size. Defaults to the configured image size.
        resize_filter: "bilinear" or "nearest". Defaults to the configured filter.

    Returns:
        float32 array of shape (size, size, 3) with values in [0.0, 1.0].

    Raises:
        DecodeError: If the payload is not a readable image.
    """
    settings = get_settings()
    size = size or settings.image_size
    resample = RESIZE_FILTERS[resize_filter or settings.resize_filter]

    image = decode_image(raw)
    source_size = image.size
    image = to_rgb(ImageOps.exif_transpose(image))
    image = image.resize((size, size), resample=resample)

    # np.array copies, so the tensor never aliases the decoder's buffer
    tensor = np.array(image, dtype=np.float32) / 255.0

    logger.debug(
        "Image preprocessed",
        source_size=source_size,
        tensor_shape=tensor.shape,
    )
    return tensor


def to_inline_image(raw: bytes | bytearray | str) -> InlineImage:
    """
    Validate an image and re-encode it as clean base64 for a remote request.

    The original bytes are forwarded untouched so the remote model sees the
    full-resolution smear, not the 128x128 classifier input.
    """
    data = _to_bytes(raw)
    image = decode_image(data)
    mime_type = MIME_TYPES.get(image.format or "", "image/jpeg")
    return InlineImage(
        mime_type=mime_type,
        data_base64=base64.b64encode(data).decode("ascii"),
    )
