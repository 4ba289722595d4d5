"""
Perceptual image fingerprinting.

Turns raw image bytes into a fixed-length Fingerprint. The certification core
treats this as an opaque function; only the HTTP layer calls it.
"""

import io
import numpy as np
import structlog
from PIL import Image, UnidentifiedImageError
import cv2

from artcert import config
from artcert.core.errors import MalformedInputError
from artcert.models.fingerprint import Fingerprint

logger = structlog.get_logger()

SUPPORTED_ALGORITHMS = ("phash", "dhash")


def _load_grayscale(image_bytes: bytes) -> Image.Image:
    if not image_bytes:
        raise MalformedInputError("Empty image upload")
    try:
        image = Image.open(io.BytesIO(image_bytes))
        # Reject oversized images from the header, before any pixel is decoded
        max_pixels = Image.MAX_IMAGE_PIXELS
        if max_pixels and image.width * image.height > max_pixels:
            raise Image.DecompressionBombError(
                f"Image size ({image.width * image.height} pixels) exceeds limit of {max_pixels} pixels"
            )
        image.load()
    except Image.DecompressionBombError as e:
        logger.warning("Oversized image upload", size=len(image_bytes), error=str(e))
        raise MalformedInputError(f"Image too large: {e}") from e
    except (UnidentifiedImageError, OSError) as e:
        logger.warning("Unreadable image upload", size=len(image_bytes), error=str(e))
        raise MalformedInputError(f"Unreadable image: {e}") from e
    return image.convert('L')


def _bits_to_fingerprint(bits: np.ndarray) -> Fingerprint:
    value = 0
    for bit in bits.flatten():
        value = (value << 1) | int(bool(bit))
    return Fingerprint(value, bits.size)


def dhash(image: Image.Image, hash_size: int = 8) -> Fingerprint:
    """
    Difference hash: sign of the horizontal gradient.
    Good for detecting duplicates with minor modifications.
    """
    resized = image.resize((hash_size + 1, hash_size), Image.Resampling.LANCZOS)
    pixels = np.array(resized)
    return _bits_to_fingerprint(pixels[:, 1:] > pixels[:, :-1])


def phash(image: Image.Image, hash_size: int = 8) -> Fingerprint:
    """
    Perceptual hash: low-frequency DCT coefficients against their median.
    Robust to rescaling, recompression and small edits.
    """
    resized = image.resize((hash_size * 4, hash_size * 4), Image.Resampling.LANCZOS)
    pixels = np.array(resized, dtype=np.float32)

    dct = cv2.dct(pixels)
    dct_low = dct[:hash_size, :hash_size]
    median = np.median(dct_low)
    return _bits_to_fingerprint(dct_low > median)


def compute_fingerprint(image_bytes: bytes, algorithm: str = None, hash_size: int = None) -> Fingerprint:
    """
    Fingerprint an uploaded image.

    Args:
        image_bytes: Raw image file content
        algorithm: "phash" or "dhash" (defaults to configuration)
        hash_size: Side length of the hash grid; the fingerprint has hash_size**2 bits

    Returns:
        Fingerprint of hash_size * hash_size bits
    """
    algorithm = algorithm or config.FINGERPRINT_ALGORITHM
    hash_size = hash_size or config.FINGERPRINT_HASH_SIZE
    if algorithm not in SUPPORTED_ALGORITHMS:
        raise ValueError(f"Unsupported fingerprint algorithm: {algorithm}")

    image = _load_grayscale(image_bytes)
    fingerprint = phash(image, hash_size) if algorithm == "phash" else dhash(image, hash_size)

    logger.debug("Computed image fingerprint",
                 algorithm=algorithm, hash_size=hash_size, fingerprint=fingerprint.to_hex())
    return fingerprint
