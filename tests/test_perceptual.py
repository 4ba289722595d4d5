import io

import numpy as np
import pytest
from PIL import Image

from artcert.core.errors import MalformedInputError
from artcert.core.similarity import hamming_distance
from artcert.services.perceptual import compute_fingerprint


def synthetic_artwork(size=256):
    y, x = np.mgrid[0:size, 0:size].astype(np.float32)
    pattern = 128 + 60 * np.sin(x / 23.0) + 50 * np.cos(y / 17.0) + 0.2 * (x - y)
    pixels = np.clip(pattern, 0, 255).astype(np.uint8)
    return Image.fromarray(np.stack([pixels, pixels[::-1], pixels.T], axis=-1), "RGB")


def to_bytes(image, fmt="PNG"):
    buffer = io.BytesIO()
    image.save(buffer, format=fmt)
    return buffer.getvalue()


def test_phash_is_64_bits_and_deterministic():
    data = to_bytes(synthetic_artwork())

    first = compute_fingerprint(data, algorithm="phash", hash_size=8)
    second = compute_fingerprint(data, algorithm="phash", hash_size=8)

    assert first.bits == 64
    assert first == second


def test_phash_tolerates_rescaling_and_recompression():
    artwork = synthetic_artwork()
    original = compute_fingerprint(to_bytes(artwork), algorithm="phash", hash_size=8)
    rescaled = compute_fingerprint(to_bytes(artwork.resize((128, 128)), fmt="JPEG"),
                                   algorithm="phash", hash_size=8)
    inverted = compute_fingerprint(to_bytes(Image.eval(artwork, lambda v: 255 - v)),
                                   algorithm="phash", hash_size=8)

    assert hamming_distance(original, rescaled) <= 10
    assert hamming_distance(original, rescaled) < hamming_distance(original, inverted)


def test_dhash_length_follows_hash_size():
    fp = compute_fingerprint(to_bytes(synthetic_artwork()), algorithm="dhash", hash_size=16)
    assert fp.bits == 256


@pytest.mark.parametrize("data", [b"", b"definitely not an image"])
def test_unreadable_upload_is_malformed(data):
    with pytest.raises(MalformedInputError):
        compute_fingerprint(data, algorithm="phash", hash_size=8)


def test_unknown_algorithm_rejected():
    with pytest.raises(ValueError):
        compute_fingerprint(to_bytes(synthetic_artwork()), algorithm="ahash", hash_size=8)


@pytest.mark.filterwarnings("ignore::PIL.Image.DecompressionBombWarning")
@pytest.mark.parametrize("max_pixels", [10_000, 40_000])
def test_oversized_image_is_malformed(monkeypatch, max_pixels):
    # 256x256 is over twice the first limit and between 1x and 2x the second
    monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", max_pixels)

    with pytest.raises(MalformedInputError):
        compute_fingerprint(to_bytes(synthetic_artwork()), algorithm="phash", hash_size=8)
