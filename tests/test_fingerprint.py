import random

import pytest

from artcert.core.similarity import hamming_distance, similarity_score
from artcert.core.utils import new_certification_id, sanitize_filename, create_artwork_storage_path
from artcert.models.fingerprint import Fingerprint


def random_fingerprints(n, bits, seed=7):
    rng = random.Random(seed)
    return [Fingerprint(rng.getrandbits(bits), bits) for _ in range(n)]


def test_parse_bits_and_hex():
    fp = Fingerprint.from_bits("0001")
    assert fp.bits == 4
    assert fp.value == 1
    assert fp.to_bits() == "0001"

    fp = Fingerprint.from_hex("00ff")
    assert fp.bits == 16
    assert fp.to_hex() == "00ff"
    assert Fingerprint.from_hex("0x00FF") == fp


def test_equality_includes_length():
    assert Fingerprint(0, 4) != Fingerprint(0, 8)
    assert Fingerprint(5, 8) == Fingerprint.from_bits("00000101")
    assert len({Fingerprint(5, 8), Fingerprint.from_hex("05")}) == 1


def test_fingerprint_is_immutable():
    fp = Fingerprint(3, 4)
    with pytest.raises(AttributeError):
        fp._value = 4
    assert fp.value == 3


@pytest.mark.parametrize("value,bits", [(16, 4), (-1, 4), (0, 0)])
def test_invalid_fingerprint_rejected(value, bits):
    with pytest.raises(ValueError):
        Fingerprint(value, bits)


@pytest.mark.parametrize("text", ["", "xyz", "0x"])
def test_invalid_hex_rejected(text):
    with pytest.raises(ValueError):
        Fingerprint.from_hex(text)


def test_invalid_bit_string_rejected():
    with pytest.raises(ValueError):
        Fingerprint.from_bits("0102")


def test_band_extracts_bits_from_lsb():
    fp = Fingerprint.from_bits("10110010")
    assert fp.band(0, 4) == 0b0010
    assert fp.band(4, 4) == 0b1011


def test_distance_identity_and_symmetry():
    fps = random_fingerprints(30, 64)
    for a in fps:
        assert hamming_distance(a, a) == 0
        for b in fps:
            assert hamming_distance(a, b) == hamming_distance(b, a)


def test_distance_counts_differing_bits():
    a = Fingerprint.from_bits("0000")
    assert hamming_distance(a, Fingerprint.from_bits("0001")) == 1
    assert hamming_distance(a, Fingerprint.from_bits("1111")) == 4
    assert hamming_distance(Fingerprint.from_bits("0001"), Fingerprint.from_bits("1111")) == 3


def test_distance_length_mismatch_is_an_error():
    with pytest.raises(ValueError):
        hamming_distance(Fingerprint(0, 4), Fingerprint(0, 8))


def test_similarity_score_decreases_with_distance():
    scores = [similarity_score(d, 64) for d in range(65)]
    assert scores[0] == 1.0
    assert scores[-1] == 0.0
    assert all(a > b for a, b in zip(scores, scores[1:]))


def test_new_certification_id_unique():
    ids = {new_certification_id() for _ in range(50)}
    assert len(ids) == 50


def test_storage_path_is_content_addressed():
    path = create_artwork_storage_path("abcdef", "my art (final).png")
    assert path == "artwork/ab/abcdef_my_art_final_.png"
    assert sanitize_filename(".hidden") == "file_.hidden"
    assert sanitize_filename("") == "unnamed_file"
