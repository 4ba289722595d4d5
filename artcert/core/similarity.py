from artcert.models.fingerprint import Fingerprint


def hamming_distance(a: Fingerprint, b: Fingerprint) -> int:
    """Count of differing bit positions. Fingerprints must have the same length."""
    if a.bits != b.bits:
        raise ValueError(f"Cannot compare fingerprints of {a.bits} and {b.bits} bits")
    return bin(a.value ^ b.value).count("1")


def similarity_score(distance: int, bits: int) -> float:
    """
    Display score in [0, 1], decreasing with distance.

    Informational only; certification decisions use the raw distance.
    """
    if bits <= 0:
        return 0.0
    return max(0.0, 1.0 - distance / bits)
