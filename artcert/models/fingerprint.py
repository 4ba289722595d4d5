"""
Fixed-length perceptual fingerprint value type.
"""


class Fingerprint:
    """Immutable fixed-length bit vector. Equality is bitwise and includes the length."""

    __slots__ = ("_value", "_bits")

    def __init__(self, value: int, bits: int):
        if bits <= 0:
            raise ValueError(f"Fingerprint length must be positive, got {bits}")
        if value < 0 or value >> bits:
            raise ValueError(f"Value does not fit in {bits} bits")
        object.__setattr__(self, "_value", value)
        object.__setattr__(self, "_bits", bits)

    def __setattr__(self, name, value):
        raise AttributeError("Fingerprint is immutable")

    def __reduce__(self):
        return (Fingerprint, (self._value, self._bits))

    @classmethod
    def from_hex(cls, hex_str: str, bits: int = None) -> "Fingerprint":
        """Parse a hex string; the length defaults to 4 bits per hex digit."""
        cleaned = hex_str.strip().lower()
        if cleaned.startswith("0x"):
            cleaned = cleaned[2:]
        if not cleaned:
            raise ValueError("Empty fingerprint")
        try:
            value = int(cleaned, 16)
        except ValueError:
            raise ValueError(f"Invalid hex fingerprint: {hex_str!r}")
        return cls(value, bits if bits is not None else len(cleaned) * 4)

    @classmethod
    def from_bits(cls, bit_str: str) -> "Fingerprint":
        """Parse a string of '0' and '1' characters, most significant bit first."""
        if not bit_str or set(bit_str) - {"0", "1"}:
            raise ValueError(f"Invalid bit string: {bit_str!r}")
        return cls(int(bit_str, 2), len(bit_str))

    @property
    def value(self) -> int:
        return self._value

    @property
    def bits(self) -> int:
        return self._bits

    def to_hex(self) -> str:
        return format(self._value, "x").zfill((self._bits + 3) // 4)

    def to_bits(self) -> str:
        return format(self._value, "b").zfill(self._bits)

    def band(self, start: int, width: int) -> int:
        """Integer value of `width` bits starting at bit `start` (LSB = 0)."""
        return (self._value >> start) & ((1 << width) - 1)

    def __len__(self) -> int:
        return self._bits

    def __eq__(self, other):
        if not isinstance(other, Fingerprint):
            return NotImplemented
        return self._bits == other._bits and self._value == other._value

    def __hash__(self):
        return hash((self._bits, self._value))

    def __repr__(self):
        return f"Fingerprint({self.to_hex()!r}, bits={self._bits})"

    def __str__(self):
        return self.to_hex()
