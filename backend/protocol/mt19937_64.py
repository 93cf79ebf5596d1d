"""
64-bit Mersenne Twister (MT19937-64).

Bit-exact with the reference generator (and C++ std::mt19937_64): the
invite-code encoder derives its filler bytes from it, so codes stay
interoperable with tooling that uses the reference implementation.
"""

from __future__ import annotations

_NN = 312
_MM = 156
_MATRIX_A = 0xB5026F5AA96619E9
_UPPER_MASK = 0xFFFFFFFF80000000  # most significant 33 bits
_LOWER_MASK = 0x7FFFFFFF  # least significant 31 bits
_MASK64 = 0xFFFFFFFFFFFFFFFF
_INIT_MULTIPLIER = 6364136223846793005


class MT19937_64:  # pylint: disable=invalid-name
    """Reference MT19937-64 generator seeded with a single 64-bit word."""

    def __init__(self, seed: int) -> None:
        self._mt = [0] * _NN
        self._mti = _NN
        self._seed(seed & _MASK64)

    def _seed(self, seed: int) -> None:
        mt = self._mt
        mt[0] = seed
        for i in range(1, _NN):
            prev = mt[i - 1]
            mt[i] = (_INIT_MULTIPLIER * (prev ^ (prev >> 62)) + i) & _MASK64
        self._mti = _NN

    def _twist(self) -> None:
        mt = self._mt
        for i in range(_NN):
            x = (mt[i] & _UPPER_MASK) | (mt[(i + 1) % _NN] & _LOWER_MASK)
            y = x >> 1
            if x & 1:
                y ^= _MATRIX_A
            mt[i] = mt[(i + _MM) % _NN] ^ y
        self._mti = 0

    def next_u64(self) -> int:
        """Return the next tempered 64-bit output."""
        if self._mti >= _NN:
            self._twist()

        x = self._mt[self._mti]
        self._mti += 1

        x ^= (x >> 29) & 0x5555555555555555
        x ^= (x << 17) & 0x71D67FFFEDA60000
        x ^= (x << 37) & 0xFFF7EEE000000000
        x ^= x >> 43
        return x & _MASK64
