"""Enumerations for the storage-server data model."""

from enum import Enum


class CompressionAlgorithm(str, Enum):
    """Transform applied to the plaintext before it is persisted.

    The integer codes match the legacy `compressed` column of older
    SQLite databases (0 = none, 1 = deflate, 2 = gzip).
    """

    NONE = "none"
    DEFLATE = "deflate"  # zlib container
    GZIP = "gzip"  # gzip container

    @classmethod
    def from_code(cls, code: int) -> "CompressionAlgorithm":
        return _BY_CODE.get(code, cls.NONE)


_BY_CODE = {
    0: CompressionAlgorithm.NONE,
    1: CompressionAlgorithm.DEFLATE,
    2: CompressionAlgorithm.GZIP,
}
