"""zlib compression of transport payloads, bounded by a fixed output size."""

import zlib

__all__ = ["BUFFER_SIZE", "CompressionError", "compress", "uncompress"]

BUFFER_SIZE = 2048 * 2048
"""Largest compressed or uncompressed payload accepted (limits terminal size)."""


class CompressionError(ValueError):
    """Raised when data cannot be compressed or uncompressed within the limit."""


def compress(data: bytes) -> bytes:
    """Return the zlib stream for ``data`` at the default level."""
    try:
        out = zlib.compress(bytes(data))
    except zlib.error as exc:
        raise CompressionError(str(exc)) from exc
    if len(out) > BUFFER_SIZE:
        raise CompressionError("compressed data exceeds buffer size")
    return out


def uncompress(data: bytes) -> bytes:
    """Inflate a complete zlib stream whose output fits in BUFFER_SIZE bytes."""
    inflater = zlib.decompressobj()
    try:
        out = inflater.decompress(bytes(data), BUFFER_SIZE)
    except zlib.error as exc:
        raise CompressionError(str(exc)) from exc
    if not inflater.eof:
        if inflater.unconsumed_tail:
            raise CompressionError("uncompressed data exceeds buffer size")
        raise CompressionError("incomplete compressed stream")
    return out