"""
Transform stage: gzip compression of downloaded file content.

Two modes:
- roundtrip: compress, then stream the compressed buffer back through a gzip
  reader. The uploaded bytes equal the input; this keeps the byte format
  every stored object already has.
- gzip: upload the compressed buffer as is.
"""

import gzip
import io
import zlib
from typing import BinaryIO

from utils.errors import TransformError

ROUNDTRIP = "roundtrip"
GZIP = "gzip"
MODES = (ROUNDTRIP, GZIP)


def compress(data: bytes, level: int = 9) -> bytes:
    """Gzip-compress a full buffer.

    Raises:
        TransformError: If the codec fails
    """
    buffer = io.BytesIO()
    try:
        with gzip.GzipFile(fileobj=buffer, mode="wb", compresslevel=level) as writer:
            writer.write(data)
    except (OSError, ValueError, zlib.error) as e:
        raise TransformError(f"compression failed: {e}") from e
    return buffer.getvalue()


def decompress(data: bytes) -> bytes:
    """Inflate a gzip buffer.

    Raises:
        TransformError: If the buffer is not valid gzip
    """
    try:
        return gzip.decompress(data)
    except (OSError, EOFError, zlib.error) as e:
        raise TransformError(f"decompression failed: {e}") from e


class Transformer:
    """Turns raw file content into the stream handed to upload."""

    def __init__(self, mode: str = ROUNDTRIP, level: int = 9) -> None:
        if mode not in MODES:
            raise ValueError(f"unknown compression mode {mode!r}, expected one of {MODES}")
        if not 0 <= level <= 9:
            raise ValueError(f"compression level must be 0-9, got {level}")
        self.mode = mode
        self.level = level

    def transform(self, data: bytes) -> BinaryIO:
        """Compress data and return a readable stream for upload.

        Raises:
            TransformError: If compression fails or the gzip header is unreadable
        """
        compressed = compress(data, self.level)

        if self.mode == GZIP:
            return io.BytesIO(compressed)

        reader = gzip.GzipFile(fileobj=io.BytesIO(compressed), mode="rb")
        try:
            # Touch the header so a corrupt buffer fails here, not mid-upload
            reader.peek(1)
        except (OSError, EOFError, zlib.error) as e:
            raise TransformError(f"failed to open gzip reader: {e}") from e
        return reader
