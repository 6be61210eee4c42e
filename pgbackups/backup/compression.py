"""
Compression for backup dumps.

Dumps are gzipped in place: {site}.sql becomes {site}.sql.gz and the
uncompressed file is removed.
"""

import gzip
import os
import shutil
import zlib

from pgbackups.utils.files import open_private


PG_DUMP_SIGNATURE = b'PostgreSQL database dump'
HEADER_BYTES = 512


class CompressionError(Exception):
    """Raised when compression fails."""
    pass


def compress_file(input_path: str) -> str:
    """
    Gzip a file in place.

    Args:
        input_path: Path to the uncompressed file

    Returns:
        Path of the compressed file (input_path + '.gz')

    Raises:
        CompressionError: If compression fails. Neither file is left behind.
    """
    if not os.path.exists(input_path):
        raise CompressionError(f"File not found: {input_path}")

    output_path = f"{input_path}.gz"

    try:
        with open(input_path, 'rb') as src, open_private(output_path) as raw:
            with gzip.GzipFile(fileobj=raw, mode='wb') as dst:
                shutil.copyfileobj(src, dst)
    except (OSError, zlib.error) as e:
        for path in (output_path, input_path):
            if os.path.exists(path):
                os.remove(path)
        raise CompressionError(f"Compression failed for {input_path}: {e}")

    os.remove(input_path)
    return output_path


def gunzip_prefix(data: bytes, limit: int = HEADER_BYTES) -> bytes:
    """
    Decompress the start of a gzip stream.

    Works on truncated input, such as the first kilobyte of an object.

    Returns:
        Up to limit decompressed bytes (empty if data is not gzip)
    """
    decompressor = zlib.decompressobj(16 + zlib.MAX_WBITS)
    try:
        return decompressor.decompress(data, limit)
    except zlib.error:
        return b''


def has_dump_signature(gzip_prefix: bytes, signature: bytes = PG_DUMP_SIGNATURE) -> bool:
    """Check whether a gzip prefix decompresses to something with a dump header."""
    return signature in gunzip_prefix(gzip_prefix)
