"""
Export Compression Utilities

Each exported entity is stored as its own gzip member holding the
record's canonical JSON. Blobs are plain gzip (no framing byte) so an
offline client can gunzip any bundle entry directly.
"""

import gzip
import json
import logging
from dataclasses import dataclass
from typing import Any, Optional, Tuple


logger = logging.getLogger(__name__)


GZIP_MAGIC = b'\x1f\x8b'


@dataclass
class CompressionStats:
    """Track compression statistics."""
    original_size: int
    compressed_size: int

    @property
    def compression_ratio(self) -> float:
        if self.compressed_size == 0:
            return 0.0
        return self.original_size / self.compressed_size

    @property
    def savings_percent(self) -> float:
        """Calculate space savings percentage."""
        if self.original_size == 0:
            return 0.0
        return (1 - self.compressed_size / self.original_size) * 100


class RecordCompressor:
    """
    gzip compression of per-entity JSON blobs.

    Level 6 trades a little ratio for speed; blobs are recompressed on
    every write of the entity, so compression sits on the write path.
    """

    def __init__(self, level: int = 6):
        self.level = level

    def compress(self, data: bytes) -> Tuple[bytes, CompressionStats]:
        compressed = gzip.compress(data, compresslevel=self.level)
        return compressed, CompressionStats(
            original_size=len(data),
            compressed_size=len(compressed),
        )

    def decompress(self, data: bytes) -> bytes:
        if not is_gzip(data):
            raise ValueError("Not a gzip blob")
        return gzip.decompress(data)

    def compress_record(self, record: Any) -> bytes:
        """Compress a record (anything with to_dict(), or plain JSON data)."""
        if hasattr(record, "to_dict"):
            record = record.to_dict()
        compressed, _ = self.compress(serialize_value(record))
        return compressed

    def decompress_record(self, blob: bytes) -> Any:
        return deserialize_value(self.decompress(blob))


def is_gzip(data: Optional[bytes]) -> bool:
    """Cheap validity check used before a blob goes into a bundle."""
    return bool(data) and data[:2] == GZIP_MAGIC


def serialize_value(value: Any) -> bytes:
    """
    Serialize a Python value to JSON bytes.

    Uses JSON with default handler for non-serializable types.
    """
    def default_handler(obj):
        if hasattr(obj, 'isoformat'):
            return obj.isoformat()
        if hasattr(obj, 'to_dict'):
            return obj.to_dict()
        if hasattr(obj, '__dict__'):
            return obj.__dict__
        return str(obj)

    json_str = json.dumps(value, default=default_handler, ensure_ascii=False)
    return json_str.encode('utf-8')


def deserialize_value(data: bytes) -> Any:
    """
    Deserialize bytes back to Python value.
    """
    if not data:
        return None
    return json.loads(data.decode('utf-8'))
