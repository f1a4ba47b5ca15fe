"""
RAG Embedding Encoder
=====================

Pack/unpack embeddings to the compact dense vector format:
n consecutive little-endian IEEE-754 float32 values (4*n bytes),
tagged with binary subtype 0x81.

1536 dimensions -> 6144 bytes instead of a 1536-element float64 array.
"""

from typing import Iterable, List, Optional, Union

import numpy as np

from .errors import FormatError
from .models import DENSE_VECTOR_FLOAT32, PackedEmbedding

FLOAT32_LE = np.dtype("<f4")
BYTES_PER_VALUE = FLOAT32_LE.itemsize


def pack(vector: Iterable[float]) -> PackedEmbedding:
    """
    Encode a vector as a tagged float32 blob.

    Values are truncated to single precision and written in order.
    An empty vector yields an empty tagged blob.

    Args:
        vector: Sequence of real numbers (list, tuple or numpy array)

    Returns:
        PackedEmbedding with 4 * len(vector) bytes and subtype 0x81

    Raises:
        FormatError: if the input is not a flat sequence of finite numbers
    """
    if not isinstance(vector, np.ndarray):
        vector = list(vector)

    try:
        arr = np.asarray(vector, dtype=np.float64)
    except (TypeError, ValueError) as e:
        raise FormatError(f"Vector contains non-numeric values: {e}") from e

    if arr.ndim != 1:
        raise FormatError(f"Vector must be one-dimensional, got shape {arr.shape}")

    with np.errstate(over="ignore"):
        values = arr.astype(FLOAT32_LE)

    if not np.all(np.isfinite(values)):
        raise FormatError("Vector contains NaN, infinite or out-of-range values")

    return PackedEmbedding(data=values.tobytes(), subtype=DENSE_VECTOR_FLOAT32)


def unpack(
    blob: Union[PackedEmbedding, bytes, bytearray, memoryview],
    dimensions: Optional[int] = None,
    subtype: Optional[int] = None,
) -> List[float]:
    """
    Decode a tagged float32 blob back into a list of floats.

    Raw bytes carry no tag of their own, so ``subtype`` must be given for them.

    Args:
        blob: PackedEmbedding, or raw bytes together with ``subtype``
        dimensions: Expected number of values (optional)
        subtype: Binary subtype of raw bytes

    Raises:
        FormatError: bad length, wrong or missing subtype, dimension mismatch
    """
    if isinstance(blob, PackedEmbedding):
        data = blob.data
        tag = blob.subtype
    elif isinstance(blob, (bytes, bytearray, memoryview)):
        data = bytes(blob)
        tag = subtype
    else:
        raise FormatError(f"Cannot unpack object of type {type(blob).__name__}")

    if tag != DENSE_VECTOR_FLOAT32:
        raise FormatError(
            f"Unexpected binary subtype {tag!r}, expected {DENSE_VECTOR_FLOAT32:#04x}"
        )

    if len(data) % BYTES_PER_VALUE:
        raise FormatError(f"Blob length {len(data)} is not a multiple of {BYTES_PER_VALUE}")

    count = len(data) // BYTES_PER_VALUE
    if dimensions is not None and count != dimensions:
        raise FormatError(f"Blob holds {count} values, expected {dimensions}")

    return np.frombuffer(data, dtype=FLOAT32_LE).astype(np.float64).tolist()


def to_float32(vector: Iterable[float]) -> List[float]:
    """Round a vector to single precision (what pack/unpack preserves)."""
    return np.asarray(list(vector), dtype=np.float64).astype(FLOAT32_LE).astype(np.float64).tolist()
