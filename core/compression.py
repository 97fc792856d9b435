"""
Parameter Compression for Bandwidth Reduction

Weights and gradients travel between workers as 16-bit truncated floats:
each value is narrowed to FP32 and only its top two bytes (sign, exponent
and 7 mantissa bits) are kept, stored big-endian. This halves transfer
volume for FP32 parameters and quarters it for FP64, independent of the
precision used for compute.

The encoding is lossy. For finite input up to the float32 maximum the
per-element error is bounded by

    |x - decode(encode(x))| <= max(|x| * 2**-7, 2**-133)

The absolute term covers float32 subnormals, which keep only their top 7
mantissa bits. FP64 values too small for FP32 flush to zero within that
term; finite FP64 values too large for FP32 are rejected.

Accumulating in the compressed domain re-truncates after every add, so
repeated adds are not strictly associative. That is an accepted trade-off.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Union

import numpy as np
import torch

from core.exceptions import SerializationError
from core.partitioner import ShardPartitioner


BytesLike = Union[bytes, bytearray, memoryview]

# Bytes per encoded element
ELEMENT_BYTES = 2

# Error bound of a single encode/decode round-trip: max(|x| * REL, ABS)
RELATIVE_TOLERANCE = 2.0 ** -7
ABSOLUTE_TOLERANCE = 2.0 ** -133

FLOAT32_MAX = float(np.finfo(np.float32).max)

_WIRE_DTYPE = np.dtype('>u2')


@dataclass
class CompressionStats:
    """Statistics about compression performance"""
    original_size: int  # Number of bytes before compression
    compressed_size: int  # Number of bytes after compression
    compression_ratio: float
    error: float  # L2 norm of compression error


def encode_fp16(values: torch.Tensor) -> np.ndarray:
    """
    Truncate a tensor to 16-bit wire format.

    Args:
        values: 1-D tensor of float32 or float64

    Returns:
        Big-endian uint16 array, one entry per element

    Raises:
        SerializationError: If float64 input holds finite values beyond the
            float32 range
    """
    if values.dtype == torch.float64:
        magnitude = values.detach().abs()
        overflow = torch.isfinite(magnitude) & (magnitude > FLOAT32_MAX)
        if overflow.any():
            raise SerializationError(
                f"{int(overflow.sum())} finite value(s) exceed the float32 range "
                f"(max {FLOAT32_MAX:.6e}) and cannot be encoded"
            )

    as_float = values.detach().to(device="cpu", dtype=torch.float32).contiguous().numpy()
    bits = as_float.view(np.uint32)
    return (bits >> 16).astype(_WIRE_DTYPE)


def decode_fp16(raw: np.ndarray) -> torch.Tensor:
    """Expand 16-bit wire values back to a float32 tensor"""
    bits = raw.astype(np.uint32) << 16
    return torch.from_numpy(bits.view(np.float32))


def check_payload(data: BytesLike, length: int):
    """Raise SerializationError if `data` does not hold exactly `length` elements"""
    size = memoryview(data).nbytes
    if size != length * ELEMENT_BYTES:
        raise SerializationError(
            f"Compressed payload has {size} bytes, expected {length * ELEMENT_BYTES} "
            f"for {length} elements"
        )


def decompress_bytes_into(data: BytesLike, target: torch.Tensor, offset: int, length: int):
    """
    Decode a received payload straight into target[offset:offset+length].

    Reads the payload in place, so a zero-copy local block is never copied
    into an intermediate codec.
    """
    check_payload(data, length)
    if offset < 0 or offset + length > target.numel():
        raise ValueError(f"Range [{offset}, {offset + length}) out of bounds for length {target.numel()}")
    target[offset:offset + length].copy_(decode_fp16(np.frombuffer(data, dtype=_WIRE_DTYPE)))


class CompressedTensor(ABC):
    """Byte-encoded numeric range that can be shipped through the block store"""

    @abstractmethod
    def compress(self, source: torch.Tensor, offset: int = 0, length: Optional[int] = None,
                 buffer_offset: int = 0) -> memoryview:
        """Encode source[offset:offset+length] into the buffer"""

    @abstractmethod
    def decompress_into(self, target: torch.Tensor, offset: int = 0, length: Optional[int] = None,
                        buffer_offset: int = 0):
        """Overwrite target[offset:offset+length] with decoded values"""

    @abstractmethod
    def add_compressed_delta(self, data: BytesLike, offset: int, length: int) -> 'CompressedTensor':
        """Decode `data` and add it into the buffer range in place"""

    @abstractmethod
    def bytes(self, offset: int = 0, length: Optional[int] = None) -> memoryview:
        """Zero-copy view of an encoded range"""


class FP16CompressedTensor(CompressedTensor):
    """
    Fixed-ratio 16-bit codec over a mutable byte buffer.

    All offsets and lengths are in elements, not bytes.
    """

    def __init__(self, length: int):
        """
        Args:
            length: Number of elements the buffer holds
        """
        if length < 0:
            raise ValueError(f"length must be non-negative, got {length}")
        self.length = length
        self._buffer = bytearray(length * ELEMENT_BYTES)

    @classmethod
    def from_bytes(cls, data: BytesLike) -> 'FP16CompressedTensor':
        """
        Wrap a received payload.

        The payload is copied, so the source can be released right after.
        """
        size = memoryview(data).nbytes
        if size % ELEMENT_BYTES != 0:
            raise SerializationError(f"Compressed payload has odd size {size}")
        tensor = cls(size // ELEMENT_BYTES)
        tensor._buffer[:] = data
        return tensor

    @classmethod
    def from_tensor(cls, source: torch.Tensor) -> 'FP16CompressedTensor':
        tensor = cls(source.numel())
        tensor.compress(source.reshape(-1))
        return tensor

    def _resolve(self, offset: int, length: Optional[int], limit: int) -> int:
        if length is None:
            length = limit - offset
        if offset < 0 or length < 0 or offset + length > limit:
            raise ValueError(f"Range [{offset}, {offset + length}) out of bounds for length {limit}")
        return length

    def _wire(self, buffer_offset: int, length: int) -> np.ndarray:
        """Writable uint16 view of a buffer range"""
        view = np.frombuffer(self._buffer, dtype=_WIRE_DTYPE)
        return view[buffer_offset:buffer_offset + length]

    def compress(self, source: torch.Tensor, offset: int = 0, length: Optional[int] = None,
                 buffer_offset: int = 0) -> memoryview:
        """
        Encode a range of `source` into the buffer.

        Args:
            source: 1-D tensor (float32 or float64)
            offset: First element of `source` to encode
            length: Number of elements (default: rest of source)
            buffer_offset: Element position in the buffer to write at

        Returns:
            Zero-copy view of the written bytes (length * 2 bytes)
        """
        length = self._resolve(offset, length, source.numel())
        self._resolve(buffer_offset, length, self.length)

        self._wire(buffer_offset, length)[:] = encode_fp16(source[offset:offset + length])
        return self.bytes(buffer_offset, length)

    def decompress_into(self, target: torch.Tensor, offset: int = 0, length: Optional[int] = None,
                        buffer_offset: int = 0):
        """
        Decode a buffer range into `target`, overwriting it.

        Args:
            target: 1-D tensor receiving the values (any float dtype)
            offset: First element of `target` to write
            length: Number of elements (default: rest of the buffer)
            buffer_offset: Element position in the buffer to read from
        """
        if length is None:
            length = self.length - buffer_offset
        self._resolve(buffer_offset, length, self.length)
        self._resolve(offset, length, target.numel())

        decoded = decode_fp16(self._wire(buffer_offset, length))
        target[offset:offset + length].copy_(decoded)

    def to_tensor(self, dtype: torch.dtype = torch.float32) -> torch.Tensor:
        result = torch.empty(self.length, dtype=dtype)
        self.decompress_into(result)
        return result

    def add_compressed_delta(self, data: BytesLike, offset: int, length: int) -> 'FP16CompressedTensor':
        """
        Add an encoded delta into the buffer range [offset, offset+length).

        Not idempotent: applying the same delta twice counts it twice.

        Args:
            data: Encoded delta holding exactly `length` elements
            offset: Element position in the buffer
            length: Number of elements

        Returns:
            self, so reductions can be chained
        """
        check_payload(data, length)
        self._resolve(offset, length, self.length)

        wire = self._wire(offset, length)
        delta = np.frombuffer(data, dtype=_WIRE_DTYPE)
        total = decode_fp16(wire) + decode_fp16(delta)
        wire[:] = encode_fp16(total)
        return self

    def add(self, other: 'FP16CompressedTensor') -> 'FP16CompressedTensor':
        """Add another codec of the same length element-wise"""
        if other.length != self.length:
            raise SerializationError(
                f"Cannot add codec of length {other.length} to codec of length {self.length}"
            )
        return self.add_compressed_delta(other.bytes(), 0, self.length)

    def load(self, data: BytesLike):
        """Overwrite the whole buffer with `data`"""
        check_payload(data, self.length)
        self._buffer[:] = data

    def bytes(self, offset: int = 0, length: Optional[int] = None) -> memoryview:
        length = self._resolve(offset, length, self.length)
        start = offset * ELEMENT_BYTES
        return memoryview(self._buffer)[start:start + length * ELEMENT_BYTES]

    def __len__(self):
        return self.length

    def __repr__(self):
        return f"{type(self).__name__}(length={self.length})"


class FP16SplitsCompressedTensor(FP16CompressedTensor):
    """
    Codec over a whole vector laid out as independent splits.

    Split k covers the same range as shard k of ShardPartitioner(length,
    splits). Readers take zero-copy views of a single split instead of
    decoding the whole vector.
    """

    def __init__(self, length: int, splits: int):
        """
        Args:
            length: Number of elements in the full vector
            splits: Number of splits (shard owners)
        """
        super().__init__(length)
        self.partitioner = ShardPartitioner(length, splits)

    @property
    def splits(self) -> int:
        return self.partitioner.num_shards

    def compress(self, source: torch.Tensor, offset: int = 0, length: Optional[int] = None,
                 buffer_offset: int = 0, pool=None) -> memoryview:
        """
        Encode `source` into the buffer.

        When `pool` (a ConcurrencyPool) is given and the whole vector is being
        encoded, each split is encoded as its own task.
        """
        whole = offset == 0 and buffer_offset == 0 and length in (None, self.length)
        if pool is None or not whole:
            return super().compress(source, offset, length, buffer_offset)

        if source.numel() != self.length:
            raise ValueError(f"Source has {source.numel()} elements, expected {self.length}")

        compress_split = super().compress
        pool.invoke_all([
            (lambda s=shard: compress_split(source, s.offset, s.length, s.offset))
            for shard in self.partitioner
        ])
        return self.bytes()

    def split_bytes(self, split_id: int) -> memoryview:
        """Zero-copy view of one split's encoded bytes"""
        shard = self.partitioner.get_shard(split_id)
        return self.bytes(shard.offset, shard.length)

    def __repr__(self):
        return f"{type(self).__name__}(length={self.length}, splits={self.splits})"


def compression_stats(original: torch.Tensor, compressed: FP16CompressedTensor) -> CompressionStats:
    """
    Calculate compression statistics.

    Args:
        original: Tensor that was compressed
        compressed: Codec holding its encoding

    Returns:
        CompressionStats object
    """
    original_size = original.numel() * original.element_size()
    compressed_size = compressed.length * ELEMENT_BYTES

    decompressed = compressed.to_tensor(dtype=original.dtype)
    error = (original.reshape(-1) - decompressed).norm().item()

    return CompressionStats(
        original_size=original_size,
        compressed_size=compressed_size,
        compression_ratio=original_size / compressed_size if compressed_size else 1.0,
        error=error
    )
