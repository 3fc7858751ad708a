"""
GGUF File Reader
Parses the header (metadata + tensor inventory) of GGUF model files.

Only the header is loaded into memory. It is read from the start of the file
in a slice that grows until the whole header fits, since tokenizer
vocabularies can make it tens of megabytes. Tensor data is never read here;
the sampler fetches it later through the same range source.
"""

from __future__ import annotations

import logging
import math
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeoutError
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Iterable, Iterator, Mapping, Protocol

import numpy as np
from gguf.constants import (
    GGML_QUANT_SIZES,
    GGUF_DEFAULT_ALIGNMENT,
    GGUF_MAGIC,
    GGMLQuantizationType,
    GGUFValueType,
)

from .config import Settings
from .cursor import BinaryCursor, GGUFFormatError, InsufficientDataError, as_value_type

logger = logging.getLogger(__name__)

SUPPORTED_VERSIONS = (2, 3)

# geometry used for encodings this version of the gguf package does not know
FALLBACK_QUANT_SIZE = (1, 4)

ProgressCallback = Callable[[str, int, int], None]


class RangeReadError(OSError):
    """A byte range could not be read from the model file."""


class RangeSource(Protocol):
    """Random-access byte source backing a model file."""

    size: int

    def read(self, offset: int, length: int) -> bytes: ...


class BytesSource:
    """Range source over an in-memory buffer."""

    def __init__(self, data: bytes | bytearray):
        self._data = bytes(data)
        self.size = len(self._data)

    def read(self, offset: int, length: int) -> bytes:
        _check_range(offset, length, self.size)
        return self._data[offset:offset + length]


class MemmapSource:
    """
    Range source over a read-only memory map of a file on disk.

    Mapping does not load the file, so multi-gigabyte models are fine; slices
    only touch the pages they cover and may be read from several threads.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        if not self.path.exists():
            raise FileNotFoundError(f"File not found: {path}")
        self.size = self.path.stat().st_size
        # numpy refuses to map empty files
        if self.size > 0:
            self._data = np.memmap(self.path, dtype=np.uint8, mode="r")
        else:
            self._data = np.empty(0, dtype=np.uint8)

    def read(self, offset: int, length: int) -> bytes:
        _check_range(offset, length, self.size)
        return self._data[offset:offset + length].tobytes()


def _check_range(offset: int, length: int, size: int) -> None:
    if offset < 0 or length < 0 or offset + length > size:
        raise RangeReadError(
            f"range [{offset}, {offset + length}) is outside the file (size {size})"
        )


@dataclass(frozen=True)
class MetadataValue:
    """A metadata value together with its GGUF type tag."""

    type: GGUFValueType
    value: Any
    element_type: GGUFValueType | None = None

    @property
    def is_numeric(self) -> bool:
        return self.type not in (GGUFValueType.STRING, GGUFValueType.ARRAY, GGUFValueType.BOOL)


class MetadataTable(Mapping[str, MetadataValue]):
    """Immutable key/value table parsed from the GGUF header."""

    def __init__(self, entries: Mapping[str, MetadataValue] | None = None):
        self._entries = MappingProxyType(dict(entries or {}))

    def __getitem__(self, key: str) -> MetadataValue:
        return self._entries[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def get_value(self, key: str, default: Any = None) -> Any:
        """Get the plain value of a key."""
        entry = self._entries.get(key)
        return default if entry is None else entry.value

    def get_number(self, key: str) -> int | float | None:
        """Get a numeric value, or None when absent or not numeric."""
        entry = self._entries.get(key)
        if entry is None or not entry.is_numeric:
            return None
        return entry.value

    def to_dict(self) -> dict[str, Any]:
        return {key: entry.value for key, entry in self._entries.items()}


@dataclass(frozen=True)
class TensorInfo:
    """One entry of the tensor inventory."""

    name: str
    dims: tuple[int, ...]
    ggml_type: int
    offset: int

    @property
    def n_elements(self) -> int:
        return math.prod(self.dims)

    @property
    def block_geometry(self) -> tuple[int, int]:
        """(elements per block, bytes per block) of the on-disk encoding."""
        return quant_geometry(self.ggml_type)

    @property
    def data_size(self) -> int:
        block_size, type_size = self.block_geometry
        return -(-self.n_elements // block_size) * type_size

    @property
    def type_name(self) -> str:
        return type_name(self.ggml_type)


@dataclass(frozen=True)
class GGUFHeader:
    """Parsed header of a GGUF file."""

    version: int
    metadata: MetadataTable
    tensors: tuple[TensorInfo, ...]
    data_offset: int
    header_size: int

    @property
    def tensor_count(self) -> int:
        return len(self.tensors)


def known_type(ggml_type: int) -> GGMLQuantizationType | None:
    """The encoding enum member, or None for tags unknown to the gguf package."""
    try:
        qtype = GGMLQuantizationType(ggml_type)
    except ValueError:
        return None
    return qtype if qtype in GGML_QUANT_SIZES else None


def quant_geometry(ggml_type: int) -> tuple[int, int]:
    qtype = known_type(ggml_type)
    return FALLBACK_QUANT_SIZE if qtype is None else GGML_QUANT_SIZES[qtype]


def type_name(ggml_type: int) -> str:
    try:
        return GGMLQuantizationType(ggml_type).name
    except ValueError:
        return f"type_{ggml_type}"


def total_params(tensors: Iterable[TensorInfo]) -> int:
    """Total number of parameters over a tensor list."""
    return sum(t.n_elements for t in tensors)


def parse_header(buffer: bytes | memoryview, on_progress: ProgressCallback | None = None) -> GGUFHeader:
    """
    Parse a GGUF header from a prefix of the file.

    Args:
        buffer: Bytes read from the start of the file
        on_progress: Optional ``(phase, current, total)`` callback

    Returns:
        The parsed header

    Raises:
        GGUFFormatError: bad magic, unsupported version or unknown type tag
        InsufficientDataError: the buffer ends before the header does
    """
    reader = BinaryCursor(buffer)

    magic = reader.read_u32()
    if magic != GGUF_MAGIC:
        raise GGUFFormatError(
            f"Invalid GGUF file: incorrect magic number {magic:#010x} (expected {GGUF_MAGIC:#010x})"
        )

    version = reader.read_u32()
    if version not in SUPPORTED_VERSIONS:
        raise GGUFFormatError(
            f"Unsupported GGUF version: {version} (expected one of {', '.join(map(str, SUPPORTED_VERSIONS))})"
        )

    tensor_count = reader.read_u64()
    metadata_kv_count = reader.read_u64()

    if on_progress:
        on_progress("metadata", 0, metadata_kv_count)

    entries: dict[str, MetadataValue] = {}
    for i in range(metadata_kv_count):
        key = reader.read_string()
        entries[key] = _read_metadata_value(reader)
        if on_progress and i % 50 == 0:
            on_progress("metadata", i, metadata_kv_count)
    if on_progress:
        on_progress("metadata", metadata_kv_count, metadata_kv_count)
        on_progress("tensors", 0, tensor_count)

    tensors: list[TensorInfo] = []
    for i in range(tensor_count):
        tensors.append(_read_tensor_info(reader))
        if on_progress and i % 100 == 0:
            on_progress("tensors", i, tensor_count)
    if on_progress:
        on_progress("tensors", tensor_count, tensor_count)

    header_size = reader.offset
    data_offset = -(-header_size // GGUF_DEFAULT_ALIGNMENT) * GGUF_DEFAULT_ALIGNMENT

    return GGUFHeader(
        version=version,
        metadata=MetadataTable(entries),
        tensors=tuple(tensors),
        data_offset=data_offset,
        header_size=header_size,
    )


def _read_metadata_value(reader: BinaryCursor) -> MetadataValue:
    vtype = as_value_type(reader.read_u32())
    if vtype == GGUFValueType.ARRAY:
        element_type = as_value_type(reader.read_u32())
        length = reader.read_u64()
        items = [reader.read_value(element_type) for _ in range(length)]
        return MetadataValue(vtype, items, element_type)
    return MetadataValue(vtype, reader.read_value(vtype))


def _read_tensor_info(reader: BinaryCursor) -> TensorInfo:
    name = reader.read_string()
    n_dims = reader.read_u32()
    dims = tuple(reader.read_u64() for _ in range(n_dims))
    ggml_type = reader.read_u32()
    offset = reader.read_u64()

    if known_type(ggml_type) is None:
        logger.warning(f"Tensor {name!r} has unknown encoding {ggml_type}, assuming 4 bytes per element")

    return TensorInfo(name=name, dims=dims, ggml_type=ggml_type, offset=offset)


def read_header(
    source: RangeSource,
    on_progress: ProgressCallback | None = None,
    settings: Settings | None = None,
) -> GGUFHeader:
    """
    Read and parse the header, growing the read slice until it fits.

    The first attempt reads ``settings.initial_header_read`` bytes; each
    attempt that runs out of data re-reads ``header_growth`` times more, up
    to the file size. Format errors are raised immediately.
    """
    settings = settings or Settings()
    if source.size == 0:
        raise GGUFFormatError("Invalid GGUF file: file is empty")

    read_size = min(source.size, max(1, settings.initial_header_read))
    while True:
        buffer = source.read(0, read_size)
        try:
            return parse_header(buffer, on_progress)
        except InsufficientDataError as e:
            if read_size >= source.size:
                raise GGUFFormatError(f"Invalid GGUF file: header is truncated ({e})") from None
            # at least one more byte per attempt, whatever the growth factor
            read_size = min(source.size, max(read_size + 1, read_size * settings.header_growth))
            logger.info(f"Header exceeded buffer, expanding to {read_size / 1e6:.0f} MB...")


def parse_header_in_background(
    source: RangeSource,
    on_progress: ProgressCallback | None = None,
    settings: Settings | None = None,
) -> GGUFHeader:
    """
    Parse the header on a worker thread, bounded by ``settings.parse_timeout``.

    When the worker cannot be started or does not finish in time the header
    is parsed synchronously on the calling thread instead. An abandoned
    worker stops reporting progress but cannot be interrupted: it finishes
    its current read in the background, and since pool threads are joined at
    exit, a read that hangs forever also delays interpreter shutdown.
    """
    settings = settings or Settings()
    abandoned = threading.Event()

    def worker_progress(phase: str, current: int, total: int) -> None:
        if on_progress and not abandoned.is_set():
            on_progress(phase, current, total)

    try:
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="gguf-header")
        future = executor.submit(read_header, source, worker_progress, settings)
    except RuntimeError as e:
        logger.warning(f"Background parser unavailable, parsing on caller thread: {e}")
        return read_header(source, on_progress, settings)

    try:
        header = future.result(timeout=settings.parse_timeout)
        logger.debug("Parsed header in background worker")
        return header
    except FuturesTimeoutError:
        abandoned.set()
        future.cancel()
        logger.warning(
            f"Background parse did not finish within {settings.parse_timeout:.0f}s, parsing on caller thread"
        )
    finally:
        executor.shutdown(wait=False)
    return read_header(source, on_progress, settings)
