"""
Point Cloud Generator

Assembles the renderer-facing buffers: one position and one color per
point, grouped in contiguous index ranges per tensor. The same inputs and
the same random generator always produce the same buffers.
"""

from __future__ import annotations

import logging
import time
from bisect import bisect_right
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Sequence

import numpy as np

from .classifier import TensorClassification, TensorRole, classify_tensor, known_name, role_color
from .config import Settings
from .gguf_reader import GGUFHeader, ProgressCallback, RangeSource, TensorInfo
from .layout import MIN_POINTS_PER_TENSOR, Layout, Region, allocate_points, place_points
from .model_analyzer import ArchitectureInfo
from .sampler import SampleRequest, sample_indices, sample_tensors

logger = logging.getLogger(__name__)

GLOBAL_LAYER_COLOR = (0.5, 0.5, 0.6)

# layer gradient stops: green -> blue -> purple
_LAYER_START = np.array([0.13, 0.80, 0.53])
_LAYER_MID = np.array([0.27, 0.53, 1.00])
_LAYER_END = np.array([0.67, 0.27, 1.00])

BRIGHTNESS_RANGE = (0.85, 1.15)
BOUNDS_PADDING = 0.3


class ColorMode(str, Enum):
    WEIGHT = "weight"
    TENSOR = "tensor"
    LAYER = "layer"


@dataclass(frozen=True)
class TensorRegion:
    """A tensor's slice ``[start, end)`` of the point buffers."""

    tensor: TensorInfo
    classification: TensorClassification
    region: Region
    known_name: str
    start: int
    end: int

    @property
    def point_count(self) -> int:
        return self.end - self.start

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.tensor.name,
            "known_name": self.known_name,
            "role": self.classification.role.value,
            "layer_index": self.classification.layer_index,
            "expert_index": self.classification.expert_index,
            "dims": list(self.tensor.dims),
            "type": self.tensor.type_name,
            "region": self.region.to_dict(),
            "start": self.start,
            "end": self.end,
        }


@dataclass
class PointCloud:
    """
    Point buffers of one generation.

    ``positions`` never change after construction; ``colors`` is replaced
    wholesale by :func:`recolor`.
    """

    positions: np.ndarray
    colors: np.ndarray
    regions: list[TensorRegion]
    color_mode: ColorMode
    generation: int = 0
    _starts: list[int] = field(default_factory=list, init=False, repr=False)

    def __post_init__(self):
        self._starts = [r.start for r in self.regions]

    @property
    def point_count(self) -> int:
        return len(self.positions)

    def region_at(self, index: int) -> TensorRegion | None:
        """Region owning point ``index`` (for picking), or None."""
        i = bisect_right(self._starts, index) - 1
        if i < 0:
            return None
        region = self.regions[i]
        return region if region.start <= index < region.end else None


@dataclass(frozen=True)
class LayerBounds:
    layer_index: int
    role: TensorRole
    color: tuple[float, float, float]
    min: tuple[float, float, float]
    max: tuple[float, float, float]

    def to_dict(self) -> dict[str, Any]:
        return {
            "layer_index": self.layer_index,
            "role": self.role.value,
            "color": list(self.color),
            "min": list(self.min),
            "max": list(self.max),
        }


def weight_to_color(values: np.ndarray, max_abs: float) -> np.ndarray:
    """Diverging colormap: blue (negative) -> white (zero) -> red (positive)."""
    values = np.asarray(values, dtype=np.float64)
    t = values / max_abs if max_abs > 0 else np.zeros_like(values)
    t = np.clip(np.nan_to_num(t, nan=0.0, posinf=1.0, neginf=-1.0), -1.0, 1.0)

    neg = t < 0
    s = np.where(neg, 1.0 + t, t)
    out = np.empty((len(t), 3), dtype=np.float32)
    out[:, 0] = np.where(neg, 0.2 + 0.8 * s, 1.0)
    out[:, 1] = np.where(neg, 0.33 + 0.67 * s, 1.0 - 0.67 * s)
    out[:, 2] = np.where(neg, 1.0, 1.0 - 0.8 * s)
    return out


def layer_to_color(layer_index: int, total_layers: int) -> tuple[float, float, float]:
    """Depth gradient: green -> blue -> purple over the layer range."""
    if layer_index < 0:
        return GLOBAL_LAYER_COLOR
    t = layer_index / (total_layers - 1) if total_layers > 1 else 0.0
    t = min(max(t, 0.0), 1.0)
    if t < 0.5:
        s = t * 2
        color = _LAYER_START * (1 - s) + _LAYER_MID * s
    else:
        s = (t - 0.5) * 2
        color = _LAYER_MID * (1 - s) + _LAYER_END * s
    return (float(color[0]), float(color[1]), float(color[2]))


def max_abs_finite(values: np.ndarray) -> float:
    """Largest finite magnitude, 1.0 when there is none."""
    finite = np.abs(values[np.isfinite(values)])
    peak = float(finite.max()) if finite.size else 0.0
    return peak if peak > 0 else 1.0


def tensor_colors(
    classification: TensorClassification,
    count: int,
    mode: ColorMode,
    total_layers: int,
    rng: np.random.Generator,
    samples: np.ndarray | None = None,
) -> np.ndarray:
    """
    Colors of one tensor's points.

    In weight mode point ``i`` takes sample ``floor(i * len(samples) / count)``,
    so a tensor with fewer samples than points is still colored by value
    throughout. Without samples weight mode uses the role palette.
    """
    if count <= 0:
        return np.empty((0, 3), dtype=np.float32)

    if mode == ColorMode.WEIGHT and samples is not None and len(samples) > 0:
        values = samples[sample_indices(len(samples), count)]
        return weight_to_color(values, max_abs_finite(samples))

    if mode == ColorMode.LAYER:
        color = layer_to_color(classification.layer_index, total_layers)
        return np.tile(np.asarray(color, dtype=np.float32), (count, 1))

    base = np.asarray(role_color(classification.role), dtype=np.float32)
    brightness = rng.uniform(*BRIGHTNESS_RANGE, size=(count, 1)).astype(np.float32)
    return np.minimum(base * brightness, 1.0)


def build_point_cloud(
    arch: ArchitectureInfo,
    tensors: Sequence[TensorInfo],
    target_points: int,
    color_mode: ColorMode = ColorMode.TENSOR,
    samples: Sequence[np.ndarray | None] | None = None,
    rng: np.random.Generator | None = None,
    min_points: int = MIN_POINTS_PER_TENSOR,
    counts: Sequence[int] | None = None,
    generation: int = 0,
) -> PointCloud:
    """
    Lay out and color every tensor.

    Args:
        arch: Architecture descriptor
        tensors: Tensor inventory in file order
        target_points: Requested total number of points
        color_mode: Coloring of the points
        samples: Per-tensor sampled values aligned with ``tensors``; an entry
            may be None when sampling that tensor failed
        rng: Source of all jitter; positions and colors draw from separate
            child streams, so a seed gives the same positions in every mode
        min_points: Per-tensor floor of the allocation
        counts: Precomputed allocation, as returned by :func:`allocate_points`
        generation: Generation id stamped on the result

    Returns:
        The assembled point cloud
    """
    rng = rng if rng is not None else np.random.default_rng()
    position_rng, color_rng = rng.spawn(2)
    if counts is None:
        counts = allocate_points(tensors, target_points, min_points)
    layout = Layout(arch)
    total_layers = arch.block_count or 1

    total = int(sum(counts))
    positions = np.empty((total, 3), dtype=np.float32)
    colors = np.empty((total, 3), dtype=np.float32)
    regions: list[TensorRegion] = []

    start = 0
    for i, (tensor, count) in enumerate(zip(tensors, counts)):
        cls = classify_tensor(tensor.name)
        region = layout.region(cls.role, cls.layer_index, cls.expert_index, tensor)
        end = start + count

        positions[start:end] = place_points(region, tensor, count, position_rng)
        values = samples[i] if samples is not None else None
        colors[start:end] = tensor_colors(cls, count, color_mode, total_layers, color_rng, values)

        regions.append(TensorRegion(tensor, cls, region, known_name(cls), start, end))
        start = end

    return PointCloud(positions, colors, regions, ColorMode(color_mode), generation)


def recolor(
    cloud: PointCloud,
    color_mode: ColorMode,
    arch: ArchitectureInfo,
    samples: Sequence[np.ndarray | None] | None = None,
    rng: np.random.Generator | None = None,
) -> PointCloud:
    """Replace the colors of ``cloud`` in place; positions are not touched."""
    rng = rng if rng is not None else np.random.default_rng()
    total_layers = arch.block_count or 1
    colors = np.empty_like(cloud.colors)
    for i, r in enumerate(cloud.regions):
        values = samples[i] if samples is not None else None
        colors[r.start:r.end] = tensor_colors(r.classification, r.point_count, color_mode, total_layers, rng, values)
    cloud.colors = colors
    cloud.color_mode = ColorMode(color_mode)
    return cloud


def compute_layer_bounds(regions: Sequence[TensorRegion], padding: float = BOUNDS_PADDING) -> list[LayerBounds]:
    """
    One padded bounding box per (layer, role), colored like the role.

    Regions sharing a layer and role are merged; the result is sorted by
    layer with globals (-1) first.
    """
    groups: dict[tuple[int, TensorRole], tuple[list[float], list[float]]] = {}
    for r in regions:
        key = (r.classification.layer_index, r.classification.role)
        lo, hi = groups.setdefault(key, ([np.inf] * 3, [-np.inf] * 3))
        for axis, (a, b) in enumerate(zip(r.region.min, r.region.max)):
            lo[axis] = min(lo[axis], a)
            hi[axis] = max(hi[axis], b)

    bounds = [
        LayerBounds(
            layer_index=layer,
            role=role,
            color=role_color(role),
            min=tuple(v - padding for v in lo),
            max=tuple(v + padding for v in hi),
        )
        for (layer, role), (lo, hi) in groups.items()
    ]
    bounds.sort(key=lambda b: b.layer_index)
    return bounds


def generate_point_cloud(
    source: RangeSource,
    header: GGUFHeader,
    arch: ArchitectureInfo,
    target_points: int | None = None,
    color_mode: ColorMode = ColorMode.TENSOR,
    settings: Settings | None = None,
    rng: np.random.Generator | None = None,
    on_progress: ProgressCallback | None = None,
    is_cancelled: Callable[[], bool] | None = None,
    generation: int = 0,
) -> tuple[PointCloud, list[np.ndarray | None] | None]:
    """
    Full pipeline for one generation: allocate, sample when coloring by
    weight, then lay out.

    Returns:
        (point cloud, per-tensor samples or None when nothing was sampled)

    Raises:
        SamplingCancelled: ``is_cancelled`` turned True while sampling
    """
    settings = settings or Settings()
    target = target_points if target_points is not None else settings.target_points
    tensors = header.tensors

    counts = allocate_points(tensors, target, settings.min_points_per_tensor)

    samples = None
    if color_mode == ColorMode.WEIGHT:
        t0 = time.perf_counter()
        samples = sample_tensors(
            source,
            header.data_offset,
            [SampleRequest(t, c) for t, c in zip(tensors, counts)],
            max_workers=settings.sample_workers,
            max_batch_blocks=settings.max_batch_blocks,
            on_progress=on_progress,
            is_cancelled=is_cancelled,
        )
        failed = sum(1 for s in samples if s is None)
        logger.debug(
            f"Sampled {len(tensors) - failed}/{len(tensors)} tensors in {time.perf_counter() - t0:.2f}s"
        )

    t0 = time.perf_counter()
    cloud = build_point_cloud(
        arch, tensors, target, color_mode, samples, rng,
        counts=counts, generation=generation,
    )
    logger.debug(f"Placed {cloud.point_count:,} points in {time.perf_counter() - t0:.2f}s")
    return cloud, samples
