"""
Neural connection generator.

Draws line segments between tensor regions along the forward pass:
embedding -> attention -> FFN -> next layer -> output. Lines are a visual
summary; each matched pair of regions gets a handful of random segments.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Sequence

import numpy as np

from .classifier import TensorRole, role_color
from .point_cloud import PointCloud, TensorRegion

R = TensorRole


@dataclass(frozen=True)
class DataflowRule:
    sources: tuple[TensorRole, ...]
    targets: tuple[TensorRole, ...]
    # only connect regions whose expert indices are equal
    match_expert: bool = False


INTRA_LAYER_RULES: tuple[DataflowRule, ...] = (
    DataflowRule((R.ATTN_NORM,), (R.ATTN_Q, R.ATTN_K, R.ATTN_V)),
    DataflowRule((R.ATTN_Q, R.ATTN_K, R.ATTN_V), (R.ATTN_OUT,)),
    DataflowRule((R.ATTN_OUT,), (R.FFN_NORM,)),
    DataflowRule((R.FFN_NORM,), (R.FFN_GATE, R.FFN_UP, R.MOE_ROUTER)),
    DataflowRule((R.MOE_ROUTER,), (R.FFN_GATE, R.FFN_UP, R.MOE_GATE, R.MOE_UP)),
    DataflowRule((R.FFN_GATE, R.FFN_UP), (R.FFN_DOWN,), match_expert=True),
    DataflowRule((R.MOE_GATE, R.MOE_UP), (R.MOE_DOWN,)),
)

LAYER_OUTPUTS = (R.FFN_DOWN, R.MOE_DOWN)
LAYER_INPUTS = (R.ATTN_NORM,)
LAYER_INPUTS_FALLBACK = (R.ATTN_Q, R.ATTN_K, R.ATTN_V)

INTRA_LAYER_DIM = 0.5
CROSS_LAYER_DENSITY = 0.4
CROSS_LAYER_DIM = 0.35
BOUNDARY_DENSITY = 0.5
BOUNDARY_DIM = 0.4

MIN_LINES_PER_PAIR = 2
BASE_LINES_RANGE = (8, 100)


@dataclass
class ConnectionGraph:
    """Line segments as endpoint pairs: rows ``2k`` and ``2k + 1`` form line ``k``."""

    positions: np.ndarray
    colors: np.ndarray
    generation: int = 0

    @property
    def line_count(self) -> int:
        return len(self.positions) // 2


def lines_per_pair(source_points: int, target_points: int, density: float = 1.0) -> int:
    """``max(2, round(clamp(sqrt(min(a, b)), 8, 100) * density))``."""
    lo, hi = BASE_LINES_RANGE
    base = min(hi, max(lo, math.sqrt(min(source_points, target_points))))
    return max(MIN_LINES_PER_PAIR, round(base * density))


def _of(regions: Sequence[TensorRegion], roles: tuple[TensorRole, ...]) -> list[TensorRegion]:
    return [r for r in regions if r.classification.role in roles]


def _inputs_of(regions: Sequence[TensorRegion]) -> list[TensorRegion]:
    return _of(regions, LAYER_INPUTS) or _of(regions, LAYER_INPUTS_FALLBACK)


class _LineBuilder:
    def __init__(self, cloud: PointCloud, rng: np.random.Generator):
        self.cloud = cloud
        self.rng = rng
        self.positions: list[np.ndarray] = []
        self.colors: list[np.ndarray] = []

    def connect(self, src: TensorRegion, dst: TensorRegion, density: float, dim: float) -> None:
        if src.point_count == 0 or dst.point_count == 0:
            return
        k = lines_per_pair(src.point_count, dst.point_count, density)
        s = self.rng.integers(src.start, src.end, size=k)
        t = self.rng.integers(dst.start, dst.end, size=k)

        pos = np.empty((2 * k, 3), dtype=np.float32)
        pos[0::2] = self.cloud.positions[s]
        pos[1::2] = self.cloud.positions[t]

        col = np.empty((2 * k, 3), dtype=np.float32)
        col[0::2] = np.asarray(role_color(src.classification.role)) * dim
        col[1::2] = np.asarray(role_color(dst.classification.role)) * dim

        self.positions.append(pos)
        self.colors.append(col)

    def connect_all(self, sources, targets, density: float, dim: float) -> None:
        for src in sources:
            for dst in targets:
                self.connect(src, dst, density, dim)

    def build(self, generation: int) -> ConnectionGraph:
        if not self.positions:
            empty = np.empty((0, 3), dtype=np.float32)
            return ConnectionGraph(empty, empty.copy(), generation)
        return ConnectionGraph(np.concatenate(self.positions), np.concatenate(self.colors), generation)


def generate_connections(
    cloud: PointCloud,
    density: float = 1.0,
    rng: np.random.Generator | None = None,
) -> ConnectionGraph:
    """
    Build the connection graph of a point cloud.

    Args:
        cloud: Completed point cloud
        density: Multiplier on the number of lines per region pair
        rng: Source of the endpoint draws

    Returns:
        Line segments stamped with the cloud's generation
    """
    rng = rng if rng is not None else np.random.default_rng()
    lines = _LineBuilder(cloud, rng)

    by_layer: dict[int, list[TensorRegion]] = {}
    globals_: list[TensorRegion] = []
    for r in cloud.regions:
        if r.classification.layer_index >= 0:
            by_layer.setdefault(r.classification.layer_index, []).append(r)
        else:
            globals_.append(r)
    layers = sorted(by_layer)

    for layer in layers:
        regions = by_layer[layer]
        for rule in INTRA_LAYER_RULES:
            targets = _of(regions, rule.targets)
            for src in _of(regions, rule.sources):
                matched = targets
                if rule.match_expert:
                    matched = [t for t in targets if t.classification.expert_index == src.classification.expert_index]
                lines.connect_all([src], matched, density, INTRA_LAYER_DIM)

    for current, following in zip(layers, layers[1:]):
        lines.connect_all(
            _of(by_layer[current], LAYER_OUTPUTS),
            _inputs_of(by_layer[following]),
            density * CROSS_LAYER_DENSITY,
            CROSS_LAYER_DIM,
        )

    if layers:
        boundary = density * BOUNDARY_DENSITY
        embeddings = _of(globals_, (R.TOKEN_EMBEDDING,))
        lines.connect_all(embeddings, _inputs_of(by_layer[layers[0]]), boundary, BOUNDARY_DIM)

        output_norms = _of(globals_, (R.OUTPUT_NORM,))
        outputs = _of(globals_, (R.OUTPUT,))
        last_downs = _of(by_layer[layers[-1]], LAYER_OUTPUTS)
        lines.connect_all(last_downs, output_norms or outputs, boundary, BOUNDARY_DIM)
        lines.connect_all(output_norms, outputs, boundary, BOUNDARY_DIM)

    return lines.build(cloud.generation)
