"""
Layout Engine

Maps the architecture descriptor to one axis-aligned box per
(role, layer, expert) and places each tensor's points inside its box.

The forward pass runs along +z:

    [Embedding]
    layer N: attn norm -> Q K V -> attn out -> ffn norm -> gate/up -> down
    [Output Norm]
    [Output]
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import numpy as np

from .classifier import TensorRole
from .gguf_reader import TensorInfo
from .model_analyzer import ArchitectureInfo
from .sampler import sample_indices

# distance along z between the starts of consecutive layers
LAYER_SPACING = 18.0

# z offset of each sub-block inside a layer
STAGE_ATTN_NORM = 0.0
STAGE_QKV = 2.5
STAGE_ATTN_OUT = 7.0
STAGE_FFN_NORM = 10.0
STAGE_FFN_GATE_UP = 12.5
STAGE_FFN_DOWN = 16.0

HEAD_WIDTH = 1.0
COMPONENT_GAP = 0.6
EXPERT_GAP = 0.3
TENSOR_HEIGHT_BASE = 2.0
BLOCK_DEPTH = 1.2

MIN_POINTS_PER_TENSOR = 400

# jitter amplitudes, as fractions of one row/column cell and of the depth
XY_JITTER = 0.3
Z_JITTER = 0.15


@dataclass(frozen=True)
class Region:
    """Axis-aligned box: origin (x, y, z) and extent (width, height, depth)."""

    x: float
    y: float
    z: float
    width: float
    height: float
    depth: float

    @property
    def min(self) -> tuple[float, float, float]:
        return (self.x, self.y, self.z)

    @property
    def max(self) -> tuple[float, float, float]:
        return (self.x + self.width, self.y + self.height, self.z + self.depth)

    def to_dict(self) -> dict[str, float]:
        return {
            "x": self.x, "y": self.y, "z": self.z,
            "width": self.width, "height": self.height, "depth": self.depth,
        }


class Layout:
    """
    Region geometry for one architecture.

    Widths are derived once from the descriptor; :meth:`region` is then a
    pure function of the tensor's classification.
    """

    def __init__(self, arch: ArchitectureInfo):
        self.arch = arch
        self.layers = arch.block_count or 1
        heads = arch.head_count or 1
        heads_kv = arch.head_count_kv or heads

        if arch.feed_forward_length:
            self.ffn_mult = arch.feed_forward_length / max(arch.embedding_length, 1)
        else:
            self.ffn_mult = 4.0
        self.experts = (arch.expert_count or 1) if arch.is_moe else 1

        self.q_width = heads * HEAD_WIDTH
        self.kv_width = heads_kv * HEAD_WIDTH
        self.attn_out_width = heads * HEAD_WIDTH * 0.5
        self.qkv_width = self.q_width + 2 * self.kv_width + 2 * COMPONENT_GAP

        ffn_block = max(2.0, self.ffn_mult) * HEAD_WIDTH
        if self.experts > 1:
            self.ffn_width = self.experts * (ffn_block + EXPERT_GAP) * 0.4
        else:
            self.ffn_width = ffn_block * 1.5
        self.expert_width = self.ffn_width / self.experts - EXPERT_GAP

        self.layer_height = TENSOR_HEIGHT_BASE
        self.global_width = max(self.qkv_width, self.ffn_width) * 0.8

    @property
    def is_moe(self) -> bool:
        return self.experts > 1

    def layer_depth(self, layer_index: int) -> float:
        return max(0, layer_index) * LAYER_SPACING

    def expert_x(self, expert_index: int) -> float:
        """Left edge of an expert's column."""
        return -self.ffn_width / 2 + max(0, expert_index) * (self.expert_width + EXPERT_GAP)

    def region(
        self,
        role: TensorRole,
        layer_index: int = -1,
        expert_index: int = -1,
        tensor: TensorInfo | None = None,
    ) -> Region:
        """
        Box for a tensor of the given role at the given layer and expert.

        ``tensor`` is accepted for callers that pass the whole descriptor;
        the geometry depends on the classification only.
        """
        end = self.layers * LAYER_SPACING
        gw = self.global_width
        h = self.layer_height

        if role == TensorRole.TOKEN_EMBEDDING:
            return Region(-gw / 2, 0.0, -LAYER_SPACING * 1.5, gw, h * 1.5, BLOCK_DEPTH * 2)
        if role == TensorRole.OUTPUT_NORM:
            return Region(-gw / 2, 0.0, end + 0.5, gw, 0.3, BLOCK_DEPTH)
        if role == TensorRole.OUTPUT:
            return Region(-gw / 2, 0.0, end + 2.0, gw, h * 1.5, BLOCK_DEPTH)
        if layer_index < 0 and role in (TensorRole.NORM, TensorRole.OTHER):
            return Region(-2.0, 0.0, end + LAYER_SPACING, 4.0, 0.3, BLOCK_DEPTH)

        z = self.layer_depth(layer_index)
        qkv_x = -self.qkv_width / 2
        ffn_x = -self.ffn_width / 2

        if role == TensorRole.ATTN_NORM:
            return Region(qkv_x, h + 0.2, z + STAGE_ATTN_NORM, self.qkv_width, 0.15, BLOCK_DEPTH * 0.5)
        if role == TensorRole.ATTN_Q:
            return Region(qkv_x, 0.0, z + STAGE_QKV, self.q_width, h, BLOCK_DEPTH)
        if role == TensorRole.ATTN_K:
            x = qkv_x + self.q_width + COMPONENT_GAP
            return Region(x, 0.0, z + STAGE_QKV, self.kv_width, h * 0.7, BLOCK_DEPTH)
        if role == TensorRole.ATTN_V:
            x = qkv_x + self.q_width + self.kv_width + COMPONENT_GAP * 2
            return Region(x, 0.0, z + STAGE_QKV, self.kv_width, h * 0.7, BLOCK_DEPTH)
        if role in (TensorRole.ATTN_OUT, TensorRole.ATTN_OTHER):
            w = self.attn_out_width
            return Region(-w / 2, 0.0, z + STAGE_ATTN_OUT, w, h, BLOCK_DEPTH)
        if role == TensorRole.FFN_NORM:
            return Region(ffn_x, h + 0.2, z + STAGE_FFN_NORM, self.ffn_width, 0.15, BLOCK_DEPTH * 0.5)

        # router and packed experts span the whole FFN width
        if role == TensorRole.MOE_ROUTER:
            return Region(ffn_x, h + 0.5, z + STAGE_FFN_GATE_UP - 1.0, self.ffn_width, 0.3, BLOCK_DEPTH * 0.5)
        if role == TensorRole.MOE_GATE:
            return Region(ffn_x, 0.0, z + STAGE_FFN_GATE_UP, self.ffn_width / 2, h, BLOCK_DEPTH)
        if role == TensorRole.MOE_UP:
            return Region(0.0, 0.0, z + STAGE_FFN_GATE_UP, self.ffn_width / 2, h, BLOCK_DEPTH)
        if role == TensorRole.MOE_DOWN:
            return Region(ffn_x, 0.0, z + STAGE_FFN_DOWN, self.ffn_width, h, BLOCK_DEPTH)

        if self.is_moe and role in (TensorRole.FFN_GATE, TensorRole.FFN_UP, TensorRole.FFN_DOWN):
            x = self.expert_x(expert_index)
            half = self.expert_width / 2
            if role == TensorRole.FFN_GATE:
                return Region(x, 0.0, z + STAGE_FFN_GATE_UP, half, h, BLOCK_DEPTH)
            if role == TensorRole.FFN_UP:
                return Region(x + half, 0.0, z + STAGE_FFN_GATE_UP, half, h, BLOCK_DEPTH)
            return Region(x, 0.0, z + STAGE_FFN_DOWN, self.expert_width, h, BLOCK_DEPTH)

        sub = self.ffn_width / 3 - COMPONENT_GAP * 0.3
        ffn_h = h * min(self.ffn_mult / 4, 1.5)
        pair = sub * 2 + COMPONENT_GAP * 0.3

        if role == TensorRole.FFN_GATE:
            return Region(-pair / 2, 0.0, z + STAGE_FFN_GATE_UP, sub, ffn_h, BLOCK_DEPTH)
        if role == TensorRole.FFN_UP:
            x = -pair / 2 + sub + COMPONENT_GAP * 0.3
            return Region(x, 0.0, z + STAGE_FFN_GATE_UP, sub, ffn_h, BLOCK_DEPTH)
        if role == TensorRole.FFN_DOWN:
            return Region(-sub / 2, 0.0, z + STAGE_FFN_DOWN, sub, ffn_h, BLOCK_DEPTH)
        if role == TensorRole.FFN_OTHER:
            return Region(ffn_x, 0.0, z + STAGE_FFN_GATE_UP, self.ffn_width, h, BLOCK_DEPTH)

        # unrecognized: off to the side, at the layer's QKV depth when it has one
        fallback_z = z + STAGE_QKV if layer_index >= 0 else end + 3.0
        return Region(-3.0, -3.0, fallback_z, 6.0, 1.0, BLOCK_DEPTH)


def allocate_points(
    tensors: Sequence[TensorInfo],
    target: int,
    min_points: int = MIN_POINTS_PER_TENSOR,
) -> list[int]:
    """
    Split a point budget across tensors in proportion to their sizes.

    Every tensor gets at least ``min_points``. Tensors whose proportional
    share falls under the floor are pinned to it and the rest of the budget
    is shared again among the others until no new tensor drops under the
    floor. Largest-remainder rounding then makes the total exactly
    ``target``. When ``target`` cannot cover the floor for every tensor,
    each tensor gets the floor.

    Args:
        tensors: Tensors in file order
        target: Requested total number of points
        min_points: Per-tensor floor

    Returns:
        Point count per tensor, in the order of ``tensors``
    """
    n = len(tensors)
    if n == 0:
        return []
    min_points = max(0, min_points)
    if target <= n * min_points:
        return [min_points] * n

    sizes = np.array([max(t.n_elements, 0) for t in tensors], dtype=np.float64)
    pinned = np.zeros(n, dtype=bool)
    while True:
        free = ~pinned
        budget = target - min_points * int(pinned.sum())
        weight = sizes[free].sum()
        shares = np.full(n, float(min_points))
        if weight > 0:
            shares[free] = sizes[free] * (budget / weight)
        else:
            shares[free] = budget / int(free.sum())
        dropped = free & (shares < min_points)
        if not dropped.any():
            break
        pinned |= dropped

    counts = np.floor(shares).astype(np.int64)
    remainder = int(target - counts.sum())
    if remainder > 0:
        order = np.argsort(counts - shares, kind="stable")
        counts[order[:remainder]] += 1
    return [int(c) for c in counts]


def tensor_grid(tensor: TensorInfo) -> tuple[int, int]:
    """(rows, cols) of a tensor: ``dims[1]`` and ``dims[0]``, 1 when absent."""
    dims = tensor.dims
    cols = int(dims[0]) if len(dims) >= 1 and dims[0] > 0 else 1
    rows = int(dims[1]) if len(dims) >= 2 and dims[1] > 0 else 1
    return rows, cols


def place_points(region: Region, tensor: TensorInfo, count: int, rng: np.random.Generator) -> np.ndarray:
    """
    Positions of a tensor's points inside its region.

    Point ``i`` stands for element ``floor(i * n / count)``; that element's
    row and column are normalized to [0, 1] (0.5 on a single-row or
    single-column axis) and mapped onto the box, with jitter that shrinks as
    the grid gets denser. Higher dimensions wrap onto the same 2D grid.

    Returns:
        float32 array of shape ``(count, 3)``
    """
    if count <= 0:
        return np.empty((0, 3), dtype=np.float32)

    rows, cols = tensor_grid(tensor)
    n = tensor.n_elements
    elements = sample_indices(n, count) if n > 0 else np.zeros(count, dtype=np.int64)

    row = (elements // cols) % rows
    col = elements % cols
    row_t = row / (rows - 1) if rows > 1 else np.full(count, 0.5)
    col_t = col / (cols - 1) if cols > 1 else np.full(count, 0.5)

    jitter = rng.random((count, 3)) - 0.5

    out = np.empty((count, 3), dtype=np.float32)
    out[:, 0] = region.x + (col_t + jitter[:, 0] * XY_JITTER / cols) * region.width
    out[:, 1] = region.y + (row_t + jitter[:, 1] * XY_JITTER / rows) * region.height
    out[:, 2] = region.z + jitter[:, 2] * Z_JITTER * region.depth
    return out
