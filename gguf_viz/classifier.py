"""
Tensor classification by name.

GGUF tensor names follow the llama.cpp convention, e.g.
``blk.12.attn_q.weight`` or ``blk.3.ffn_down_exps.weight``. The role,
layer and expert of a tensor are read from its name alone.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType


class TensorRole(str, Enum):
    TOKEN_EMBEDDING = "embedding"
    OUTPUT = "output"
    OUTPUT_NORM = "output_norm"
    ATTN_NORM = "attn_norm"
    ATTN_Q = "attn_q"
    ATTN_K = "attn_k"
    ATTN_V = "attn_v"
    ATTN_OUT = "attn_out"
    ATTN_OTHER = "attn_other"
    FFN_NORM = "ffn_norm"
    FFN_GATE = "ffn_gate"
    FFN_UP = "ffn_up"
    FFN_DOWN = "ffn_down"
    FFN_OTHER = "ffn_other"
    MOE_ROUTER = "moe_router"
    MOE_GATE = "moe_gate"
    MOE_UP = "moe_up"
    MOE_DOWN = "moe_down"
    NORM = "norm"
    OTHER = "other"


@dataclass(frozen=True)
class TensorClassification:
    role: TensorRole
    layer_index: int = -1
    expert_index: int = -1

    @property
    def is_global(self) -> bool:
        return self.layer_index < 0


# first match wins: per-head norms before Q/K, routed experts before dense FFN,
# per-layer projections before the LM head ("attn_output.weight")
_ROLE_PATTERNS: tuple[tuple[TensorRole, tuple[str, ...]], ...] = (
    (TensorRole.TOKEN_EMBEDDING, ("token_embd", "tok_embd")),
    (TensorRole.OUTPUT_NORM, ("output_norm", "result_norm")),
    (TensorRole.ATTN_OTHER, ("attn_q_norm", "attn_k_norm")),
    (TensorRole.ATTN_Q, ("attn_q", "attn.q")),
    (TensorRole.ATTN_K, ("attn_k", "attn.k")),
    (TensorRole.ATTN_V, ("attn_v", "attn.v")),
    (TensorRole.ATTN_OUT, ("attn_output", "attn.output", "attn_o")),
    (TensorRole.ATTN_NORM, ("attn_norm", "attn_ln")),
    (TensorRole.MOE_ROUTER, ("ffn_gate_inp",)),
    (TensorRole.MOE_GATE, ("ffn_gate_exps",)),
    (TensorRole.MOE_UP, ("ffn_up_exps",)),
    (TensorRole.MOE_DOWN, ("ffn_down_exps",)),
    (TensorRole.FFN_GATE, ("ffn_gate",)),
    (TensorRole.FFN_UP, ("ffn_up",)),
    (TensorRole.FFN_DOWN, ("ffn_down",)),
    (TensorRole.FFN_NORM, ("ffn_norm",)),
    (TensorRole.OUTPUT, ("output.weight", "lm_head")),
    (TensorRole.ATTN_OTHER, ("attn",)),
    (TensorRole.FFN_OTHER, ("ffn",)),
    (TensorRole.NORM, ("norm",)),
)

_LAYER_RE = re.compile(r"blk\.(\d+)\.")
_EXPERT_RE = re.compile(r"ffn_(?:gate|up|down)\.(\d+)")


def classify_tensor(name: str) -> TensorClassification:
    """Role, layer index and expert index of a tensor (-1 when absent)."""
    n = name.lower()

    layer_match = _LAYER_RE.search(n)
    expert_match = _EXPERT_RE.search(n)

    role = TensorRole.OTHER
    for candidate, needles in _ROLE_PATTERNS:
        if any(needle in n for needle in needles):
            role = candidate
            break

    return TensorClassification(
        role=role,
        layer_index=int(layer_match.group(1)) if layer_match else -1,
        expert_index=int(expert_match.group(1)) if expert_match else -1,
    )


ROLE_COLORS: MappingProxyType[TensorRole, tuple[float, float, float]] = MappingProxyType({
    TensorRole.ATTN_Q:          (0.27, 0.53, 1.00),
    TensorRole.ATTN_K:          (0.27, 0.67, 1.00),
    TensorRole.ATTN_V:          (0.27, 0.80, 1.00),
    TensorRole.ATTN_OUT:        (0.40, 0.53, 0.87),
    TensorRole.ATTN_NORM:       (0.87, 0.87, 0.27),
    TensorRole.ATTN_OTHER:      (0.33, 0.60, 0.87),
    TensorRole.FFN_GATE:        (1.00, 0.53, 0.27),
    TensorRole.FFN_UP:          (1.00, 0.67, 0.27),
    TensorRole.FFN_DOWN:        (1.00, 0.40, 0.27),
    TensorRole.FFN_NORM:        (0.87, 0.87, 0.27),
    TensorRole.FFN_OTHER:       (1.00, 0.60, 0.33),
    TensorRole.MOE_ROUTER:      (0.00, 0.90, 0.85),
    TensorRole.MOE_GATE:        (0.55, 0.35, 0.95),
    TensorRole.MOE_UP:          (0.85, 0.25, 0.95),
    TensorRole.MOE_DOWN:        (0.95, 0.75, 0.10),
    TensorRole.TOKEN_EMBEDDING: (0.27, 0.87, 0.53),
    TensorRole.OUTPUT:          (0.67, 0.40, 1.00),
    TensorRole.OUTPUT_NORM:     (0.87, 0.87, 0.27),
    TensorRole.NORM:            (0.87, 0.87, 0.27),
    TensorRole.OTHER:           (0.53, 0.53, 0.60),
})

ROLE_NAMES: MappingProxyType[TensorRole, str] = MappingProxyType({
    TensorRole.TOKEN_EMBEDDING: "Token Embedding",
    TensorRole.OUTPUT:          "Output Projection (LM Head)",
    TensorRole.OUTPUT_NORM:     "Final Layer Norm",
    TensorRole.ATTN_Q:          "Attention Query",
    TensorRole.ATTN_K:          "Attention Key",
    TensorRole.ATTN_V:          "Attention Value",
    TensorRole.ATTN_OUT:        "Attention Output",
    TensorRole.ATTN_NORM:       "Pre-Attention Norm",
    TensorRole.ATTN_OTHER:      "Attention (misc)",
    TensorRole.FFN_GATE:        "FFN Gate Projection",
    TensorRole.FFN_UP:          "FFN Up Projection",
    TensorRole.FFN_DOWN:        "FFN Down Projection",
    TensorRole.FFN_NORM:        "Pre-FFN Norm",
    TensorRole.FFN_OTHER:       "FFN (misc)",
    TensorRole.MOE_ROUTER:      "MoE Router",
    TensorRole.MOE_GATE:        "MoE Expert Gate",
    TensorRole.MOE_UP:          "MoE Expert Up",
    TensorRole.MOE_DOWN:        "MoE Expert Down",
    TensorRole.NORM:            "Layer Norm",
    TensorRole.OTHER:           "Tensor",
})


def role_color(role: TensorRole) -> tuple[float, float, float]:
    return ROLE_COLORS.get(role, ROLE_COLORS[TensorRole.OTHER])


def known_name(cls: TensorClassification) -> str:
    """Display name, e.g. ``"Attention Query — Layer 3, Expert 1"``."""
    base = ROLE_NAMES.get(cls.role, cls.role.value)
    parts = []
    if cls.layer_index >= 0:
        parts.append(f"Layer {cls.layer_index}")
    if cls.expert_index >= 0:
        parts.append(f"Expert {cls.expert_index}")
    return f"{base} — {', '.join(parts)}" if parts else base
