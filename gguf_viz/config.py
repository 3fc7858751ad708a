"""
Runtime settings for gguf-viz.

Every tunable of the pipeline lives on :class:`Settings`. Values can be
overridden from the environment with ``GGUF_VIZ_<FIELD>`` variables, e.g.
``GGUF_VIZ_SAMPLE_WORKERS=4``.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields, replace
from typing import Any, Mapping

logger = logging.getLogger(__name__)

ENV_PREFIX = "GGUF_VIZ_"

MiB = 1024 * 1024


@dataclass(frozen=True)
class Settings:
    """Tunables shared by the parser, sampler, layout and CLI."""

    # header parsing
    initial_header_read: int = 10 * MiB
    header_growth: int = 4
    parse_timeout: float = 180.0

    # weight sampling
    sample_workers: int = 8
    max_batch_blocks: int = 4096

    # point cloud
    min_points_per_tensor: int = 400
    target_points: int = 1_000_000
    connection_density: float = 1.0

    def __post_init__(self):
        for f in fields(self):
            problem = _check(f.name, getattr(self, f.name))
            if problem:
                raise ValueError(f"Invalid setting {f.name}={getattr(self, f.name)!r}: {problem}")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Settings:
        """
        Build settings from defaults overridden by ``GGUF_VIZ_*`` variables.

        Variables that do not parse, or parse to an out-of-range value, are
        ignored with a warning.
        """
        env = os.environ if environ is None else environ
        overrides: dict[str, Any] = {}
        for f in fields(cls):
            name = ENV_PREFIX + f.name.upper()
            raw = env.get(name)
            if raw is None:
                continue
            caster = float if f.type in ("float", float) else int
            try:
                value = caster(raw)
            except ValueError:
                logger.warning(f"Ignoring {name}={raw!r}: not a valid {caster.__name__}")
                continue
            problem = _check(f.name, value)
            if problem:
                logger.warning(f"Ignoring {name}={raw!r}: {problem}")
                continue
            overrides[f.name] = value
        return cls(**overrides)

    def with_overrides(self, **kwargs: Any) -> Settings:
        """Return a copy with every non-None keyword applied."""
        return replace(self, **{k: v for k, v in kwargs.items() if v is not None})


# smallest accepted value per field
_MINIMUMS = {
    "initial_header_read": 1,
    "header_growth": 2,
    "sample_workers": 1,
    "max_batch_blocks": 1,
    "min_points_per_tensor": 0,
    "target_points": 0,
    "connection_density": 0,
}


def _check(name: str, value: Any) -> str | None:
    if name == "parse_timeout":
        return None if 0 < value < float("inf") else "must be a positive number of seconds"
    low = _MINIMUMS.get(name)
    if low is not None and not value >= low:
        return f"must be at least {low}"
    return None
