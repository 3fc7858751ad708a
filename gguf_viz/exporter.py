"""
Point Cloud Exporter
Writes the renderer-facing buffers and the region table to disk.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any

import numpy as np

from . import __version__
from .connections import ConnectionGraph
from .point_cloud import PointCloud, compute_layer_bounds

logger = logging.getLogger(__name__)


class PointCloudExporter:
    """Export a generated point cloud (and optionally its connections)."""

    def __init__(self, cloud: PointCloud, summary: dict[str, Any] | None = None, graph: ConnectionGraph | None = None):
        """
        Initialize exporter.

        Args:
            cloud: Point cloud to export
            summary: Model summary, as returned by ``describe_model``
            graph: Connection graph of the same generation
        """
        if graph is not None and graph.generation != cloud.generation:
            raise ValueError(
                f"Connection graph belongs to generation {graph.generation}, point cloud to {cloud.generation}"
            )
        self.cloud = cloud
        self.summary = summary or {}
        self.graph = graph

    def to_dict(self) -> dict[str, Any]:
        """Region table, layer bounds and model summary."""
        data = {
            "export_info": {
                "timestamp": datetime.now().isoformat(),
                "tool_version": __version__,
            },
            "model": self.summary,
            "point_count": self.cloud.point_count,
            "color_mode": self.cloud.color_mode.value,
            "generation": self.cloud.generation,
            "regions": [r.to_dict() for r in self.cloud.regions],
            "layer_bounds": [b.to_dict() for b in compute_layer_bounds(self.cloud.regions)],
        }
        if self.graph is not None:
            data["line_count"] = self.graph.line_count
        return data

    def to_json(self, output_path: str | Path | None = None, indent: int = 2) -> str:
        """
        Export the region table to JSON.

        Args:
            output_path: Path to save JSON file (optional)
            indent: JSON indentation level

        Returns:
            JSON string
        """
        json_str = json.dumps(self.to_dict(), indent=indent, default=str)
        if output_path:
            Path(output_path).write_text(json_str, encoding="utf-8")
            logger.info(f"Exported region table to: {output_path}")
        return json_str

    def to_npz(self, output_path: str | Path) -> Path:
        """
        Export the position, color and line buffers to a compressed ``.npz``.

        Arrays: ``positions`` and ``colors`` ``(N, 3)``, ``region_ranges``
        ``(T, 2)`` start/end per tensor, and with a graph ``line_positions``
        and ``line_colors`` ``(2L, 3)``.
        """
        output_path = Path(output_path)
        arrays = {
            "positions": self.cloud.positions,
            "colors": self.cloud.colors,
            "region_ranges": np.array(
                [(r.start, r.end) for r in self.cloud.regions], dtype=np.int64
            ).reshape(-1, 2),
        }
        if self.graph is not None:
            arrays["line_positions"] = self.graph.positions
            arrays["line_colors"] = self.graph.colors

        np.savez_compressed(output_path, **arrays)
        # numpy appends .npz when the name lacks it
        if output_path.suffix != ".npz":
            output_path = output_path.with_name(output_path.name + ".npz")
        logger.info(f"Exported {self.cloud.point_count:,} points to: {output_path}")
        return output_path
