"""
Model session: one open model file and the latest generated buffers.

At most one point-cloud generation runs at a time. Every request takes a
new generation id; a request that has been overtaken by a newer one gives
up, either before it starts or while it is sampling, and returns None.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path

import numpy as np

from .config import Settings
from .connections import ConnectionGraph, generate_connections
from .gguf_reader import GGUFHeader, MemmapSource, ProgressCallback, RangeSource, parse_header_in_background
from .model_analyzer import ArchitectureInfo, extract_arch_info
from .point_cloud import ColorMode, PointCloud, generate_point_cloud, recolor
from .sampler import SampleRequest, SamplingCancelled, sample_tensors

logger = logging.getLogger(__name__)


class ModelSession:
    """
    Drives the pipeline for one model file.

    Args:
        source: Range source of the model file
        settings: Tunables, defaults when omitted
        seed: Seed of the random generator used when a call passes none
    """

    def __init__(self, source: RangeSource, settings: Settings | None = None, seed: int | None = None):
        self.source = source
        self.settings = settings or Settings()
        self.seed = seed

        self.header: GGUFHeader | None = None
        self.arch: ArchitectureInfo | None = None
        self.cloud: PointCloud | None = None
        self.graph: ConnectionGraph | None = None
        self._samples: list[np.ndarray | None] | None = None

        self._state_lock = threading.Lock()
        self._generate_lock = threading.Lock()
        self._latest_request = 0

    @classmethod
    def open(cls, path: str | Path, settings: Settings | None = None, seed: int | None = None) -> ModelSession:
        return cls(MemmapSource(path), settings, seed)

    def _rng(self, seed: int | None) -> np.random.Generator:
        return np.random.default_rng(seed if seed is not None else self.seed)

    def _require_loaded(self) -> None:
        if self.header is None or self.arch is None:
            raise RuntimeError("No model loaded; call load() first")

    def load(self, on_progress: ProgressCallback | None = None) -> GGUFHeader:
        """Parse the header off the calling thread and derive the architecture."""
        header = parse_header_in_background(self.source, on_progress, self.settings)
        arch = extract_arch_info(header.metadata)
        with self._state_lock:
            self.header = header
            self.arch = arch
            self.cloud = None
            self.graph = None
            self._samples = None
        logger.info(
            f"Loaded {arch.name} ({arch.architecture}): {header.tensor_count} tensors, {arch.block_count} layers"
        )
        return header

    @property
    def latest_request(self) -> int:
        """Generation id of the most recent :meth:`generate` call."""
        return self._latest_request

    def _is_superseded(self, generation: int) -> bool:
        return generation != self._latest_request

    def generate(
        self,
        target_points: int | None = None,
        color_mode: ColorMode = ColorMode.TENSOR,
        on_progress: ProgressCallback | None = None,
        seed: int | None = None,
    ) -> PointCloud | None:
        """
        Build a new point cloud and make it current.

        Returns:
            The point cloud, or None when a newer request overtook this one
        """
        self._require_loaded()
        with self._state_lock:
            self._latest_request += 1
            generation = self._latest_request

        with self._generate_lock:
            if self._is_superseded(generation):
                logger.debug(f"Generation {generation} superseded before start")
                return None
            try:
                cloud, samples = generate_point_cloud(
                    self.source,
                    self.header,
                    self.arch,
                    target_points,
                    ColorMode(color_mode),
                    self.settings,
                    self._rng(seed),
                    on_progress,
                    is_cancelled=lambda: self._is_superseded(generation),
                    generation=generation,
                )
            except SamplingCancelled:
                logger.debug(f"Generation {generation} superseded while sampling")
                return None

            with self._state_lock:
                if self._is_superseded(generation):
                    return None
                self.cloud = cloud
                self.graph = None
                self._samples = samples
            return cloud

    def recolor(
        self,
        color_mode: ColorMode,
        on_progress: ProgressCallback | None = None,
        seed: int | None = None,
    ) -> PointCloud:
        """Recolor the current point cloud without moving any point."""
        if self.cloud is None:
            raise RuntimeError("No point cloud to recolor; call generate() first")
        color_mode = ColorMode(color_mode)

        with self._generate_lock:
            cloud = self.cloud
            if color_mode == ColorMode.WEIGHT and self._samples is None:
                self._samples = sample_tensors(
                    self.source,
                    self.header.data_offset,
                    [SampleRequest(r.tensor, r.point_count) for r in cloud.regions],
                    max_workers=self.settings.sample_workers,
                    max_batch_blocks=self.settings.max_batch_blocks,
                    on_progress=on_progress,
                )
            return recolor(cloud, color_mode, self.arch, self._samples, self._rng(seed))

    def connections(self, density: float | None = None, seed: int | None = None) -> ConnectionGraph | None:
        """
        Build the connection graph of the current point cloud.

        Returns:
            The graph, or None when the point cloud was replaced while the
            graph was being built
        """
        cloud = self.cloud
        if cloud is None:
            raise RuntimeError("No point cloud to connect; call generate() first")
        density = self.settings.connection_density if density is None else density

        graph = generate_connections(cloud, density, self._rng(seed))
        with self._state_lock:
            if self.cloud is None or self.cloud.generation != graph.generation:
                logger.debug(f"Discarding connections of stale generation {graph.generation}")
                return None
            self.graph = graph
        return graph
