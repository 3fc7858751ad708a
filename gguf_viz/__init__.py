"""
gguf-viz - GGUF Model Structure Visualizer
Parses GGUF model files and lays their tensors out as a 3D point cloud.
"""

__version__ = "1.0.0"

from .config import Settings
from .cursor import BinaryCursor, GGUFFormatError, InsufficientDataError
from .gguf_reader import (
    BytesSource,
    GGUFHeader,
    MemmapSource,
    RangeReadError,
    TensorInfo,
    parse_header,
    parse_header_in_background,
    read_header,
)
from .model_analyzer import ArchitectureInfo, describe_model, extract_arch_info
from .sampler import sample_tensor, sample_tensors
from .classifier import TensorClassification, TensorRole, classify_tensor
from .layout import Layout, Region, allocate_points, place_points
from .point_cloud import ColorMode, PointCloud, build_point_cloud, compute_layer_bounds, recolor
from .connections import ConnectionGraph, generate_connections
from .session import ModelSession
from .exporter import PointCloudExporter

__all__ = [
    "Settings",
    "BinaryCursor", "GGUFFormatError", "InsufficientDataError",
    "BytesSource", "GGUFHeader", "MemmapSource", "RangeReadError", "TensorInfo",
    "parse_header", "parse_header_in_background", "read_header",
    "ArchitectureInfo", "describe_model", "extract_arch_info",
    "sample_tensor", "sample_tensors",
    "TensorClassification", "TensorRole", "classify_tensor",
    "Layout", "Region", "allocate_points", "place_points",
    "ColorMode", "PointCloud", "build_point_cloud", "compute_layer_bounds", "recolor",
    "ConnectionGraph", "generate_connections",
    "ModelSession",
    "PointCloudExporter",
]
