#!/usr/bin/env python3
"""
gguf-viz CLI
Command-line interface for inspecting GGUF models and exporting their
point-cloud layout.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from tqdm import tqdm

from . import __version__
from .classifier import classify_tensor, known_name
from .config import Settings
from .model_analyzer import describe_model, format_parameter_count, tensor_type_distribution
from .point_cloud import ColorMode
from .session import ModelSession
from .exporter import PointCloudExporter

logger = logging.getLogger("gguf-viz")


class ProgressBars:
    """Progress callback that keeps one tqdm bar per phase."""

    def __init__(self, disable: bool = False):
        self.disable = disable
        self.bars: dict[str, tqdm] = {}

    def __call__(self, phase: str, current: int, total: int) -> None:
        bar = self.bars.get(phase)
        if bar is None:
            bar = tqdm(total=total, desc=phase.capitalize(), unit="item", leave=False, disable=self.disable)
            self.bars[phase] = bar
        bar.update(current - bar.n)

    def close(self) -> None:
        for bar in self.bars.values():
            bar.close()
        self.bars.clear()


def print_header(title: str):
    """Print a formatted header."""
    print("\n" + "=" * 60)
    print(f"  {title}")
    print("=" * 60)


def print_section(title: str):
    """Print a section header."""
    print(f"\n{title}")
    print("-" * 60)


def load_session(args) -> ModelSession:
    settings = Settings.from_env().with_overrides(
        parse_timeout=getattr(args, "timeout", None),
        sample_workers=getattr(args, "workers", None),
        min_points_per_tensor=getattr(args, "min_points", None),
        target_points=getattr(args, "points", None),
        connection_density=getattr(args, "density", None),
    )
    logger.debug(f"Settings: {settings}")
    session = ModelSession.open(args.model, settings, seed=getattr(args, "seed", None))
    progress = ProgressBars(disable=args.no_progress)
    try:
        session.load(on_progress=progress)
    finally:
        progress.close()
    return session


def command_info(args):
    """Display model information."""
    try:
        session = load_session(args)
        header, arch = session.header, session.arch
        info = describe_model(header, arch, session.source.size)

        print_header("MODEL INFORMATION")
        print(f"\nName: {info['name']}")
        print(f"Architecture: {info['architecture']} ({info['model_type']})")
        print(f"File: {Path(args.model).name}")
        print(f"Size: {info['file_size'] / 1e9:.2f} GB")
        print(f"GGUF Version: {info['gguf_version']}")
        print(f"Quantization: {info['quantization']}")
        print(f"Parameters: {info['parameter_count_formatted']} ({info['parameter_count']:,})")
        print(f"Tensors: {info['tensor_count']}")

        print_section("Architecture Details")
        for key in ("layers", "context_length", "embedding_length", "feed_forward_length",
                    "head_count", "head_count_kv", "head_dim", "vocab_size",
                    "expert_count", "expert_used_count", "rope_freq_base"):
            if key in info:
                print(f"  {key}: {info[key]}")

        print_section("Tensor Type Distribution")
        for qtype, count in sorted(tensor_type_distribution(header.tensors).items()):
            print(f"  {qtype}: {count}")

        if args.metadata:
            print_section("Metadata")
            for key, value in sorted(header.metadata.to_dict().items()):
                if isinstance(value, list):
                    value_str = f"list with {len(value)} items"
                elif isinstance(value, str) and len(value) > 60:
                    value_str = value[:57] + "..."
                else:
                    value_str = str(value)
                print(f"  {key}: {value_str}")

        print("\n" + "=" * 60 + "\n")

    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


def command_tensors(args):
    """List tensors with their classification."""
    try:
        session = load_session(args)
        tensors = session.header.tensors

        print_header("TENSORS")
        print("\n{:<40} {:<10} {:<22} {:>10}  {}".format("Name", "Type", "Shape", "Params", "Role"))
        print("-" * 110)

        shown = tensors if args.limit is None else tensors[:args.limit]
        for tensor in shown:
            cls = classify_tensor(tensor.name)
            print("{:<40} {:<10} {:<22} {:>10}  {}".format(
                tensor.name[:40],
                tensor.type_name,
                "x".join(str(d) for d in tensor.dims),
                format_parameter_count(tensor.n_elements),
                known_name(cls),
            ))
        if len(shown) < len(tensors):
            print(f"\n  ... and {len(tensors) - len(shown)} more tensors")

        print("\n" + "=" * 60 + "\n")

    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


def command_export(args):
    """Generate the point cloud and export it."""
    try:
        session = load_session(args)

        progress = ProgressBars(disable=args.no_progress)
        try:
            cloud = session.generate(args.points, ColorMode(args.color_mode), on_progress=progress)
        finally:
            progress.close()

        graph = session.connections(args.density) if args.connections else None

        summary = describe_model(session.header, session.arch, session.source.size)
        exporter = PointCloudExporter(cloud, summary, graph)

        output = Path(args.output) if args.output else Path(args.model).with_suffix("")
        output.parent.mkdir(parents=True, exist_ok=True)
        npz_path = exporter.to_npz(output.with_name(output.name + ".npz"))
        json_path = output.with_name(output.name + ".json")
        exporter.to_json(json_path, indent=args.indent)

        print(f"Points: {cloud.point_count:,} in {len(cloud.regions)} tensor regions")
        if graph is not None:
            print(f"Connections: {graph.line_count:,} lines")
        print(f"\nSuccessfully exported to: {npz_path} and {json_path}")

    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


def main(argv: list[str] | None = None):
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="gguf-viz - Visualize the structure of GGUF model files",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Show model information
  %(prog)s info model.gguf

  # Include all metadata keys
  %(prog)s info model.gguf --metadata

  # List the first 50 tensors with their roles
  %(prog)s tensors model.gguf --limit 50

  # Export 2M points colored by weight value, with connections
  %(prog)s export model.gguf -n 2000000 -c weight --connections -o out/model
        """
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("--no-progress", action="store_true", help="Hide progress bars")
    parser.add_argument("--timeout", type=float, help="Header parse timeout in seconds")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Info command
    info_parser = subparsers.add_parser("info", help="Display model information")
    info_parser.add_argument("model", help="Path to GGUF model file")
    info_parser.add_argument("-m", "--metadata", action="store_true",
                             help="List all metadata keys")

    # Tensors command
    tensors_parser = subparsers.add_parser("tensors", help="List tensors and their roles")
    tensors_parser.add_argument("model", help="Path to GGUF model file")
    tensors_parser.add_argument("-l", "--limit", type=int, help="Show at most this many tensors")

    # Export command
    export_parser = subparsers.add_parser("export", help="Export the point cloud")
    export_parser.add_argument("model", help="Path to GGUF model file")
    export_parser.add_argument("-o", "--output",
                               help="Output path prefix (default: model path without extension)")
    export_parser.add_argument("-n", "--points", type=int, help="Target number of points")
    export_parser.add_argument("-c", "--color-mode", choices=[m.value for m in ColorMode],
                               default=ColorMode.TENSOR.value, help="Point coloring")
    export_parser.add_argument("--min-points", type=int, help="Minimum points per tensor")
    export_parser.add_argument("--connections", action="store_true",
                               help="Also export dataflow connection lines")
    export_parser.add_argument("-d", "--density", type=float, help="Connection density multiplier")
    export_parser.add_argument("-w", "--workers", type=int, help="Concurrent tensor reads while sampling")
    export_parser.add_argument("-s", "--seed", type=int, help="Random seed")
    export_parser.add_argument("-i", "--indent", type=int, default=2,
                               help="JSON indentation level")

    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    # Route to appropriate command
    if args.command == "info":
        command_info(args)
    elif args.command == "tensors":
        command_tensors(args)
    elif args.command == "export":
        command_export(args)


if __name__ == "__main__":
    main()
