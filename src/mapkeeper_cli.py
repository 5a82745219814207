"""
Command-line entry point for MAPKEEPER.

Inspects and converts saved map files without running the live pipeline.

Usage:
    mapkeeper info map.bin                     # Print map statistics
    mapkeeper export map.bin trajectory.txt    # Keyframe trajectory (TUM)
    mapkeeper --verbose info map.bin           # Enable debug logging
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import List, Optional

from persistence import MapFormatError, load_map
from reconstruction import MapReconstructor
from trajectory import save_keyframe_trajectory_tum
from utils import get_config, setup_logging
from world_map import KeyframeDatabase, MapConfig, WorldMap

LOGGER = logging.getLogger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="MAPKEEPER - Persistent keyframe maps for visual SLAM",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  mapkeeper info map.bin                   # Print map statistics
  mapkeeper export map.bin traj.txt        # Write keyframe trajectory
  mapkeeper --config cfg.json info map.bin # Use custom mapping settings
        """,
    )

    parser.add_argument(
        "--config", "-c",
        default=None,
        help="Path to JSON configuration file",
    )
    parser.add_argument(
        "--verbose", "-V",
        action="store_true",
        help="Enable verbose/debug logging",
    )

    commands = parser.add_subparsers(dest="command", required=True)

    info = commands.add_parser("info", help="Load a map and print its statistics")
    info.add_argument("map_file", help="Saved map file")

    export = commands.add_parser("export", help="Write the keyframe trajectory in TUM format")
    export.add_argument("map_file", help="Saved map file")
    export.add_argument("output", help="Output trajectory file")

    return parser.parse_args(argv)


def reconstruct_map(map_file: str, config: dict) -> Optional[WorldMap]:
    """Load and rebuild a map file, or None if it cannot be opened."""
    decoded = load_map(map_file)
    if decoded is None:
        return None

    world_map = WorldMap(MapConfig.from_dict(config.get("mapping")))
    report = MapReconstructor(
        world_map,
        KeyframeDatabase(),
        poll_interval=config.get("reconstruction_poll_interval", 0.03),
    ).reconstruct(decoded)
    LOGGER.info("Reconstructed %s", report.summary())
    return world_map


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    # Set up logging
    log_level = logging.DEBUG if args.verbose else logging.INFO
    setup_logging(level=log_level)

    config = get_config(args.config)

    try:
        world_map = reconstruct_map(args.map_file, config)
    except MapFormatError as e:
        LOGGER.error("Invalid map file %s: %s", args.map_file, e)
        return 1
    if world_map is None:
        LOGGER.error("Could not open map file %s", args.map_file)
        return 1

    if args.command == "info":
        for key, value in world_map.get_statistics().items():
            print(f"{key}: {value}")
    elif args.command == "export":
        try:
            count = save_keyframe_trajectory_tum(world_map, args.output)
        except OSError as e:
            LOGGER.error("Cannot write trajectory %s: %s", args.output, e)
            return 1
        print(f"Wrote {count} keyframe poses to {args.output}")

    return 0


if __name__ == "__main__":
    sys.exit(main())
