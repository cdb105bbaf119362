"""
Convert one map of a WAD file into a binary glTF scene.

Pipeline:
1. Read the WAD into memory and parse its lump directory.
2. Decode PLAYPAL/COLORMAP and build the texture catalog (patches, flats,
   composite wall textures).
3. Decode the map's level graph, including its GL node lumps.
4. Generate floor/ceiling meshes and wall/slope quads per sector.
5. Write `<output-dir>/<MAP>.glb`, embedding every referenced texture.

Usage:
    wad2glb doom.wad --map E1M1 --output-dir out/
    wad2glb doom2.wad --map MAP01 --dump-textures --verbose
"""

from __future__ import annotations

import argparse
import logging
import re
import sys
from pathlib import Path
from typing import Iterable, Optional

from .generator import generate_level
from .glb_writer import GlbValidationError, GlbWriter
from .level import load_level
from .palette import ColorTables
from .textures import TextureCatalog, TextureDecodeError
from .wad import Wad, WadError

DEFAULT_MAP = "E1M1"
TEXTURE_DUMP_DIR = "textures"

UNSAFE_FILENAME_PATTERN = re.compile(r"[^A-Za-z0-9_-]+")


def parse_args(argv: Iterable[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Convert a WAD map into a binary glTF (.glb) scene.",
    )
    parser.add_argument(
        "input_path",
        type=Path,
        help="WAD file to read (IWAD or PWAD with GL nodes).",
    )
    parser.add_argument(
        "--map",
        dest="map_name",
        default=DEFAULT_MAP,
        help=f"Map marker to convert (default: {DEFAULT_MAP}).",
    )
    parser.add_argument(
        "--output-dir",
        type=Path,
        default=Path("."),
        help="Directory for the .glb file (default: current directory).",
    )
    parser.add_argument(
        "--dump-textures",
        action="store_true",
        help=f"Also write every catalog texture as PNG under <output-dir>/{TEXTURE_DUMP_DIR}/.",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging.",
    )
    return parser.parse_args(list(argv))


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )
    logging.getLogger("PIL").setLevel(logging.INFO)


def texture_filename(texture_id: int, name: str) -> str:
    safe_name = UNSAFE_FILENAME_PATTERN.sub("_", name).strip("_") or "texture"
    return f"{texture_id}_{safe_name}.png"


def dump_textures(catalog: TextureCatalog, output_dir: Path) -> int:
    texture_dir = output_dir / TEXTURE_DUMP_DIR
    texture_dir.mkdir(parents=True, exist_ok=True)

    written = 0
    for texture_id, texture in catalog:
        texture.to_image().save(texture_dir / texture_filename(texture_id, texture.name))
        written += 1

    logging.info("Dumped %d textures to %s", written, texture_dir)
    return written


def convert(
    input_path: Path,
    map_name: str = DEFAULT_MAP,
    output_dir: Path = Path("."),
    dump: bool = False,
) -> Path:
    wad = Wad.parse(input_path.read_bytes())
    logging.info("Loaded %s (%d lumps)", input_path, len(wad))

    colors = ColorTables.from_wad(wad)
    catalog = TextureCatalog.from_wad(wad, colors)

    output_dir.mkdir(parents=True, exist_ok=True)
    if dump:
        dump_textures(catalog, output_dir)

    level = load_level(wad, map_name)
    geometry = generate_level(level, catalog)

    writer = GlbWriter(catalog, geometry.queue)
    writer.add_level(geometry)
    payload = writer.build()

    output_path = output_dir / f"{map_name}.glb"
    output_path.write_bytes(payload)
    logging.info("Wrote %s (%d bytes)", output_path, len(payload))
    return output_path


def main(argv: Optional[Iterable[str]] = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)
    configure_logging(args.verbose)

    try:
        convert(args.input_path, args.map_name, args.output_dir, args.dump_textures)
    except (WadError, TextureDecodeError, GlbValidationError, OSError) as exc:
        logging.error("Conversion of %s failed: %s", args.input_path, exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
