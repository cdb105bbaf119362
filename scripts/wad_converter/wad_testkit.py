"""Builders for small in-memory WAD files used by the test modules."""

from __future__ import annotations

import struct
from typing import Iterable, List, Optional, Sequence, Tuple

from .wad import DIRECTORY_ENTRY_FORMAT, HEADER_FORMAT, HEADER_SIZE

Lump = Tuple[str, bytes]
Post = Tuple[int, bytes]


def lump_name(name: str) -> bytes:
    return name.encode("ascii").ljust(8, b"\x00")[:8]


def build_wad(lumps: Sequence[Lump], magic: bytes = b"IWAD") -> bytes:
    """Payloads first, directory last, like the usual WAD tools write it."""
    payload = bytearray()
    directory = bytearray()
    for name, data in lumps:
        offset = HEADER_SIZE + len(payload)
        payload += data
        directory += struct.pack(DIRECTORY_ENTRY_FORMAT, offset, len(data), lump_name(name))
    header = struct.pack(HEADER_FORMAT, magic, len(lumps), HEADER_SIZE + len(payload))
    return header + bytes(payload) + bytes(directory)


# ---------------------------------------------------------------------------
# Resource lumps
# ---------------------------------------------------------------------------

def grey_palette_lump(count: int = 1) -> bytes:
    """Palette index i -> RGB (i, i, i)."""
    return bytes(c for i in range(256) for c in (i, i, i)) * count


def identity_colormap_lump(count: int = 34) -> bytes:
    return bytes(range(256)) * count


def flat_lump(index: int) -> bytes:
    return bytes([index]) * (64 * 64)


def patch_lump(columns: Sequence[Sequence[Post]], height: int) -> bytes:
    """Column/post picture; each post is (topdelta, pixel indices)."""
    width = len(columns)
    header_size = 8 + 4 * width
    body = bytearray()
    offsets: List[int] = []
    for posts in columns:
        offsets.append(header_size + len(body))
        for top_delta, pixels in posts:
            body += bytes([top_delta, len(pixels), 0]) + pixels + b"\x00"
        body += b"\xff"
    header = struct.pack("<HHhh", width, height, 0, 0) + struct.pack(f"<{width}I", *offsets)
    return header + bytes(body)


def solid_patch_lump(width: int, height: int, index: int) -> bytes:
    return patch_lump([[(0, bytes([index]) * height)] for _ in range(width)], height)


def pnames_lump(names: Sequence[str]) -> bytes:
    return struct.pack("<i", len(names)) + b"".join(lump_name(n) for n in names)


def texture_lump(definitions: Sequence[Tuple[str, int, int, Sequence[Tuple[int, int, int]]]]) -> bytes:
    """TEXTUREx lump from (name, width, height, [(patch index, x, y), ...])."""
    records = []
    for name, width, height, patches in definitions:
        record = struct.pack("<8siHHiH", lump_name(name), 0, width, height, 0, len(patches))
        for patch_index, x, y in patches:
            record += struct.pack("<hhHHH", x, y, patch_index, 0, 0)
        records.append(record)

    offsets = []
    cursor = 4 + 4 * len(records)
    for record in records:
        offsets.append(cursor)
        cursor += len(record)
    return struct.pack(f"<i{len(records)}i", len(records), *offsets) + b"".join(records)


# Palette indices of the default resources.
PATCH_A_INDEX = 10
PATCH_B_INDEX = 20
FLOOR_INDEX = 30
CEILING_INDEX = 40


def resource_lumps() -> List[Lump]:
    """PLAYPAL, COLORMAP, two patches, two flats and one composite WALL1."""
    return [
        ("PLAYPAL", grey_palette_lump()),
        ("COLORMAP", identity_colormap_lump()),
        ("P_START", b""),
        ("PATCHA", solid_patch_lump(4, 4, PATCH_A_INDEX)),
        ("PATCHB", solid_patch_lump(2, 2, PATCH_B_INDEX)),
        ("P_END", b""),
        ("F_START", b""),
        ("FLOOR1", flat_lump(FLOOR_INDEX)),
        ("CEIL1", flat_lump(CEILING_INDEX)),
        ("F_END", b""),
        ("PNAMES", pnames_lump(["PATCHA", "PATCHB"])),
        ("TEXTURE1", texture_lump([("WALL1", 4, 4, [(0, 0, 0), (1, 1, 1)])])),
    ]


# ---------------------------------------------------------------------------
# Map lumps
# ---------------------------------------------------------------------------

def vertexes_lump(points: Iterable[Tuple[int, int]]) -> bytes:
    return b"".join(struct.pack("<hh", x, y) for x, y in points)


def gl_vert_lump(points: Iterable[Tuple[float, float]] = ()) -> bytes:
    """Version 2 GL vertices (16.16 fixed point)."""
    return b"gNd2" + b"".join(
        struct.pack("<ii", int(x * 65536), int(y * 65536)) for x, y in points
    )


def linedefs_lump(records: Iterable[Tuple[int, int, int, int, int]]) -> bytes:
    """(start, end, flags, front sidedef, back sidedef); -1 for no sidedef (stored as 0xFFFF)."""
    return b"".join(
        struct.pack("<HHHHHHH", start, end, flags, 0, 0, front & 0xFFFF, back & 0xFFFF)
        for start, end, flags, front, back in records
    )


def sidedefs_lump(records: Iterable[Tuple[int, int, str, str, str, int]]) -> bytes:
    """(x offset, y offset, upper, lower, middle, sector)."""
    return b"".join(
        struct.pack(
            "<hh8s8s8sH", x, y, lump_name(upper), lump_name(lower), lump_name(middle), sector
        )
        for x, y, upper, lower, middle, sector in records
    )


def sectors_lump(records: Iterable[Tuple[int, int, str, str]]) -> bytes:
    """(floor height, ceiling height, floor flat, ceiling flat)."""
    return b"".join(
        struct.pack("<hh8s8shHH", floor, ceiling, lump_name(ff), lump_name(cf), 160, 0, 0)
        for floor, ceiling, ff, cf in records
    )


def gl_segs_lump(records: Iterable[Tuple[int, int, Optional[int], int]]) -> bytes:
    """(start, end, linedef or None for a miniseg, side)."""
    return b"".join(
        struct.pack("<HHHHH", start, end, 0xFFFF if linedef is None else linedef, side, 0xFFFF)
        for start, end, linedef, side in records
    )


def gl_ssect_lump(records: Iterable[Tuple[int, int]]) -> bytes:
    """(segment count, first segment)."""
    return b"".join(struct.pack("<HH", count, first) for count, first in records)


def map_lumps(
    name: str,
    vertices: Sequence[Tuple[int, int]],
    linedefs: Sequence[Tuple[int, int, int, int, int]],
    sidedefs: Sequence[Tuple[int, int, str, str, str, int]],
    sectors: Sequence[Tuple[int, int, str, str]],
    segments: Sequence[Tuple[int, int, Optional[int], int]],
    sub_sectors: Sequence[Tuple[int, int]],
    gl_vertices: Sequence[Tuple[float, float]] = (),
) -> List[Lump]:
    return [
        (name, b""),
        ("THINGS", b""),
        ("LINEDEFS", linedefs_lump(linedefs)),
        ("SIDEDEFS", sidedefs_lump(sidedefs)),
        ("VERTEXES", vertexes_lump(vertices)),
        ("SEGS", b""),
        ("SSECTORS", b""),
        ("NODES", b""),
        ("SECTORS", sectors_lump(sectors)),
        ("REJECT", b""),
        ("BLOCKMAP", b""),
        (f"GL_{name}", b""),
        ("GL_VERT", gl_vert_lump(gl_vertices)),
        ("GL_SEGS", gl_segs_lump(segments)),
        ("GL_SSECT", gl_ssect_lump(sub_sectors)),
        ("GL_NODES", b""),
    ]


def single_room_map(name: str = "E1M1", flags: int = 0) -> List[Lump]:
    """One 128x128 sector, four single-sided walls, one sub-sector."""
    return map_lumps(
        name,
        vertices=[(0, 0), (0, 128), (128, 128), (128, 0)],
        linedefs=[(i, (i + 1) % 4, flags, i, -1) for i in range(4)],
        sidedefs=[(0, 0, "-", "-", "WALL1", 0) for _ in range(4)],
        sectors=[(0, 128, "FLOOR1", "CEIL1")],
        segments=[(i, (i + 1) % 4, i, 0) for i in range(4)],
        sub_sectors=[(4, 0)],
    )


def two_room_map(
    name: str = "E1M1",
    front_floor: int = 0,
    back_floor: int = 16,
    front_ceiling: int = 128,
    back_ceiling: int = 128,
    shared_flags: int = 0x0004,
) -> List[Lump]:
    """Two 128x128 sectors side by side joined by two-sided linedef 2.

    Sector 0 spans x 0..128 and sector 1 spans x 128..256. Linedef 2 runs
    from (128, 128) to (128, 0), front side in sector 0, back side in sector 1.
    """
    return map_lumps(
        name,
        vertices=[(0, 0), (0, 128), (128, 128), (128, 0), (256, 128), (256, 0)],
        linedefs=[
            (0, 1, 0x0001, 0, -1),
            (1, 2, 0x0001, 1, -1),
            (2, 3, shared_flags, 2, 3),
            (3, 0, 0x0001, 4, -1),
            (2, 4, 0x0001, 5, -1),
            (4, 5, 0x0001, 6, -1),
            (5, 3, 0x0001, 7, -1),
        ],
        sidedefs=[
            (0, 0, "-", "-", "WALL1", 0),
            (0, 0, "-", "-", "WALL1", 0),
            (0, 0, "WALL1", "WALL1", "-", 0),
            (0, 0, "-", "-", "-", 1),
            (0, 0, "-", "-", "WALL1", 0),
            (0, 0, "-", "-", "WALL1", 1),
            (0, 0, "-", "-", "WALL1", 1),
            (0, 0, "-", "-", "WALL1", 1),
        ],
        sectors=[
            (front_floor, front_ceiling, "FLOOR1", "CEIL1"),
            (back_floor, back_ceiling, "FLOOR1", "CEIL1"),
        ],
        segments=[
            (0, 1, 0, 0),
            (1, 2, 1, 0),
            (2, 3, 2, 0),
            (3, 0, 3, 0),
            (3, 2, 2, 1),
            (2, 4, 4, 0),
            (4, 5, 5, 0),
            (5, 3, 6, 0),
        ],
        sub_sectors=[(4, 0), (4, 4)],
    )


def build_test_wad(level_lumps: Optional[Sequence[Lump]] = None, magic: bytes = b"IWAD") -> bytes:
    """Default resources plus a map (single room when none is given)."""
    return build_wad(resource_lumps() + list(level_lumps or single_room_map()), magic=magic)
