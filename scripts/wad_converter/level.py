"""
level.py
========

Sector / linedef / sidedef / segment graph of one map.

Ordinary map data comes from the lumps following the map marker
(THINGS, LINEDEFS, SIDEDEFS, VERTEXES, ..., SECTORS). The convex sub-sector
polygons come from the glBSP extension block that follows the ``GL_<MAP>``
marker (GL_VERT, GL_SEGS, GL_SSECT), where a segment vertex id with bit 15
set refers to GL_VERT instead of VERTEXES.
"""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Tuple

from .wad import Wad, WadError, decode_lump_name


class LevelError(WadError):
    pass


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

LINEDEF_FLAG_IMPASSABLE = 0x0001
LINEDEF_FLAG_BLOCKS_MONSTERS = 0x0002
LINEDEF_FLAG_TWO_SIDED = 0x0004
LINEDEF_FLAG_UPPER_TEXTURE_UNPEGGED = 0x0008
LINEDEF_FLAG_LOWER_TEXTURE_UNPEGGED = 0x0010
LINEDEF_FLAG_SECRET = 0x0020
LINEDEF_FLAG_BLOCKS_SOUND = 0x0040
LINEDEF_FLAG_NEVER_SHOW_ON_AUTOMAP = 0x0080
LINEDEF_FLAG_ALWAYS_SHOW_ON_AUTOMAP = 0x0100

VERT_IS_GL = 1 << 15
NO_LINEDEF = 0xFFFF
NO_SIDEDEF = 0xFFFF
NO_TEXTURE = "-"

SIDE_FRONT = 0
SIDE_BACK = 1

# Lumps that follow a map marker, in on-disk order.
MAP_LUMPS = (
    "THINGS", "LINEDEFS", "SIDEDEFS", "VERTEXES", "SEGS",
    "SSECTORS", "NODES", "SECTORS", "REJECT", "BLOCKMAP",
)
GL_LUMPS = ("GL_VERT", "GL_SEGS", "GL_SSECT", "GL_NODES", "GL_PVS")

GL_MAGIC_PREFIX = b"gNd"
GL_VERT_MAGIC_V2 = b"gNd2"
FRACUNIT = 65536.0

VERTEX_FORMAT = "<hh"                  # 4 bytes
GL_VERTEX_FORMAT = "<ii"               # 8 bytes, 16.16 fixed point
LINEDEF_FORMAT = "<HHHHHHH"            # 14 bytes
SIDEDEF_FORMAT = "<hh8s8s8sH"          # 30 bytes
SECTOR_FORMAT = "<hh8s8shHH"           # 26 bytes
GL_SEGMENT_FORMAT = "<HHHHH"           # 10 bytes (v1)
GL_SUB_SECTOR_FORMAT = "<HH"           # 4 bytes (v1)


# ---------------------------------------------------------------------------
# Level data structures
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Vertex:
    x: float
    y: float


@dataclass(frozen=True)
class Linedef:
    start_vertex: int
    end_vertex: int
    flags: int
    front_sidedef: Optional[int]
    back_sidedef: Optional[int]
    special: int = 0
    tag: int = 0

    def has_flag(self, flag: int) -> bool:
        return self.flags & flag == flag

    @property
    def two_sided(self) -> bool:
        return self.front_sidedef is not None and self.back_sidedef is not None


@dataclass(frozen=True)
class Sidedef:
    x_offset: int
    y_offset: int
    upper_texture: str
    lower_texture: str
    middle_texture: str
    sector: int


@dataclass(frozen=True)
class SubSector:
    first_segment: int
    segment_count: int

    @property
    def segment_range(self) -> range:
        return range(self.first_segment, self.first_segment + self.segment_count)


@dataclass(frozen=True)
class Segment:
    start_vertex: int
    end_vertex: int
    # None for partition-only segments (no wall behind them).
    linedef: Optional[int]
    side: int = SIDE_FRONT
    partner: int = 0xFFFF


@dataclass
class Sector:
    floor_height: float
    ceiling_height: float
    floor_texture: str
    ceiling_texture: str
    light_level: int = 255
    linedefs: List[int] = field(default_factory=list)
    sub_sectors: List[SubSector] = field(default_factory=list)


@dataclass
class Level:
    name: str
    vertices: List[Vertex]
    gl_vertices: List[Vertex]
    linedefs: List[Linedef]
    sidedefs: List[Sidedef]
    sectors: List[Sector]
    segments: List[Segment]
    sub_sectors: List[SubSector]

    def vertex(self, index: int) -> Vertex:
        """Resolve a segment vertex id; bit 15 selects the GL vertex table."""
        if index & VERT_IS_GL:
            table, local, label = self.gl_vertices, index & ~VERT_IS_GL, "GL vertex"
        else:
            table, local, label = self.vertices, index, "vertex"
        if local < 0 or local >= len(table):
            raise LevelError(f"{self.name}: {label} {local} out of range [0,{len(table)})")
        return table[local]

    def linedef(self, index: int) -> Linedef:
        if index < 0 or index >= len(self.linedefs):
            raise LevelError(f"{self.name}: linedef {index} out of range [0,{len(self.linedefs)})")
        return self.linedefs[index]

    def sidedef(self, index: int) -> Sidedef:
        if index < 0 or index >= len(self.sidedefs):
            raise LevelError(f"{self.name}: sidedef {index} out of range [0,{len(self.sidedefs)})")
        return self.sidedefs[index]

    def sector(self, index: int) -> Sector:
        if index < 0 or index >= len(self.sectors):
            raise LevelError(f"{self.name}: sector {index} out of range [0,{len(self.sectors)})")
        return self.sectors[index]

    def linedef_vertices(self, linedef: Linedef) -> Tuple[Vertex, Vertex]:
        for index in (linedef.start_vertex, linedef.end_vertex):
            if index >= len(self.vertices):
                raise LevelError(
                    f"{self.name}: linedef vertex {index} out of range [0,{len(self.vertices)})"
                )
        return self.vertices[linedef.start_vertex], self.vertices[linedef.end_vertex]

    def segment_sidedef(self, segment: Segment) -> Sidedef:
        """The sidedef a wall segment faces; fails if the linedef lacks it."""
        if segment.linedef is None:
            raise LevelError(f"{self.name}: partition segment has no sidedef")
        linedef = self.linedef(segment.linedef)
        if segment.side == SIDE_FRONT:
            sidedef = linedef.front_sidedef
        elif segment.side == SIDE_BACK:
            sidedef = linedef.back_sidedef
        else:
            raise LevelError(f"{self.name}: unknown segment side {segment.side}")
        if sidedef is None:
            raise LevelError(
                f"{self.name}: segment side {segment.side} of linedef {segment.linedef} "
                "names a missing sidedef"
            )
        return self.sidedef(sidedef)

    def sub_sector_segments(self, sub_sector: SubSector) -> List[Segment]:
        if sub_sector.first_segment + sub_sector.segment_count > len(self.segments):
            raise LevelError(
                f"{self.name}: sub-sector segments {sub_sector.first_segment}+"
                f"{sub_sector.segment_count} exceed {len(self.segments)} segments"
            )
        return [self.segments[i] for i in sub_sector.segment_range]

    def link(self) -> None:
        """Validate cross references and attach linedefs/sub-sectors to sectors."""
        for sector in self.sectors:
            sector.linedefs.clear()
            sector.sub_sectors.clear()

        for sidedef in self.sidedefs:
            self.sector(sidedef.sector)

        for index, linedef in enumerate(self.linedefs):
            self.linedef_vertices(linedef)
            if linedef.front_sidedef is None:
                raise LevelError(f"{self.name}: linedef {index} has no front sidedef")
            front = self.sidedef(linedef.front_sidedef)
            if linedef.back_sidedef is not None:
                self.sidedef(linedef.back_sidedef)
            self.sectors[front.sector].linedefs.append(index)

        for segment in self.segments:
            self.vertex(segment.start_vertex)
            self.vertex(segment.end_vertex)
            if segment.linedef is not None:
                self.segment_sidedef(segment)

        orphans = 0
        for sub_sector in self.sub_sectors:
            owner = next(
                (s for s in self.sub_sector_segments(sub_sector) if s.linedef is not None),
                None,
            )
            if owner is None:
                orphans += 1
                continue
            sidedef = self.segment_sidedef(owner)
            self.sectors[sidedef.sector].sub_sectors.append(sub_sector)

        if orphans:
            logging.warning("%s: %d sub-sectors without a wall segment were dropped", self.name, orphans)


# ---------------------------------------------------------------------------
# Lump decoders
# ---------------------------------------------------------------------------

def _records(data: bytes, fmt: str) -> Iterable[tuple]:
    size = struct.calcsize(fmt)
    return struct.iter_unpack(fmt, data[:len(data) - len(data) % size])


def _reject_gl_magic(lump: str, data: bytes) -> None:
    if data[:3] == GL_MAGIC_PREFIX:
        raise LevelError(f"{lump}: unsupported GL nodes format {data[:4]!r}")


def _optional_index(value: int) -> Optional[int]:
    return None if value == NO_SIDEDEF else value


def decode_vertices(data: bytes) -> List[Vertex]:
    return [Vertex(float(x), float(y)) for x, y in _records(data, VERTEX_FORMAT)]


def decode_gl_vertices(data: bytes) -> List[Vertex]:
    if data[:4] == GL_VERT_MAGIC_V2:
        return [
            Vertex(x / FRACUNIT, y / FRACUNIT)
            for x, y in _records(data[4:], GL_VERTEX_FORMAT)
        ]
    _reject_gl_magic("GL_VERT", data)
    return decode_vertices(data)


def decode_linedefs(data: bytes) -> List[Linedef]:
    return [
        Linedef(
            start_vertex=start,
            end_vertex=end,
            flags=flags,
            front_sidedef=_optional_index(front),
            back_sidedef=_optional_index(back),
            special=special,
            tag=tag,
        )
        for start, end, flags, special, tag, front, back in _records(data, LINEDEF_FORMAT)
    ]


def decode_sidedefs(data: bytes) -> List[Sidedef]:
    return [
        Sidedef(
            x_offset=x_offset,
            y_offset=y_offset,
            upper_texture=decode_lump_name(upper),
            lower_texture=decode_lump_name(lower),
            middle_texture=decode_lump_name(middle),
            sector=sector,
        )
        for x_offset, y_offset, upper, lower, middle, sector in _records(data, SIDEDEF_FORMAT)
    ]


def decode_sectors(data: bytes) -> List[Sector]:
    return [
        Sector(
            floor_height=float(floor),
            ceiling_height=float(ceiling),
            floor_texture=decode_lump_name(floor_texture),
            ceiling_texture=decode_lump_name(ceiling_texture),
            light_level=light,
        )
        for floor, ceiling, floor_texture, ceiling_texture, light, _special, _tag
        in _records(data, SECTOR_FORMAT)
    ]


def decode_gl_segments(data: bytes) -> List[Segment]:
    _reject_gl_magic("GL_SEGS", data)
    return [
        Segment(
            start_vertex=start,
            end_vertex=end,
            linedef=None if linedef == NO_LINEDEF else linedef,
            side=side,
            partner=partner,
        )
        for start, end, linedef, side, partner in _records(data, GL_SEGMENT_FORMAT)
    ]


def decode_gl_sub_sectors(data: bytes) -> List[SubSector]:
    _reject_gl_magic("GL_SSECT", data)
    return [
        SubSector(first_segment=first, segment_count=count)
        for count, first in _records(data, GL_SUB_SECTOR_FORMAT)
    ]


def _block_lump(wad: Wad, marker: int, names: Tuple[str, ...], name: str) -> bytes:
    return wad.read(wad.find_after(name, marker + 1, marker + 1 + len(names)))


def load_level(wad: Wad, map_name: str) -> Level:
    """Decode and link the map called *map_name* (e.g. ``E1M1``, ``MAP01``)."""
    marker = wad.find(map_name)
    gl_marker = wad.find(f"GL_{map_name}")

    level = Level(
        name=map_name,
        vertices=decode_vertices(_block_lump(wad, marker, MAP_LUMPS, "VERTEXES")),
        gl_vertices=decode_gl_vertices(_block_lump(wad, gl_marker, GL_LUMPS, "GL_VERT")),
        linedefs=decode_linedefs(_block_lump(wad, marker, MAP_LUMPS, "LINEDEFS")),
        sidedefs=decode_sidedefs(_block_lump(wad, marker, MAP_LUMPS, "SIDEDEFS")),
        sectors=decode_sectors(_block_lump(wad, marker, MAP_LUMPS, "SECTORS")),
        segments=decode_gl_segments(_block_lump(wad, gl_marker, GL_LUMPS, "GL_SEGS")),
        sub_sectors=decode_gl_sub_sectors(_block_lump(wad, gl_marker, GL_LUMPS, "GL_SSECT")),
    )
    level.link()

    logging.info(
        "Level %s: %d vertices (+%d GL), %d linedefs, %d sidedefs, %d sectors, "
        "%d segments, %d sub-sectors",
        map_name,
        len(level.vertices),
        len(level.gl_vertices),
        len(level.linedefs),
        len(level.sidedefs),
        len(level.sectors),
        len(level.segments),
        len(level.sub_sectors),
    )
    return level
