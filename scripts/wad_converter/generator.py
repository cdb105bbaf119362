"""
generator.py
============

Turns a linked level into floor/ceiling meshes and wall quads.

Every texture the generator resolves is recorded in a TextureQueue, so the
scene writer embeds exactly the images the geometry refers to. Names the
catalog does not know resolve to the fallback texture (id 0).
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field, replace
from typing import Iterator, List, Optional, Set, Tuple

from .geometry import Mesh, MeshVertex, Quad, Vec3, vec_scale
from .level import (
    LINEDEF_FLAG_LOWER_TEXTURE_UNPEGGED,
    LINEDEF_FLAG_UPPER_TEXTURE_UNPEGGED,
    NO_TEXTURE,
    Level,
    LevelError,
    Linedef,
    Sector,
    Vertex,
)
from .textures import Texture, TextureCatalog

MAX_SLOPE_STEP = 24.0

FLOOR_NORMAL: Vec3 = (0.0, 1.0, 0.0)
CEILING_NORMAL: Vec3 = (0.0, -1.0, 0.0)


class TextureQueue:
    """Resolves texture names and remembers every id handed out."""

    def __init__(self, catalog: TextureCatalog) -> None:
        self.catalog = catalog
        self._ids: List[int] = []
        self._seen: Set[int] = set()

    def _record(self, texture_id: int) -> None:
        if texture_id not in self._seen:
            self._seen.add(texture_id)
            self._ids.append(texture_id)

    def enqueue(self, name: str) -> Tuple[int, Texture]:
        texture_id, texture = self.catalog.by_name(name)
        if self.catalog.id_of(name) is None:
            logging.debug("Texture %r not found, using fallback", name)
        self._record(texture_id)
        return texture_id, texture

    def enqueue_missing(self) -> Tuple[int, Texture]:
        texture_id, texture = self.catalog.missing()
        self._record(texture_id)
        return texture_id, texture

    @property
    def ids(self) -> List[int]:
        return list(self._ids)

    def __contains__(self, texture_id: object) -> bool:
        return texture_id in self._seen

    def __len__(self) -> int:
        return len(self._ids)

    def __iter__(self) -> Iterator[int]:
        return iter(self._ids)


# ---------------------------------------------------------------------------
# Floors and ceilings
# ---------------------------------------------------------------------------

def _flat_mesh(
    level: Level,
    sector: Sector,
    texture_name: str,
    height: float,
    normal: Vec3,
    clockwise: bool,
    queue: TextureQueue,
) -> Mesh:
    texture_id, texture = queue.enqueue(texture_name)
    mesh = Mesh(texture_id=texture_id)
    u_scale = 1.0 / texture.width
    v_scale = -1.0 / texture.height

    for sub_sector in sector.sub_sectors:
        loop = []
        for segment in level.sub_sector_segments(sub_sector):
            start = level.vertex(segment.start_vertex)
            loop.append(
                MeshVertex(
                    position=(start.x, height, start.y),
                    normal=normal,
                    uv=(start.x * u_scale, start.y * v_scale),
                )
            )
        mesh.add_loop(loop, clockwise=clockwise)
    return mesh


def generate_floor(level: Level, sector: Sector, queue: TextureQueue) -> Mesh:
    return _flat_mesh(
        level, sector, sector.floor_texture, sector.floor_height,
        FLOOR_NORMAL, True, queue,
    )


def generate_ceiling(level: Level, sector: Sector, queue: TextureQueue) -> Mesh:
    return _flat_mesh(
        level, sector, sector.ceiling_texture, sector.ceiling_height,
        CEILING_NORMAL, False, queue,
    )


# ---------------------------------------------------------------------------
# Walls
# ---------------------------------------------------------------------------

def _make_quad(
    start: Vertex,
    end: Vertex,
    top: float,
    bottom: float,
    texture_id: int,
) -> Quad:
    quad = Quad(
        points=[
            MeshVertex(position=(start.x, top, start.y), normal=(0.0, 0.0, 0.0)),
            MeshVertex(position=(start.x, bottom, start.y), normal=(0.0, 0.0, 0.0)),
            MeshVertex(position=(end.x, bottom, end.y), normal=(0.0, 0.0, 0.0)),
            MeshVertex(position=(end.x, top, end.y), normal=(0.0, 0.0, 0.0)),
        ],
        texture_id=texture_id,
    )
    normal = quad.face_normal()
    quad.points = [replace(p, normal=normal) for p in quad.points]
    return quad


def _apply_wall_uv(
    quad: Quad,
    texture: Texture,
    length: float,
    x_offset: float,
    y_offset: float,
    top: float,
    bottom: float,
    lower_peg: bool,
) -> None:
    """Assign texel-space UVs; lower_peg anchors the texture's bottom edge."""
    height = round(top - bottom)
    y1 = y_offset
    y2 = y_offset + height
    if lower_peg:
        y2 = y_offset + texture.height
        y1 = y2 - height

    w, h = float(texture.width), float(texture.height)
    p0, p1, p2, p3 = quad.points
    quad.points = [
        replace(p0, uv=(x_offset / w, (y1 + (top - p0.position[1])) / h)),
        replace(p1, uv=(x_offset / w, (y2 + (bottom - p1.position[1])) / h)),
        replace(p2, uv=((x_offset + length) / w, (y2 + (bottom - p2.position[1])) / h)),
        replace(p3, uv=((x_offset + length) / w, (y1 + (top - p3.position[1])) / h)),
    ]


def _pick_texture(front_name: str, back_name: str) -> str:
    return front_name if front_name != NO_TEXTURE else back_name


def _slope_quad(
    start: Vertex,
    end: Vertex,
    front_floor: float,
    back_floor: float,
    queue: TextureQueue,
) -> Quad:
    texture_id, _ = queue.enqueue_missing()
    quad = _make_quad(start, end, back_floor, front_floor, texture_id)
    normal = quad.face_normal()
    color = (normal[0] * 0.5 + 0.5, normal[1] * 0.5 + 0.5, normal[2] * 0.5 + 0.5, 1.0)
    offset = vec_scale(normal, abs(back_floor - front_floor))

    # Points 0/3 sit on the back floor, 1/2 on the front floor.
    raised = (0, 3) if back_floor > front_floor else (1, 2)
    quad.points = [
        replace(p.moved(offset) if i in raised else p, color=color)
        for i, p in enumerate(quad.points)
    ]
    return quad


def _single_sided_wall(
    level: Level, linedef: Linedef, start: Vertex, end: Vertex, queue: TextureQueue
) -> Quad:
    sidedef = level.sidedef(linedef.front_sidedef)
    sector = level.sector(sidedef.sector)
    texture_id, texture = queue.enqueue(sidedef.middle_texture)

    quad = _make_quad(start, end, sector.ceiling_height, sector.floor_height, texture_id)
    _apply_wall_uv(
        quad,
        texture,
        math.hypot(end.x - start.x, end.y - start.y),
        sidedef.x_offset,
        sidedef.y_offset,
        sector.ceiling_height,
        sector.floor_height,
        linedef.has_flag(LINEDEF_FLAG_LOWER_TEXTURE_UNPEGGED),
    )
    return quad


def _two_sided_walls(
    level: Level,
    linedef: Linedef,
    start: Vertex,
    end: Vertex,
    queue: TextureQueue,
) -> Tuple[List[Quad], List[Quad]]:
    walls: List[Quad] = []
    slopes: List[Quad] = []

    front_side = level.sidedef(linedef.front_sidedef)
    back_side = level.sidedef(linedef.back_sidedef)
    front = level.sector(front_side.sector)
    back = level.sector(back_side.sector)
    length = math.hypot(end.x - start.x, end.y - start.y)

    if front.floor_height != back.floor_height:
        gap = abs(front.floor_height - back.floor_height)
        if gap <= MAX_SLOPE_STEP:
            slopes.append(_slope_quad(start, end, front.floor_height, back.floor_height, queue))

        texture_id, texture = queue.enqueue(
            _pick_texture(front_side.lower_texture, back_side.lower_texture)
        )
        quad = _make_quad(start, end, back.floor_height, front.floor_height, texture_id)
        y_offset = float(front_side.y_offset)
        if linedef.has_flag(LINEDEF_FLAG_LOWER_TEXTURE_UNPEGGED):
            y_offset += front.ceiling_height - back.floor_height
        _apply_wall_uv(
            quad, texture, length, front_side.x_offset, y_offset,
            back.floor_height, front.floor_height, False,
        )
        walls.append(quad)

    if front.ceiling_height != back.ceiling_height:
        texture_id, texture = queue.enqueue(
            _pick_texture(front_side.upper_texture, back_side.upper_texture)
        )
        quad = _make_quad(start, end, front.ceiling_height, back.ceiling_height, texture_id)
        _apply_wall_uv(
            quad, texture, length, front_side.x_offset, front_side.y_offset,
            front.ceiling_height, back.ceiling_height,
            not linedef.has_flag(LINEDEF_FLAG_UPPER_TEXTURE_UNPEGGED),
        )
        walls.append(quad)

    return walls, slopes


def generate_walls(
    level: Level,
    sector: Sector,
    queue: TextureQueue,
    emitted: Optional[Set[int]] = None,
) -> Tuple[List[Quad], List[Quad]]:
    """Wall and slope quads for the linedefs bounding *sector*'s sub-sectors.

    Linedef ids already in *emitted* are skipped and new ones are added, so
    a linedef shared by two sectors is only built once.
    """
    if emitted is None:
        emitted = set()
    walls: List[Quad] = []
    slopes: List[Quad] = []

    for sub_sector in sector.sub_sectors:
        for segment in level.sub_sector_segments(sub_sector):
            if segment.linedef is None or segment.linedef in emitted:
                continue
            emitted.add(segment.linedef)

            linedef = level.linedef(segment.linedef)
            if linedef.front_sidedef is None:
                raise LevelError(f"{level.name}: linedef {segment.linedef} has no front sidedef")
            start, end = level.linedef_vertices(linedef)

            if linedef.back_sidedef is None:
                walls.append(_single_sided_wall(level, linedef, start, end, queue))
            else:
                gap_walls, gap_slopes = _two_sided_walls(level, linedef, start, end, queue)
                walls.extend(gap_walls)
                slopes.extend(gap_slopes)

    return walls, slopes


# ---------------------------------------------------------------------------
# Whole level
# ---------------------------------------------------------------------------

@dataclass
class SectorGeometry:
    index: int
    floor: Mesh
    ceiling: Mesh
    walls: List[Quad] = field(default_factory=list)
    slopes: List[Quad] = field(default_factory=list)


@dataclass
class LevelGeometry:
    name: str
    sectors: List[SectorGeometry]
    queue: TextureQueue

    @property
    def wall_count(self) -> int:
        return sum(len(s.walls) for s in self.sectors)

    @property
    def slope_count(self) -> int:
        return sum(len(s.slopes) for s in self.sectors)


def generate_level(level: Level, catalog: TextureCatalog) -> LevelGeometry:
    queue = TextureQueue(catalog)
    emitted: Set[int] = set()
    sectors: List[SectorGeometry] = []

    for index, sector in enumerate(level.sectors):
        walls, slopes = generate_walls(level, sector, queue, emitted)
        sectors.append(
            SectorGeometry(
                index=index,
                floor=generate_floor(level, sector, queue),
                ceiling=generate_ceiling(level, sector, queue),
                walls=walls,
                slopes=slopes,
            )
        )

    geometry = LevelGeometry(name=level.name, sectors=sectors, queue=queue)
    logging.info(
        "Generated %s: %d sectors, %d wall quads, %d slope quads, %d textures queued",
        level.name,
        len(sectors),
        geometry.wall_count,
        geometry.slope_count,
        len(queue),
    )
    return geometry
