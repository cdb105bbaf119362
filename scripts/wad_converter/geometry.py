"""Mesh and quad primitives plus the small vector helpers they need."""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from typing import List, Sequence, Tuple

Vec2 = Tuple[float, float]
Vec3 = Tuple[float, float, float]
Vec4 = Tuple[float, float, float, float]

COLLINEAR_TOLERANCE = 0.05
WHITE: Vec4 = (1.0, 1.0, 1.0, 1.0)


# ---------------------------------------------------------------------------
# Vector helpers
# ---------------------------------------------------------------------------

def vec_add(a: Vec3, b: Vec3) -> Vec3:
    return (a[0] + b[0], a[1] + b[1], a[2] + b[2])


def vec_sub(a: Vec3, b: Vec3) -> Vec3:
    return (a[0] - b[0], a[1] - b[1], a[2] - b[2])


def vec_scale(v: Vec3, s: float) -> Vec3:
    return (v[0] * s, v[1] * s, v[2] * s)


def vec_cross(a: Vec3, b: Vec3) -> Vec3:
    return (
        a[1] * b[2] - a[2] * b[1],
        a[2] * b[0] - a[0] * b[2],
        a[0] * b[1] - a[1] * b[0],
    )


def vec_normalize(v: Vec3) -> Vec3:
    length = math.sqrt(v[0] * v[0] + v[1] * v[1] + v[2] * v[2])
    if length == 0.0:
        return (0.0, 0.0, 0.0)
    return (v[0] / length, v[1] / length, v[2] / length)


# ---------------------------------------------------------------------------
# Primitives
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class MeshVertex:
    position: Vec3
    normal: Vec3
    uv: Vec2 = (0.0, 0.0)
    color: Vec4 = WHITE

    def moved(self, offset: Vec3) -> "MeshVertex":
        return replace(self, position=vec_add(self.position, offset))


def line_angle(a: MeshVertex, b: MeshVertex) -> float:
    """Heading of a -> b in the horizontal (x, z) plane."""
    return math.atan2(b.position[2] - a.position[2], b.position[0] - a.position[0])


def _is_straight(a: MeshVertex, b: MeshVertex, c: MeshVertex) -> bool:
    turn = line_angle(a, b) - line_angle(b, c)
    turn = (turn + math.pi) % (2.0 * math.pi) - math.pi
    return abs(turn) < COLLINEAR_TOLERANCE


def cleanup_collinear(loop: Sequence[MeshVertex]) -> List[MeshVertex]:
    """Drop the middle vertex of nearly straight triples.

    One forward pass over the starting vertex count, indexing the shrinking
    loop circularly. Not repeated until stable, so a removal can leave a new
    straight triple behind. Never shrinks a loop below three vertices.
    """
    vertices = list(loop)
    for i in range(len(vertices)):
        count = len(vertices)
        if count <= 3:
            break
        a, b, c = vertices[i % count], vertices[(i + 1) % count], vertices[(i + 2) % count]
        if _is_straight(a, b, c):
            del vertices[(i + 1) % count]
    return vertices


def triangulate(loop: Sequence[MeshVertex], clockwise: bool) -> List[int]:
    """Fan-triangulate a convex loop from vertex 0; returns local indices."""
    indices: List[int] = []
    for i in range(2, len(loop)):
        if clockwise:
            indices.extend((0, i - 1, i))
        else:
            indices.extend((0, i, i - 1))
    return indices


@dataclass
class Mesh:
    texture_id: int
    vertices: List[MeshVertex] = field(default_factory=list)
    indices: List[int] = field(default_factory=list)

    def add_loop(self, loop: Sequence[MeshVertex], clockwise: bool) -> None:
        self._append(cleanup_collinear(loop), clockwise)

    def add_quad(self, quad: "Quad") -> None:
        # Quads have vertical edges, so the horizontal collinearity test does not apply.
        self._append(quad.points, clockwise=True)

    def _append(self, loop: Sequence[MeshVertex], clockwise: bool) -> None:
        offset = len(self.vertices)
        self.vertices.extend(loop)
        self.indices.extend(offset + i for i in triangulate(loop, clockwise))

    @property
    def triangle_count(self) -> int:
        return len(self.indices) // 3

    def __bool__(self) -> bool:
        return bool(self.indices)


@dataclass
class Quad:
    """Wall rectangle; points run top-left, bottom-left, bottom-right, top-right."""

    points: List[MeshVertex]
    texture_id: int

    def face_normal(self) -> Vec3:
        p0, p1, p2 = (p.position for p in self.points[:3])
        return vec_normalize(vec_cross(vec_sub(p1, p0), vec_sub(p2, p0)))
