#!/usr/bin/env python3
import struct
import sys
import unittest
from pathlib import Path


SCRIPTS_DIR = Path(__file__).resolve().parent.parent
if str(SCRIPTS_DIR) not in sys.path:
    sys.path.insert(0, str(SCRIPTS_DIR))

from wad_converter import wad_testkit as kit
from wad_converter.level import (
    VERT_IS_GL,
    LevelError,
    Vertex,
    decode_gl_segments,
    decode_gl_sub_sectors,
    decode_gl_vertices,
    decode_linedefs,
    decode_sectors,
    decode_sidedefs,
    load_level,
)
from wad_converter.wad import LumpNotFoundError, Wad


def _load(level_lumps, map_name="E1M1"):
    return load_level(Wad.parse(kit.build_wad(level_lumps)), map_name)


def _room(**overrides):
    """Single room lumps with any of the map_lumps() arguments replaced."""
    arguments = dict(
        vertices=[(0, 0), (0, 128), (128, 128), (128, 0)],
        linedefs=[(i, (i + 1) % 4, 0, i, -1) for i in range(4)],
        sidedefs=[(0, 0, "-", "-", "WALL1", 0) for _ in range(4)],
        sectors=[(0, 128, "FLOOR1", "CEIL1")],
        segments=[(i, (i + 1) % 4, i, 0) for i in range(4)],
        sub_sectors=[(4, 0)],
    )
    arguments.update(overrides)
    return kit.map_lumps("E1M1", **arguments)


class RecordDecodeTests(unittest.TestCase):
    def test_linedef_minus_one_means_no_sidedef(self) -> None:
        (linedef,) = decode_linedefs(kit.linedefs_lump([(1, 2, 0x14, 7, -1)]))
        self.assertEqual((linedef.start_vertex, linedef.end_vertex), (1, 2))
        self.assertEqual(linedef.front_sidedef, 7)
        self.assertIsNone(linedef.back_sidedef)
        self.assertTrue(linedef.has_flag(0x10))
        self.assertFalse(linedef.has_flag(0x08))

    def test_sidedef_indices_are_unsigned(self) -> None:
        (linedef,) = decode_linedefs(kit.linedefs_lump([(0, 1, 0, 40000, 0xFFFF)]))
        self.assertEqual(linedef.front_sidedef, 40000)
        self.assertIsNone(linedef.back_sidedef)

    def test_sidedef_and_sector_names(self) -> None:
        (sidedef,) = decode_sidedefs(kit.sidedefs_lump([(-8, 16, "BIGDOOR2", "-", "STARTAN3", 5)]))
        self.assertEqual(
            (sidedef.x_offset, sidedef.y_offset, sidedef.upper_texture, sidedef.lower_texture,
             sidedef.middle_texture, sidedef.sector),
            (-8, 16, "BIGDOOR2", "-", "STARTAN3", 5),
        )
        (sector,) = decode_sectors(kit.sectors_lump([(-24, 72, "NUKAGE1", "F_SKY1")]))
        self.assertEqual((sector.floor_height, sector.ceiling_height), (-24.0, 72.0))
        self.assertEqual((sector.floor_texture, sector.ceiling_texture), ("NUKAGE1", "F_SKY1"))

    def test_gl_vertices_v2_are_fixed_point(self) -> None:
        vertices = decode_gl_vertices(kit.gl_vert_lump([(1.5, -2.25)]))
        self.assertEqual(vertices, [Vertex(1.5, -2.25)])

    def test_gl_vertices_v1_are_plain_shorts(self) -> None:
        self.assertEqual(decode_gl_vertices(struct.pack("<hh", 3, -4)), [Vertex(3.0, -4.0)])

    def test_other_gl_versions_are_rejected(self) -> None:
        with self.assertRaises(LevelError):
            decode_gl_vertices(b"gNd5" + b"\x00" * 8)
        with self.assertRaises(LevelError):
            decode_gl_segments(b"gNd3" + b"\x00" * 16)
        with self.assertRaises(LevelError):
            decode_gl_sub_sectors(b"gNd3" + b"\x00" * 8)

    def test_miniseg_has_no_linedef(self) -> None:
        segments = decode_gl_segments(kit.gl_segs_lump([(0, 1, None, 0), (1, 2, 3, 1)]))
        self.assertIsNone(segments[0].linedef)
        self.assertEqual((segments[1].linedef, segments[1].side), (3, 1))

    def test_sub_sector_records(self) -> None:
        (sub_sector,) = decode_gl_sub_sectors(kit.gl_ssect_lump([(5, 12)]))
        self.assertEqual(list(sub_sector.segment_range), [12, 13, 14, 15, 16])


class LoadLevelTests(unittest.TestCase):
    def test_single_room(self) -> None:
        level = _load(kit.single_room_map())

        self.assertEqual(len(level.vertices), 4)
        self.assertEqual(len(level.linedefs), 4)
        self.assertEqual(level.sectors[0].linedefs, [0, 1, 2, 3])
        self.assertEqual(len(level.sectors[0].sub_sectors), 1)

    def test_two_rooms_assign_sub_sectors_by_first_wall_segment(self) -> None:
        level = _load(kit.two_room_map())

        self.assertEqual([s.first_segment for s in level.sectors[0].sub_sectors], [0])
        self.assertEqual([s.first_segment for s in level.sectors[1].sub_sectors], [4])
        self.assertIn(2, level.sectors[0].linedefs)
        self.assertNotIn(2, level.sectors[1].linedefs)
        self.assertTrue(level.linedefs[2].two_sided)

    def test_map_is_found_among_several(self) -> None:
        lumps = kit.single_room_map("E1M1") + kit.two_room_map("E1M2")
        level = _load(lumps, "E1M2")
        self.assertEqual(level.name, "E1M2")
        self.assertEqual(len(level.sectors), 2)

    def test_gl_vertex_bit_selects_gl_table(self) -> None:
        level = _load(_room(
            gl_vertices=[(64.0, 0.0)],
            segments=[(0, 1, 0, 0), (1, 2, 1, 0), (2, 3, 2, 0), (3, VERT_IS_GL, 3, 0), (VERT_IS_GL, 0, 3, 0)],
            sub_sectors=[(5, 0)],
        ))
        self.assertEqual(level.vertex(VERT_IS_GL | 0), Vertex(64.0, 0.0))
        self.assertEqual(level.vertex(2), Vertex(128.0, 128.0))

    def test_missing_map_marker(self) -> None:
        with self.assertRaises(LumpNotFoundError):
            _load(kit.single_room_map("E1M1"), "E2M2")

    def test_missing_gl_block(self) -> None:
        lumps = [lump for lump in kit.single_room_map() if not lump[0].startswith("GL_")]
        with self.assertRaises(LumpNotFoundError):
            _load(lumps)

    def test_dangling_segment_vertex(self) -> None:
        with self.assertRaises(LevelError):
            _load(_room(segments=[(0, 1, 0, 0), (1, 2, 1, 0), (2, 3, 2, 0), (3, 99, 3, 0)]))

    def test_dangling_gl_vertex(self) -> None:
        with self.assertRaises(LevelError):
            _load(_room(segments=[(0, 1, 0, 0), (1, 2, 1, 0), (2, 3, 2, 0), (3, VERT_IS_GL | 4, 3, 0)]))

    def test_dangling_linedef_vertex(self) -> None:
        with self.assertRaises(LevelError):
            _load(_room(linedefs=[(0, 1, 0, 0, -1), (1, 2, 0, 1, -1), (2, 3, 0, 2, -1), (3, 40, 0, 3, -1)]))

    def test_linedef_without_front_sidedef(self) -> None:
        with self.assertRaises(LevelError):
            _load(_room(linedefs=[(0, 1, 0, -1, -1), (1, 2, 0, 1, -1), (2, 3, 0, 2, -1), (3, 0, 0, 3, -1)]))

    def test_sidedef_with_unknown_sector(self) -> None:
        with self.assertRaises(LevelError):
            _load(_room(sidedefs=[(0, 0, "-", "-", "WALL1", 3) for _ in range(4)]))

    def test_back_side_segment_needs_back_sidedef(self) -> None:
        with self.assertRaises(LevelError):
            _load(_room(segments=[(0, 1, 0, 1), (1, 2, 1, 0), (2, 3, 2, 0), (3, 0, 3, 0)]))

    def test_sub_sector_past_segment_table(self) -> None:
        with self.assertRaises(LevelError):
            _load(_room(sub_sectors=[(6, 0)]))

    def test_sub_sector_of_minisegs_is_dropped(self) -> None:
        segments = [(i, (i + 1) % 4, i, 0) for i in range(4)] + [(0, 2, None, 0), (2, 0, None, 0)]
        with self.assertLogs(level="WARNING"):
            level = _load(_room(segments=segments, sub_sectors=[(4, 0), (2, 4)]))
        self.assertEqual(len(level.sectors[0].sub_sectors), 1)


if __name__ == "__main__":
    unittest.main()
