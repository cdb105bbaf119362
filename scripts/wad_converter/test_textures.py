#!/usr/bin/env python3
import sys
import unittest
from pathlib import Path

import numpy as np


SCRIPTS_DIR = Path(__file__).resolve().parent.parent
if str(SCRIPTS_DIR) not in sys.path:
    sys.path.insert(0, str(SCRIPTS_DIR))

from wad_converter import wad_testkit as kit
from wad_converter.palette import ColorTables
from wad_converter.textures import (
    MISSING_TEXTURE_ID,
    PatchRef,
    Texture,
    TextureCatalog,
    TextureDecodeError,
    TextureDefinition,
    TextureKind,
    compose_texture,
    decode_flat,
    decode_patch,
    decode_patch_names,
    decode_texture_definitions,
)
from wad_converter.wad import LumpNotFoundError, Wad


def _colors() -> ColorTables:
    wad = Wad.parse(kit.build_wad([
        ("PLAYPAL", kit.grey_palette_lump()),
        ("COLORMAP", kit.identity_colormap_lump()),
    ]))
    return ColorTables.from_wad(wad)


def _catalog(lumps=None) -> TextureCatalog:
    wad = Wad.parse(kit.build_wad(kit.resource_lumps() if lumps is None else lumps))
    return TextureCatalog.from_wad(wad, ColorTables.from_wad(wad))


class PictureDecodeTests(unittest.TestCase):
    def test_flat_is_opaque_64x64(self) -> None:
        texture = decode_flat("FLOOR1", kit.flat_lump(30), _colors())

        self.assertIs(texture.kind, TextureKind.FLAT)
        self.assertEqual((texture.width, texture.height), (64, 64))
        rgba = texture.rgba()
        self.assertTrue((rgba[..., 3] == 0xFF).all())
        self.assertEqual(rgba[63, 63].tolist(), [30, 30, 30, 255])

    def test_short_flat_raises(self) -> None:
        with self.assertRaises(TextureDecodeError):
            decode_flat("BAD", b"\x00" * 100, _colors())

    def test_patch_posts_use_topdelta(self) -> None:
        data = kit.patch_lump([[(0, b"\x05"), (3, b"\x06")]], height=4)
        rgba = decode_patch("GAPPY", data, _colors()).rgba()

        self.assertEqual(rgba[:, 0, 3].tolist(), [255, 0, 0, 255])
        self.assertEqual(rgba[0, 0, 0], 5)
        self.assertEqual(rgba[3, 0, 0], 6)

    def test_patch_rows_past_height_are_dropped(self) -> None:
        data = kit.patch_lump([[(2, b"\x07\x07\x07\x07")]], height=3)
        rgba = decode_patch("TALL", data, _colors()).rgba()

        self.assertEqual(rgba[:, 0, 3].tolist(), [0, 0, 255])

    def test_truncated_patch_raises(self) -> None:
        data = kit.solid_patch_lump(4, 4, 1)
        with self.assertRaises(TextureDecodeError):
            decode_patch("CUT", data[:20], _colors())
        with self.assertRaises(TextureDecodeError):
            decode_patch("CUT", data[:4], _colors())

    def test_texture_rejects_wrong_buffer_length(self) -> None:
        with self.assertRaises(ValueError):
            Texture("X", TextureKind.FLAT, 2, 2, b"\x00" * 15)

    def test_patch_names_are_upper_cased(self) -> None:
        self.assertEqual(decode_patch_names(kit.pnames_lump(["wall00_1", "DOOR2"])), ["WALL00_1", "DOOR2"])

    def test_texture_definitions(self) -> None:
        data = kit.texture_lump([("A", 8, 16, [(0, 1, 2)]), ("B", 4, 4, [])])
        definitions = decode_texture_definitions(data)

        self.assertEqual([d.name for d in definitions], ["A", "B"])
        self.assertEqual(definitions[0].patches, (PatchRef(patch_index=0, origin_x=1, origin_y=2),))
        self.assertEqual((definitions[0].width, definitions[0].height), (8, 16))

    def test_truncated_texture_definitions_raise(self) -> None:
        data = kit.texture_lump([("A", 8, 16, [(0, 1, 2)])])
        with self.assertRaises(TextureDecodeError):
            decode_texture_definitions(data[:-4])


class CompositeTests(unittest.TestCase):
    def setUp(self) -> None:
        colors = _colors()
        self.patches = {
            "RED": decode_patch("RED", kit.solid_patch_lump(4, 4, 10), colors),
            "BLUE": decode_patch("BLUE", kit.solid_patch_lump(2, 2, 20), colors),
        }

    def _compose(self, refs) -> Texture:
        definition = TextureDefinition("COMP", 4, 4, tuple(PatchRef(*ref) for ref in refs))
        return compose_texture(definition, ["RED", "BLUE"], self.patches.get)

    def test_later_patch_wins(self) -> None:
        rgba = self._compose([(0, 0, 0), (1, 1, 1)]).rgba()
        self.assertEqual(rgba[0, 0, 0], 10)
        self.assertEqual(rgba[1, 1, 0], 20)
        self.assertEqual(rgba[2, 2, 0], 20)
        self.assertEqual(rgba[3, 3, 0], 10)

    def test_reversed_order_changes_result(self) -> None:
        rgba = self._compose([(1, 1, 1), (0, 0, 0)]).rgba()
        self.assertEqual(rgba[1, 1, 0], 10)

    def test_clipping_and_uncovered_pixels(self) -> None:
        texture = self._compose([(1, 3, -1)])
        rgba = texture.rgba()

        self.assertEqual(rgba[0, 3].tolist(), [20, 20, 20, 255])
        self.assertEqual(rgba[1, 3, 3], 0)
        self.assertEqual(int((rgba[..., 3] == 255).sum()), 1)
        self.assertEqual(texture.patches[0].patch_name, "BLUE")

    def test_unknown_patches_are_skipped(self) -> None:
        with self.assertLogs(level="WARNING"):
            texture = self._compose([(5, 0, 0), (0, 0, 0)])
        self.assertEqual(len(texture.patches), 1)

    def test_empty_size_raises(self) -> None:
        definition = TextureDefinition("ZERO", 0, 4, ())
        with self.assertRaises(TextureDecodeError):
            compose_texture(definition, [], self.patches.get)


class CatalogTests(unittest.TestCase):
    def test_every_texture_has_rgba_buffer_with_binary_alpha(self) -> None:
        catalog = _catalog()
        self.assertGreater(len(catalog), 1)
        for _, texture in catalog:
            self.assertEqual(len(texture.pixels), texture.width * texture.height * 4)
            self.assertTrue(set(texture.rgba()[..., 3].ravel().tolist()) <= {0, 255})

    def test_build_order_and_kinds(self) -> None:
        catalog = _catalog()
        names = [texture.name for _, texture in catalog]
        self.assertEqual(names, ["<missing>", "PATCHA", "PATCHB", "FLOOR1", "CEIL1", "WALL1"])
        self.assertIs(catalog.by_name("WALL1")[1].kind, TextureKind.COMPOSITE)
        self.assertIs(catalog.by_name("FLOOR1")[1].kind, TextureKind.FLAT)

    def test_composite_from_wad(self) -> None:
        rgba = _catalog().by_name("WALL1")[1].rgba()
        self.assertEqual(rgba[0, 0, 0], kit.PATCH_A_INDEX)
        self.assertEqual(rgba[1, 1, 0], kit.PATCH_B_INDEX)
        self.assertEqual(rgba[3, 3, 0], kit.PATCH_A_INDEX)

    def test_unknown_name_resolves_to_missing(self) -> None:
        catalog = _catalog()
        missing_id, missing = catalog.missing()
        texture_id, texture = catalog.by_name("NOSUCH")

        self.assertEqual(texture_id, missing_id)
        self.assertEqual(missing_id, MISSING_TEXTURE_ID)
        self.assertIs(texture, missing)
        self.assertEqual(
            missing.rgba().reshape(-1, 4).tolist(),
            [[0, 0, 0, 255], [255, 0, 255, 255], [255, 0, 255, 255], [0, 0, 0, 255]],
        )

    def test_lookup_by_id(self) -> None:
        catalog = _catalog()
        texture_id, texture = catalog.by_name("CEIL1")
        self.assertIs(catalog.by_id(texture_id), texture)
        self.assertEqual(catalog.name_of(texture_id), "CEIL1")
        self.assertIsNone(catalog.by_id(len(catalog)))
        self.assertIsNone(catalog.name_of(-1))

    def test_duplicate_name_keeps_first(self) -> None:
        catalog = TextureCatalog()
        first = Texture.from_rgba("DUP", TextureKind.PATCH, np.full((1, 1, 4), 255, dtype=np.uint8))
        second = Texture.from_rgba("DUP", TextureKind.PATCH, np.zeros((2, 2, 4), dtype=np.uint8))

        first_id = catalog.register(first)
        with self.assertLogs(level="WARNING"):
            self.assertIsNone(catalog.register(second))
        self.assertEqual(catalog.by_name("DUP"), (first_id, first))

    def test_nested_markers_are_skipped(self) -> None:
        lumps = kit.resource_lumps()
        start = lumps.index(("P_START", b""))
        lumps.insert(start + 1, ("P1_START", b""))
        lumps.insert(start + 4, ("P1_END", b""))
        catalog = _catalog(lumps)

        self.assertIsNone(catalog.id_of("P1_START"))
        self.assertIsNotNone(catalog.id_of("PATCHA"))
        self.assertIsNotNone(catalog.id_of("PATCHB"))

    def test_missing_flat_section_is_skipped(self) -> None:
        lumps = [lump for lump in kit.resource_lumps() if lump[0] not in ("F_START", "F_END", "FLOOR1", "CEIL1")]
        with self.assertLogs(level="WARNING"):
            catalog = _catalog(lumps)
        self.assertIsNone(catalog.id_of("FLOOR1"))
        self.assertIsNotNone(catalog.id_of("WALL1"))

    def test_undecodable_patch_is_skipped(self) -> None:
        lumps = kit.resource_lumps()
        lumps.insert(lumps.index(("P_END", b"")), ("BROKEN", b"\x01\x00"))
        with self.assertLogs(level="WARNING"):
            catalog = _catalog(lumps)
        self.assertIsNone(catalog.id_of("BROKEN"))

    def test_missing_patch_names_is_fatal(self) -> None:
        lumps = [lump for lump in kit.resource_lumps() if lump[0] != "PNAMES"]
        with self.assertRaises(LumpNotFoundError):
            _catalog(lumps)

    def test_texture2_is_optional_extra(self) -> None:
        lumps = kit.resource_lumps() + [("TEXTURE2", kit.texture_lump([("WALL2", 2, 2, [(1, 0, 0)])]))]
        catalog = _catalog(lumps)
        self.assertEqual(catalog.by_name("WALL2")[1].rgba()[0, 0, 0], kit.PATCH_B_INDEX)

    def test_png_encoding(self) -> None:
        png = _catalog().by_name("WALL1")[1].to_png()
        self.assertTrue(png.startswith(b"\x89PNG\r\n\x1a\n"))


if __name__ == "__main__":
    unittest.main()
