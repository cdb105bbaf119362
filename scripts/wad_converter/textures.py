"""
textures.py
===========

Decoding of WAD picture formats into RGBA buffers and the texture catalog.

Three picture kinds share one record type:

  * flats      -- 64x64 raw palette indices, row-major (floors/ceilings)
  * patches    -- column-major run-length posts with transparent gaps
  * composites -- TEXTURE1/TEXTURE2 definitions that place PNAMES patches
                  on a fixed canvas

Every decoded buffer is width * height * 4 bytes of RGBA8 with alpha either
0x00 (not covered) or 0xFF.
"""

from __future__ import annotations

import io
import logging
import struct
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Tuple

import numpy as np
from PIL import Image

from .palette import ColorTables
from .wad import LumpNotFoundError, Wad, decode_lump_name


class TextureDecodeError(Exception):
    pass


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

FLAT_SIZE = 64
FLAT_BYTES = FLAT_SIZE * FLAT_SIZE

PATCH_HEADER_FORMAT = "<HHhh"
PATCH_HEADER_SIZE = struct.calcsize(PATCH_HEADER_FORMAT)  # 8
POST_END = 0xFF

TEXTURE_RECORD_FORMAT = "<8siHHiH"
TEXTURE_RECORD_SIZE = struct.calcsize(TEXTURE_RECORD_FORMAT)  # 22
PATCH_REF_FORMAT = "<hhHHH"
PATCH_REF_SIZE = struct.calcsize(PATCH_REF_FORMAT)  # 10

PATCH_MARKERS = ("P_START", "P_END")
FLAT_MARKERS = ("F_START", "F_END")
PATCH_NAMES_LUMP = "PNAMES"
TEXTURE_DEFINITION_LUMPS = ("TEXTURE1", "TEXTURE2")

# Longer than any lump name, so it can never collide with a WAD texture.
MISSING_TEXTURE_NAME = "<missing>"
MISSING_TEXTURE_ID = 0

OPAQUE = 0xFF


class TextureKind(Enum):
    FLAT = "flat"
    PATCH = "patch"
    COMPOSITE = "composite"


@dataclass(frozen=True)
class PatchPlacement:
    patch_name: str
    origin_x: int
    origin_y: int


@dataclass(frozen=True)
class Texture:
    name: str
    kind: TextureKind
    width: int
    height: int
    pixels: bytes
    # Composite textures only.
    patches: Tuple[PatchPlacement, ...] = ()

    def __post_init__(self) -> None:
        expected = self.width * self.height * 4
        if len(self.pixels) != expected:
            raise ValueError(
                f"Texture {self.name!r}: pixel buffer is {len(self.pixels)} bytes, "
                f"expected {expected} ({self.width}x{self.height} RGBA)"
            )
        if self.patches and self.kind is not TextureKind.COMPOSITE:
            raise ValueError(f"Texture {self.name!r}: only composites carry patches")

    @classmethod
    def from_rgba(
        cls,
        name: str,
        kind: TextureKind,
        rgba: np.ndarray,
        patches: Sequence[PatchPlacement] = (),
    ) -> "Texture":
        height, width = rgba.shape[:2]
        return cls(
            name=name,
            kind=kind,
            width=width,
            height=height,
            pixels=np.ascontiguousarray(rgba, dtype=np.uint8).tobytes(),
            patches=tuple(patches),
        )

    def rgba(self) -> np.ndarray:
        return np.frombuffer(self.pixels, dtype=np.uint8).reshape(self.height, self.width, 4)

    def to_image(self) -> Image.Image:
        return Image.frombytes("RGBA", (self.width, self.height), self.pixels)

    def to_png(self) -> bytes:
        stream = io.BytesIO()
        self.to_image().save(stream, format="PNG")
        return stream.getvalue()


def make_missing_texture() -> Texture:
    black = (0, 0, 0, OPAQUE)
    magenta = (0xFF, 0, 0xFF, OPAQUE)
    rgba = np.array([[black, magenta], [magenta, black]], dtype=np.uint8)
    return Texture.from_rgba(MISSING_TEXTURE_NAME, TextureKind.PATCH, rgba)


def _indexed_to_rgba(
    indices: np.ndarray,
    covered: np.ndarray,
    colors: ColorTables,
) -> np.ndarray:
    rgba = np.zeros(indices.shape + (4,), dtype=np.uint8)
    rgba[..., :3] = colors.resolve(indices)
    rgba[..., 3] = OPAQUE
    rgba[~covered] = 0
    return rgba


# ---------------------------------------------------------------------------
# Picture decoders
# ---------------------------------------------------------------------------

def decode_flat(name: str, data: bytes, colors: ColorTables) -> Texture:
    if len(data) < FLAT_BYTES:
        raise TextureDecodeError(
            f"Flat {name!r} too small ({len(data)} < {FLAT_BYTES} bytes)"
        )
    indices = np.frombuffer(data, dtype=np.uint8, count=FLAT_BYTES).reshape(FLAT_SIZE, FLAT_SIZE)
    covered = np.ones(indices.shape, dtype=bool)
    return Texture.from_rgba(name, TextureKind.FLAT, _indexed_to_rgba(indices, covered, colors))


def decode_patch(name: str, data: bytes, colors: ColorTables) -> Texture:
    """Decode a column/post picture.

    Each column is a list of posts terminated by 0xFF:

        u8  topdelta (row of the first pixel)
        u8  length
        u8  padding
        u8  pixels[length]
        u8  padding

    Rows that fall outside the declared height are dropped.
    """
    if len(data) < PATCH_HEADER_SIZE:
        raise TextureDecodeError(f"Patch {name!r} header truncated ({len(data)} bytes)")

    width, height, _left_offset, _top_offset = struct.unpack_from(PATCH_HEADER_FORMAT, data, 0)
    if width == 0 or height == 0:
        raise TextureDecodeError(f"Patch {name!r} has empty size {width}x{height}")

    table_end = PATCH_HEADER_SIZE + width * 4
    if table_end > len(data):
        raise TextureDecodeError(
            f"Patch {name!r} column table truncated (need {table_end}, have {len(data)})"
        )
    column_offsets = struct.unpack_from(f"<{width}I", data, PATCH_HEADER_SIZE)

    indices = np.zeros((height, width), dtype=np.uint8)
    covered = np.zeros((height, width), dtype=bool)

    for x, pos in enumerate(column_offsets):
        while True:
            if pos >= len(data):
                raise TextureDecodeError(f"Patch {name!r} column {x} runs past end of lump")
            top_delta = data[pos]
            if top_delta == POST_END:
                break
            if pos + 3 > len(data):
                raise TextureDecodeError(f"Patch {name!r} column {x} post header truncated")
            length = data[pos + 1]
            start = pos + 3
            end = start + length
            if end > len(data):
                raise TextureDecodeError(f"Patch {name!r} column {x} post data truncated")

            rows = min(length, height - top_delta)
            if rows > 0:
                indices[top_delta:top_delta + rows, x] = np.frombuffer(
                    data, dtype=np.uint8, count=rows, offset=start
                )
                covered[top_delta:top_delta + rows, x] = True
            pos = end + 1

    return Texture.from_rgba(name, TextureKind.PATCH, _indexed_to_rgba(indices, covered, colors))


# ---------------------------------------------------------------------------
# Composite texture definitions
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PatchRef:
    patch_index: int
    origin_x: int
    origin_y: int


@dataclass(frozen=True)
class TextureDefinition:
    name: str
    width: int
    height: int
    patches: Tuple[PatchRef, ...]


def decode_patch_names(data: bytes) -> List[str]:
    """Decode PNAMES. Names are upper-cased like the engine does on lookup."""
    if len(data) < 4:
        raise TextureDecodeError(f"{PATCH_NAMES_LUMP} header truncated")
    count = struct.unpack_from("<i", data, 0)[0]
    if count < 0 or 4 + count * 8 > len(data):
        raise TextureDecodeError(f"{PATCH_NAMES_LUMP} declares {count} names in {len(data)} bytes")
    return [decode_lump_name(data[4 + i * 8:12 + i * 8]).upper() for i in range(count)]


def decode_texture_definitions(data: bytes) -> List[TextureDefinition]:
    """Decode a TEXTURE1/TEXTURE2 lump.

    Layout: i32 count, count * i32 record offsets, then per record
    8s name, i32 masked, u16 width, u16 height, i32 column directory
    (unused), u16 patch count and patch count * {i16 x, i16 y, u16 patch,
    u16 stepdir, u16 colormap}.
    """
    if len(data) < 4:
        raise TextureDecodeError("Texture definition header truncated")
    count = struct.unpack_from("<i", data, 0)[0]
    if count < 0 or 4 + count * 4 > len(data):
        raise TextureDecodeError(f"Texture definition lump declares {count} records in {len(data)} bytes")

    definitions: List[TextureDefinition] = []
    for offset in struct.unpack_from(f"<{count}i", data, 4):
        if offset < 0 or offset + TEXTURE_RECORD_SIZE > len(data):
            raise TextureDecodeError(f"Texture record at {offset} truncated")
        raw_name, _masked, width, height, _column_directory, patch_count = struct.unpack_from(
            TEXTURE_RECORD_FORMAT, data, offset
        )
        refs_start = offset + TEXTURE_RECORD_SIZE
        if refs_start + patch_count * PATCH_REF_SIZE > len(data):
            raise TextureDecodeError(f"Texture {decode_lump_name(raw_name)!r} patch list truncated")

        patches = []
        for i in range(patch_count):
            origin_x, origin_y, patch_index, _stepdir, _colormap = struct.unpack_from(
                PATCH_REF_FORMAT, data, refs_start + i * PATCH_REF_SIZE
            )
            patches.append(PatchRef(patch_index=patch_index, origin_x=origin_x, origin_y=origin_y))

        definitions.append(TextureDefinition(
            name=decode_lump_name(raw_name),
            width=width,
            height=height,
            patches=tuple(patches),
        ))
    return definitions


def _blit(canvas: np.ndarray, picture: np.ndarray, origin_x: int, origin_y: int) -> None:
    canvas_height, canvas_width = canvas.shape[:2]
    picture_height, picture_width = picture.shape[:2]

    x0 = max(origin_x, 0)
    y0 = max(origin_y, 0)
    x1 = min(origin_x + picture_width, canvas_width)
    y1 = min(origin_y + picture_height, canvas_height)
    if x0 >= x1 or y0 >= y1:
        return

    source = picture[y0 - origin_y:y1 - origin_y, x0 - origin_x:x1 - origin_x]
    target = canvas[y0:y1, x0:x1]
    mask = source[..., 3] == OPAQUE
    target[mask] = source[mask]


def compose_texture(
    definition: TextureDefinition,
    patch_names: Sequence[str],
    patch_source: Callable[[str], Optional[Texture]],
) -> Texture:
    """Paint the definition's patches in list order; later patches win."""
    if definition.width == 0 or definition.height == 0:
        raise TextureDecodeError(
            f"Texture {definition.name!r} has empty size {definition.width}x{definition.height}"
        )

    canvas = np.zeros((definition.height, definition.width, 4), dtype=np.uint8)
    placements: List[PatchPlacement] = []
    for ref in definition.patches:
        if ref.patch_index >= len(patch_names):
            logging.warning(
                "Texture %s: patch index %d out of range [0,%d), skipping",
                definition.name,
                ref.patch_index,
                len(patch_names),
            )
            continue
        patch_name = patch_names[ref.patch_index]
        patch = patch_source(patch_name)
        if patch is None:
            logging.warning("Texture %s: patch %s not found, skipping", definition.name, patch_name)
            continue
        _blit(canvas, patch.rgba(), ref.origin_x, ref.origin_y)
        placements.append(PatchPlacement(patch_name, ref.origin_x, ref.origin_y))

    return Texture.from_rgba(definition.name, TextureKind.COMPOSITE, canvas, placements)


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------

def _is_marker(name: str) -> bool:
    return name.endswith("_START") or name.endswith("_END")


def lumps_between(wad: Wad, start_marker: str, end_marker: str) -> Iterator[int]:
    """Yield lump indices strictly between two markers, skipping nested ones."""
    start = wad.find(start_marker)
    end = wad.find_after(end_marker, start + 1, wad.lump_count)
    for index in range(start + 1, end):
        name = wad.entry(index).name
        if _is_marker(name):
            logging.debug("Skipping nested marker %s", name)
            continue
        yield index


@dataclass(frozen=True)
class CatalogEntry:
    name: str
    texture: Texture


class TextureCatalog:
    """Append-only name -> texture registry; ids are insertion order.

    Id 0 is always the 2x2 black/magenta fallback, returned for every name
    that was never registered.
    """

    def __init__(self) -> None:
        self._entries: List[CatalogEntry] = []
        self._ids: Dict[str, int] = {}
        self.register(make_missing_texture())

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[Tuple[int, Texture]]:
        for texture_id, entry in enumerate(self._entries):
            yield texture_id, entry.texture

    def register(self, texture: Texture) -> Optional[int]:
        """Register *texture*; returns its id, or None for a duplicate name."""
        name = texture.name
        existing = self._ids.get(name)
        if existing is not None:
            logging.warning(
                "Duplicate texture name %s (%s), keeping id %d",
                name,
                texture.kind.value,
                existing,
            )
            return None
        texture_id = len(self._entries)
        self._entries.append(CatalogEntry(name=name, texture=texture))
        self._ids[name] = texture_id
        return texture_id

    def id_of(self, name: str) -> Optional[int]:
        return self._ids.get(name)

    def by_name(self, name: str) -> Tuple[int, Texture]:
        texture_id = self._ids.get(name)
        if texture_id is None:
            return self.missing()
        return texture_id, self._entries[texture_id].texture

    def by_id(self, texture_id: int) -> Optional[Texture]:
        if 0 <= texture_id < len(self._entries):
            return self._entries[texture_id].texture
        return None

    def missing(self) -> Tuple[int, Texture]:
        return MISSING_TEXTURE_ID, self._entries[MISSING_TEXTURE_ID].texture

    def name_of(self, texture_id: int) -> Optional[str]:
        if 0 <= texture_id < len(self._entries):
            return self._entries[texture_id].name
        return None

    def _register_section(
        self,
        wad: Wad,
        markers: Tuple[str, str],
        decoder: Callable[[str, bytes, ColorTables], Texture],
        colors: ColorTables,
    ) -> int:
        try:
            indices = list(lumps_between(wad, *markers))
        except LumpNotFoundError as exc:
            logging.warning("No %s/%s section: %s", markers[0], markers[1], exc)
            return 0

        registered = 0
        for index in indices:
            name = wad.entry(index).name
            try:
                texture = decoder(name, wad.read(index), colors)
            except TextureDecodeError as exc:
                logging.warning("Skipping lump %s: %s", name, exc)
                continue
            if self.register(texture) is not None:
                registered += 1
        return registered

    @classmethod
    def from_wad(cls, wad: Wad, colors: ColorTables) -> "TextureCatalog":
        catalog = cls()

        patch_count = catalog._register_section(wad, PATCH_MARKERS, decode_patch, colors)
        flat_count = catalog._register_section(wad, FLAT_MARKERS, decode_flat, colors)

        patch_names = decode_patch_names(wad.read_lump(PATCH_NAMES_LUMP))
        definitions = decode_texture_definitions(wad.read_lump(TEXTURE_DEFINITION_LUMPS[0]))
        for lump in TEXTURE_DEFINITION_LUMPS[1:]:
            if lump in wad:
                definitions.extend(decode_texture_definitions(wad.read_lump(lump)))

        # Patches referenced from PNAMES but stored outside P_START/P_END.
        stray_patches: Dict[str, Optional[Texture]] = {}

        def patch_source(patch_name: str) -> Optional[Texture]:
            texture_id = catalog.id_of(patch_name)
            if texture_id is not None:
                texture = catalog.by_id(texture_id)
                if texture is not None and texture.kind is TextureKind.PATCH:
                    return texture
            if patch_name not in stray_patches:
                try:
                    data = wad.read_lump(patch_name)
                    stray_patches[patch_name] = decode_patch(patch_name, data, colors)
                except (LumpNotFoundError, TextureDecodeError) as exc:
                    logging.debug("Patch %s unavailable: %s", patch_name, exc)
                    stray_patches[patch_name] = None
            return stray_patches[patch_name]

        composite_count = 0
        for definition in definitions:
            try:
                texture = compose_texture(definition, patch_names, patch_source)
            except TextureDecodeError as exc:
                logging.warning("Skipping texture %s: %s", definition.name, exc)
                continue
            if catalog.register(texture) is not None:
                composite_count += 1

        logging.info(
            "Texture catalog: %d patches, %d flats, %d composite textures",
            patch_count,
            flat_count,
            composite_count,
        )
        return catalog
