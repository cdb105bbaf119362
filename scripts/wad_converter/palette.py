"""Palette (PLAYPAL) and brightness remap (COLORMAP) tables."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np

from .wad import Wad, WadError


class PaletteError(WadError):
    pass


PALETTE_LUMP = "PLAYPAL"
COLORMAP_LUMP = "COLORMAP"

PALETTE_COLORS = 256
PALETTE_SIZE = PALETTE_COLORS * 3
COLORMAP_SIZE = 256
MAX_COLORMAPS = 34


def decode_palettes(data: bytes) -> np.ndarray:
    """Split a PLAYPAL lump into an (N, 256, 3) uint8 array."""
    count = len(data) // PALETTE_SIZE
    if count == 0:
        raise PaletteError(
            f"{PALETTE_LUMP} too small for one palette ({len(data)} < {PALETTE_SIZE})"
        )
    raw = np.frombuffer(data, dtype=np.uint8, count=count * PALETTE_SIZE)
    return raw.reshape(count, PALETTE_COLORS, 3)


def decode_colormaps(data: bytes) -> np.ndarray:
    """Split a COLORMAP lump into an (N, 256) uint8 array, N <= 34."""
    tables = len(data) // COLORMAP_SIZE
    count = min(tables, MAX_COLORMAPS)
    if count == 0:
        raise PaletteError(
            f"{COLORMAP_LUMP} too small for one table ({len(data)} < {COLORMAP_SIZE})"
        )
    if tables != MAX_COLORMAPS:
        logging.warning("%s holds %d tables, expected %d", COLORMAP_LUMP, tables, MAX_COLORMAPS)
    raw = np.frombuffer(data, dtype=np.uint8, count=count * COLORMAP_SIZE)
    return raw.reshape(count, COLORMAP_SIZE)


@dataclass(frozen=True)
class ColorTables:
    palettes: np.ndarray
    colormaps: np.ndarray

    @classmethod
    def from_wad(cls, wad: Wad) -> "ColorTables":
        palettes = decode_palettes(wad.read_lump(PALETTE_LUMP))
        colormaps = decode_colormaps(wad.read_lump(COLORMAP_LUMP))
        logging.debug(
            "Loaded %d palettes and %d colormaps", len(palettes), len(colormaps)
        )
        return cls(palettes=palettes, colormaps=colormaps)

    def resolve(self, indices: np.ndarray) -> np.ndarray:
        """Map palette-index bytes to RGB: pixel -> colormap[0] -> palette[0]."""
        indices = np.asarray(indices, dtype=np.uint8)
        return self.palettes[0][self.colormaps[0][indices]]
