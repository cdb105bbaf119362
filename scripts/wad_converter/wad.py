"""
wad.py
======

Lump directory access for WAD containers.

A WAD is a flat archive: a 12-byte header, a run of lump payloads and a
directory of fixed 16-byte records pointing back into the payload area.

    header    4s  identification ("IWAD" or "PWAD")
              i   lump count
              i   directory offset
    entry     i   lump offset
              i   lump size
              8s  lump name (null-padded)
"""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass
from typing import Iterator


class WadError(Exception):
    pass


class MalformedWadError(WadError):
    pass


class LumpNotFoundError(WadError):
    pass


class LumpIndexError(WadError, IndexError):
    pass


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

WAD_MAGICS = (b"IWAD", b"PWAD")

HEADER_FORMAT = "<4sii"
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)  # 12

DIRECTORY_ENTRY_FORMAT = "<ii8s"
DIRECTORY_ENTRY_SIZE = struct.calcsize(DIRECTORY_ENTRY_FORMAT)  # 16

LUMP_NAME_SIZE = 8


def decode_lump_name(raw: bytes) -> str:
    """Decode a null-terminated, null-padded 8-byte name."""
    null_pos = raw.find(b"\x00")
    if null_pos >= 0:
        raw = raw[:null_pos]
    return raw.decode("ascii", errors="replace")


@dataclass(frozen=True)
class DirectoryEntry:
    name: str
    offset: int
    size: int


class Wad:
    """Read-only view over the lumps of an in-memory WAD buffer."""

    def __init__(self, data: bytes, lump_count: int, directory_offset: int) -> None:
        self._data = data
        self._lump_count = lump_count
        self._directory_offset = directory_offset

    @classmethod
    def parse(cls, data: bytes) -> "Wad":
        if len(data) < HEADER_SIZE:
            raise MalformedWadError(
                f"WAD header truncated ({len(data)} < {HEADER_SIZE} bytes)"
            )

        magic, lump_count, directory_offset = struct.unpack_from(HEADER_FORMAT, data, 0)
        if magic not in WAD_MAGICS:
            raise MalformedWadError(f"Not a WAD file (magic: {magic!r})")
        if lump_count < 0:
            raise MalformedWadError(f"Invalid lump count: {lump_count}")
        if directory_offset < 0:
            raise MalformedWadError(f"Invalid directory offset: {directory_offset}")

        logging.debug(
            "%s: %d lumps, directory at 0x%X",
            magic.decode("ascii"),
            lump_count,
            directory_offset,
        )
        return cls(data, lump_count, directory_offset)

    @property
    def lump_count(self) -> int:
        return self._lump_count

    def __len__(self) -> int:
        return self._lump_count

    def entry(self, index: int) -> DirectoryEntry:
        if index < 0 or index >= self._lump_count:
            raise LumpIndexError(
                f"Lump index {index} out of range [0,{self._lump_count})"
            )

        start = self._directory_offset + index * DIRECTORY_ENTRY_SIZE
        if start + DIRECTORY_ENTRY_SIZE > len(self._data):
            raise MalformedWadError(
                f"Directory entry {index} lies outside the WAD ({start} + "
                f"{DIRECTORY_ENTRY_SIZE} > {len(self._data)})"
            )

        offset, size, raw_name = struct.unpack_from(DIRECTORY_ENTRY_FORMAT, self._data, start)
        return DirectoryEntry(name=decode_lump_name(raw_name), offset=offset, size=size)

    def entries(self) -> Iterator[DirectoryEntry]:
        for index in range(self._lump_count):
            yield self.entry(index)

    def find(self, name: str) -> int:
        """Return the index of the first lump called *name*."""
        for index in range(self._lump_count):
            if self.entry(index).name == name:
                return index
        raise LumpNotFoundError(f"Lump not found: {name!r}")

    def find_after(self, name: str, start: int, stop: int) -> int:
        """Like find(), restricted to indices in [start, stop)."""
        for index in range(max(start, 0), min(stop, self._lump_count)):
            if self.entry(index).name == name:
                return index
        raise LumpNotFoundError(f"Lump not found: {name!r} (searched {start}..{stop})")

    def __contains__(self, name: object) -> bool:
        return any(entry.name == name for entry in self.entries())

    def read(self, index: int) -> bytes:
        entry = self.entry(index)
        end = entry.offset + entry.size
        if entry.offset < 0 or entry.size < 0 or end > len(self._data):
            raise MalformedWadError(
                f"Lump {entry.name!r} range [{entry.offset},{end}) lies outside "
                f"the WAD ({len(self._data)} bytes)"
            )
        return self._data[entry.offset:end]

    def read_lump(self, name: str) -> bytes:
        return self.read(self.find(name))
