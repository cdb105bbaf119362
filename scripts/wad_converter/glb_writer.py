"""
glb_writer.py
=============

Binary glTF 2.0 (GLB) output for generated level geometry.

Layout of the produced file:

    header   u32 magic 0x46546C67 ("glTF"), u32 version 2, u32 total length
    chunk 0  u32 length, u32 0x4E4F534A ("JSON"), space padded JSON
    chunk 1  u32 length, u32 0x004E4942 ("BIN\\0"), zero padded blob

Every primitive attribute gets its own tightly packed buffer view. Texture
images are embedded into the same blob as PNG buffer views.
"""

from __future__ import annotations

import json
import logging
import struct
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from .generator import LevelGeometry
from .geometry import Mesh, MeshVertex, Quad
from .textures import TextureCatalog


class GlbValidationError(Exception):
    pass


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

UNITS_PER_METER = 20.0
GENERATOR = "wad-converter"

GLB_MAGIC = 0x46546C67
GLB_VERSION = 2
GLB_HEADER_SIZE = 12
CHUNK_HEADER_SIZE = 8
CHUNK_TYPE_JSON = 0x4E4F534A
CHUNK_TYPE_BIN = 0x004E4942

COMPONENT_TYPE_UNSIGNED_INT = 5125
COMPONENT_TYPE_FLOAT = 5126
COMPONENT_SIZES = {COMPONENT_TYPE_UNSIGNED_INT: 4, COMPONENT_TYPE_FLOAT: 4}
TYPE_COMPONENTS = {"SCALAR": 1, "VEC2": 2, "VEC3": 3, "VEC4": 4}

TARGET_ARRAY_BUFFER = 34962
TARGET_ELEMENT_ARRAY_BUFFER = 34963

FILTER_NEAREST = 9728
WRAP_REPEAT = 10497

PNG_MIME_TYPE = "image/png"
PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"


def align4(value: int) -> int:
    return (value + 3) & ~3


class GlbWriter:
    """Accumulates meshes into one glTF document plus one binary buffer."""

    def __init__(self, catalog: TextureCatalog, texture_ids: Iterable[int]) -> None:
        self.catalog = catalog
        self._binary = bytearray()
        self._buffer_views: List[Dict[str, object]] = []
        self._accessors: List[Dict[str, object]] = []
        self._meshes: List[Dict[str, object]] = []
        self._nodes: List[Dict[str, object]] = []
        self._materials: List[Dict[str, object]] = []
        self._images: List[Dict[str, object]] = []
        self._textures: List[Dict[str, object]] = []
        self._samplers: List[Dict[str, object]] = []
        self._texture_index_by_id: Dict[int, int] = {}
        self._material_index_by_texture: Dict[Tuple[Optional[int], bool], int] = {}

        for texture_id in texture_ids:
            self._embed_texture(texture_id)

    # -- binary helpers --------------------------------------------------

    def _append_buffer_view(self, payload: bytes, target: Optional[int] = None) -> int:
        byte_offset = len(self._binary)
        self._binary.extend(payload)
        padding = (4 - len(self._binary) % 4) % 4
        if padding:
            self._binary.extend(b"\x00" * padding)

        view: Dict[str, object] = {
            "buffer": 0,
            "byteOffset": byte_offset,
            "byteLength": len(payload),
        }
        if target is not None:
            view["target"] = target

        self._buffer_views.append(view)
        return len(self._buffer_views) - 1

    def _append_accessor(
        self,
        values: np.ndarray,
        accessor_type: str,
        component_type: int,
        target: int,
        with_bounds: bool = False,
    ) -> int:
        dtype = "<u4" if component_type == COMPONENT_TYPE_UNSIGNED_INT else "<f4"
        values = np.ascontiguousarray(values, dtype=dtype)
        accessor: Dict[str, object] = {
            "bufferView": self._append_buffer_view(values.tobytes(), target=target),
            "componentType": component_type,
            "count": len(values),
            "type": accessor_type,
        }
        if with_bounds:
            accessor["min"] = values.min(axis=0).tolist()
            accessor["max"] = values.max(axis=0).tolist()
        self._accessors.append(accessor)
        return len(self._accessors) - 1

    # -- textures / materials -------------------------------------------

    def _embed_texture(self, texture_id: int) -> None:
        if texture_id in self._texture_index_by_id:
            return
        texture = self.catalog.by_id(texture_id)
        if texture is None:
            raise ValueError(f"Texture id {texture_id} is not in the catalog")

        if not self._samplers:
            self._samplers.append({
                "magFilter": FILTER_NEAREST,
                "minFilter": FILTER_NEAREST,
                "wrapS": WRAP_REPEAT,
                "wrapT": WRAP_REPEAT,
            })

        image_index = len(self._images)
        self._images.append(
            {
                "bufferView": self._append_buffer_view(texture.to_png()),
                "mimeType": PNG_MIME_TYPE,
                "name": texture.name,
            }
        )
        self._texture_index_by_id[texture_id] = len(self._textures)
        self._textures.append({"sampler": 0, "source": image_index})

    def _material(self, texture_id: Optional[int], double_sided: bool = False) -> int:
        texture_index = self._texture_index_by_id.get(texture_id) if texture_id is not None else None
        cache_key = (texture_id if texture_index is not None else None, double_sided)
        cached = self._material_index_by_texture.get(cache_key)
        if cached is not None:
            return cached

        pbr: Dict[str, object] = {
            "baseColorFactor": [1.0, 1.0, 1.0, 1.0],
            "metallicFactor": 0.0,
            "roughnessFactor": 1.0,
        }
        material: Dict[str, object] = {"pbrMetallicRoughness": pbr}
        if texture_index is not None:
            pbr["baseColorTexture"] = {"index": texture_index}
            material["name"] = self.catalog.name_of(texture_id)
        else:
            material["name"] = "untextured"
        if double_sided:
            material["doubleSided"] = True

        self._materials.append(material)
        material_index = len(self._materials) - 1
        self._material_index_by_texture[cache_key] = material_index
        return material_index

    # -- geometry --------------------------------------------------------

    def _primitive(
        self,
        vertices: Sequence[MeshVertex],
        indices: Sequence[int],
        texture_id: int,
        double_sided: bool = False,
    ) -> Dict[str, object]:
        positions = np.array([v.position for v in vertices], dtype=np.float32) / UNITS_PER_METER
        normals = np.array([v.normal for v in vertices], dtype=np.float32)
        uvs = np.array([v.uv for v in vertices], dtype=np.float32)
        colors = np.array([v.color for v in vertices], dtype=np.float32)

        attributes = {
            "POSITION": self._append_accessor(
                positions, "VEC3", COMPONENT_TYPE_FLOAT, TARGET_ARRAY_BUFFER, with_bounds=True
            ),
            "NORMAL": self._append_accessor(normals, "VEC3", COMPONENT_TYPE_FLOAT, TARGET_ARRAY_BUFFER),
            "TEXCOORD_0": self._append_accessor(uvs, "VEC2", COMPONENT_TYPE_FLOAT, TARGET_ARRAY_BUFFER),
            "COLOR_0": self._append_accessor(colors, "VEC4", COMPONENT_TYPE_FLOAT, TARGET_ARRAY_BUFFER),
        }
        index_accessor = self._append_accessor(
            np.array(indices, dtype=np.uint32),
            "SCALAR",
            COMPONENT_TYPE_UNSIGNED_INT,
            TARGET_ELEMENT_ARRAY_BUFFER,
        )
        return {
            "attributes": attributes,
            "indices": index_accessor,
            "material": self._material(texture_id, double_sided),
        }

    def _add_node(self, name: str, primitives: List[Dict[str, object]]) -> int:
        mesh_index = len(self._meshes)
        self._meshes.append({"name": name, "primitives": primitives})
        self._nodes.append({"name": name, "mesh": mesh_index})
        return mesh_index

    def add_mesh(self, name: str, mesh: Mesh) -> Optional[int]:
        """Add *mesh* as one single-primitive glTF mesh; empty meshes are skipped."""
        if not mesh:
            return None
        return self._add_node(name, [self._primitive(mesh.vertices, mesh.indices, mesh.texture_id)])

    def add_quads(self, name: str, quads: Sequence[Quad]) -> Optional[int]:
        """Add *quads* as one glTF mesh with a primitive per texture id.

        Wall normals point away from the front sector, so quad materials are
        double sided.
        """
        if not quads:
            return None
        groups: Dict[int, Mesh] = {}
        for quad in quads:
            groups.setdefault(quad.texture_id, Mesh(texture_id=quad.texture_id)).add_quad(quad)
        primitives = [
            self._primitive(m.vertices, m.indices, m.texture_id, double_sided=True)
            for m in groups.values()
        ]
        return self._add_node(name, primitives)

    def add_level(self, geometry: LevelGeometry) -> None:
        for sector in geometry.sectors:
            prefix = f"sector{sector.index}"
            self.add_mesh(f"{prefix}_floor", sector.floor)
            self.add_mesh(f"{prefix}_ceiling", sector.ceiling)
            self.add_quads(f"{prefix}_walls", sector.walls)
            self.add_quads(f"{prefix}_slopes", sector.slopes)

    # -- output ----------------------------------------------------------

    def to_gltf(self) -> Dict[str, object]:
        gltf: Dict[str, object] = {
            "asset": {"version": "2.0", "generator": GENERATOR},
            "scene": 0,
            "scenes": [{"nodes": list(range(len(self._nodes)))}],
            "nodes": self._nodes,
            "buffers": [{"byteLength": len(self._binary)}],
            "bufferViews": self._buffer_views,
            "accessors": self._accessors,
        }
        if self._meshes:
            gltf["meshes"] = self._meshes
        if self._materials:
            gltf["materials"] = self._materials
        if self._textures:
            gltf["samplers"] = self._samplers
            gltf["images"] = self._images
            gltf["textures"] = self._textures
        return gltf

    def build(self) -> bytes:
        json_bytes = json.dumps(self.to_gltf(), indent=2).encode("ascii")
        json_bytes += b" " * ((4 - len(json_bytes) % 4) % 4)
        binary = bytes(self._binary) + b"\x00" * ((4 - len(self._binary) % 4) % 4)

        glb = bytearray()
        glb += struct.pack("<III", GLB_MAGIC, GLB_VERSION, 0)
        glb += struct.pack("<II", len(json_bytes), CHUNK_TYPE_JSON)
        glb += json_bytes
        glb += struct.pack("<II", len(binary), CHUNK_TYPE_BIN)
        glb += binary
        struct.pack_into("<I", glb, 8, len(glb))

        data = bytes(glb)
        validate_glb(data)
        logging.debug(
            "GLB: %d meshes, %d accessors, %d images, %d bytes",
            len(self._meshes),
            len(self._accessors),
            len(self._images),
            len(data),
        )
        return data


# ---------------------------------------------------------------------------
# Consistency check
# ---------------------------------------------------------------------------

def _read_chunks(data: bytes) -> List[tuple]:
    chunks = []
    offset = GLB_HEADER_SIZE
    while offset < len(data):
        if offset + CHUNK_HEADER_SIZE > len(data):
            raise GlbValidationError(f"Truncated chunk header at {offset}")
        length, chunk_type = struct.unpack_from("<II", data, offset)
        start = offset + CHUNK_HEADER_SIZE
        if start + length > len(data):
            raise GlbValidationError(f"Chunk at {offset} overruns the file")
        if length % 4:
            raise GlbValidationError(f"Chunk at {offset} length {length} not 4-byte aligned")
        chunks.append((chunk_type, data[start:start + length]))
        offset = start + length
    return chunks


def _check_buffer_views(gltf: Dict[str, object], buffer_length: int) -> List[Dict[str, object]]:
    views = gltf.get("bufferViews", [])
    expected_offset = 0
    for index, view in sorted(enumerate(views), key=lambda item: item[1].get("byteOffset", 0)):
        offset = view.get("byteOffset", 0)
        length = view["byteLength"]
        if view.get("buffer") != 0:
            raise GlbValidationError(f"bufferView {index} does not use buffer 0")
        if offset % 4:
            raise GlbValidationError(f"bufferView {index} offset {offset} not 4-byte aligned")
        if offset != expected_offset:
            raise GlbValidationError(
                f"bufferView {index} starts at {offset}, expected {expected_offset} "
                "(gap or overlap)"
            )
        if offset + length > buffer_length:
            raise GlbValidationError(f"bufferView {index} overruns the buffer")
        expected_offset = align4(offset + length)
    if expected_offset != buffer_length:
        raise GlbValidationError(
            f"bufferViews cover {expected_offset} bytes, buffer holds {buffer_length}"
        )
    return views


def _check_accessors(gltf: Dict[str, object], views: List[Dict[str, object]]) -> List[Dict[str, object]]:
    accessors = gltf.get("accessors", [])
    for index, accessor in enumerate(accessors):
        view_index = accessor.get("bufferView")
        if view_index is None or not 0 <= view_index < len(views):
            raise GlbValidationError(f"accessor {index} references bufferView {view_index}")
        component_size = COMPONENT_SIZES.get(accessor["componentType"])
        components = TYPE_COMPONENTS.get(accessor["type"])
        if component_size is None or components is None:
            raise GlbValidationError(f"accessor {index} has unsupported layout")
        expected = accessor["count"] * component_size * components
        if expected != views[view_index]["byteLength"]:
            raise GlbValidationError(
                f"accessor {index}: {expected} bytes expected, bufferView holds "
                f"{views[view_index]['byteLength']}"
            )
    return accessors


def _check_primitives(
    gltf: Dict[str, object],
    views: List[Dict[str, object]],
    accessors: List[Dict[str, object]],
    binary: bytes,
) -> None:
    def accessor(index: int, where: str) -> Dict[str, object]:
        if not 0 <= index < len(accessors):
            raise GlbValidationError(f"{where} references accessor {index}")
        return accessors[index]

    for mesh_index, mesh in enumerate(gltf.get("meshes", [])):
        for prim_index, primitive in enumerate(mesh["primitives"]):
            where = f"mesh {mesh_index} primitive {prim_index}"
            counts = {
                accessor(i, where)["count"] for i in primitive["attributes"].values()
            }
            if len(counts) != 1:
                raise GlbValidationError(f"{where}: attribute counts differ {sorted(counts)}")
            vertex_count = counts.pop()

            if "indices" in primitive:
                index_accessor = accessor(primitive["indices"], where)
                view = views[index_accessor["bufferView"]]
                indices = np.frombuffer(
                    binary,
                    dtype="<u4",
                    count=index_accessor["count"],
                    offset=view.get("byteOffset", 0),
                )
                if len(indices) and int(indices.max()) >= vertex_count:
                    raise GlbValidationError(
                        f"{where}: index {int(indices.max())} >= vertex count {vertex_count}"
                    )


def validate_glb(data: bytes) -> Dict[str, object]:
    """Re-read a serialized GLB and check its internal consistency.

    Returns the parsed JSON document; raises GlbValidationError on the first
    inconsistency found.
    """
    if len(data) < GLB_HEADER_SIZE:
        raise GlbValidationError("GLB payload too small")
    magic, version, total_length = struct.unpack_from("<III", data, 0)
    if magic != GLB_MAGIC:
        raise GlbValidationError(f"invalid GLB magic 0x{magic:08X}")
    if version != GLB_VERSION:
        raise GlbValidationError(f"unsupported GLB version: {version}")
    if total_length != len(data):
        raise GlbValidationError(f"header length {total_length} != file length {len(data)}")

    chunks = _read_chunks(data)
    if [chunk_type for chunk_type, _ in chunks] != [CHUNK_TYPE_JSON, CHUNK_TYPE_BIN]:
        raise GlbValidationError("GLB must hold exactly a JSON chunk followed by a BIN chunk")
    (_, json_chunk), (_, binary) = chunks

    try:
        gltf = json.loads(json_chunk.decode("utf-8").rstrip(" "))
    except ValueError as exc:
        raise GlbValidationError(f"JSON chunk does not parse: {exc}") from exc
    if not isinstance(gltf, dict):
        raise GlbValidationError("GLB JSON root is not an object")

    buffers = gltf.get("buffers", [])
    if len(buffers) != 1:
        raise GlbValidationError(f"expected one buffer, found {len(buffers)}")
    if buffers[0].get("byteLength") != len(binary):
        raise GlbValidationError(
            f"buffer byteLength {buffers[0].get('byteLength')} != BIN chunk length {len(binary)}"
        )

    views = _check_buffer_views(gltf, len(binary))
    accessors = _check_accessors(gltf, views)
    _check_primitives(gltf, views, accessors, binary)

    for index, image in enumerate(gltf.get("images", [])):
        view = views[image["bufferView"]]
        start = view.get("byteOffset", 0)
        if binary[start:start + len(PNG_SIGNATURE)] != PNG_SIGNATURE:
            raise GlbValidationError(f"image {index} is not PNG data")

    return gltf
