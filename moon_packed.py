"""
Packed mesh arrays used inside moon files.

Each entry of a mesh's ``tex`` array packs the texture slot of one face with
the number of vertices of that face: ``(texture_index << 4) | vertex_count``.
Only the low nibble holds the count, so faces are limited to 15 vertices by
the format itself. ``fac`` holds the vertex indices of all faces back to back
and is stored with the narrowest unsigned integer width that fits.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import List, Sequence, Tuple

import numpy as np

from moon_errors import FormatError, InvariantViolation, SchemaViolation

MAX_FACE_VERTICES = 0x0F
MAX_TEXTURE_INDEX = 0x0FFF


@dataclass(frozen=True)
class MeshFace:
    texture_index: int
    vertex_indices: Tuple[int, ...]


def narrowest_index_dtype(max_index: int) -> np.dtype:
    if max_index < 0:
        raise SchemaViolation(f"Negative vertex index: {max_index}")
    for dtype in (np.uint8, np.uint16, np.uint32):
        if max_index <= np.iinfo(dtype).max:
            return np.dtype(dtype)
    raise SchemaViolation(f"Vertex index does not fit in 32 bits: {max_index}")


def decode_mesh_faces(tex: Sequence[int], fac: Sequence[int]) -> List[MeshFace]:
    faces: List[MeshFace] = []
    fac = [int(v) for v in fac]
    pos = 0
    for i, packed in enumerate(tex):
        packed = int(packed) & 0xFFFF
        count = packed & MAX_FACE_VERTICES
        if count == 0:
            raise FormatError(f"Mesh face {i} declares zero vertices")
        if pos + count > len(fac):
            raise FormatError(
                f"Mesh face {i} needs {count} vertex indices at offset {pos}, "
                f"but fac only has {len(fac)} entries"
            )
        faces.append(MeshFace(packed >> 4, tuple(fac[pos : pos + count])))
        pos += count
    if pos != len(fac):
        raise FormatError(f"fac has {len(fac)} entries but the faces use {pos}")
    return faces


def encode_mesh_faces(faces: Sequence[MeshFace]) -> Tuple[List[int], np.ndarray]:
    tex: List[int] = []
    flat: List[int] = []
    for i, face in enumerate(faces):
        count = len(face.vertex_indices)
        if not 1 <= count <= MAX_FACE_VERTICES:
            raise InvariantViolation(
                f"Mesh face {i} has {count} vertices (allowed: 1..{MAX_FACE_VERTICES})"
            )
        if not 0 <= face.texture_index <= MAX_TEXTURE_INDEX:
            raise SchemaViolation(f"Mesh face {i} texture index out of range: {face.texture_index}")
        tex.append((face.texture_index << 4) | count)
        flat.extend(int(v) for v in face.vertex_indices)

    dtype = narrowest_index_dtype(max(flat, default=0))
    return tex, np.asarray(flat, dtype=dtype)


def unpack_vertices(vtx: Sequence[float]) -> np.ndarray:
    """Split the flat vertex array into an (N, 3) array of positions."""
    arr = np.asarray(vtx, dtype=np.float64)
    if arr.size % 3:
        raise InvariantViolation(f"Vertex array length {arr.size} is not a multiple of 3")
    return arr.reshape(-1, 3)


def unpack_uvs(uvs: Sequence[float], faces: Sequence[MeshFace]) -> List[np.ndarray]:
    """Split the flat UV array into one (corners, 2) array per face."""
    arr = np.asarray(uvs, dtype=np.float64)
    needed = 2 * sum(len(f.vertex_indices) for f in faces)
    if arr.size != needed:
        raise InvariantViolation(f"UV array has {arr.size} values, faces need {needed}")
    out: List[np.ndarray] = []
    pos = 0
    for face in faces:
        n = 2 * len(face.vertex_indices)
        out.append(arr[pos : pos + n].reshape(-1, 2))
        pos += n
    return out
