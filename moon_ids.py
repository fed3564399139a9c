"""
Stable identifiers for model parts.

Parts written by the modeling tool carry their identifier as four 32-bit
words (``nr``). Parts without one get an identifier derived from their
structure, so re-exporting the same avatar yields the same identifiers.
"""
from __future__ import annotations

import hashlib
import struct
import uuid
from typing import Optional, Tuple

from moon_model import CubeData, MeshData, ModelPart, SIDES
from moon_packed import decode_mesh_faces

CONVERT_NS = uuid.UUID("82703e95-07cb-41eb-8591-0ae63fc1e2db")

_KIND_TAG = {"group": b"G", "cube": b"C", "mesh": b"M"}


def words_to_id(words: Tuple[int, int, int, int]) -> uuid.UUID:
    w0, w1, w2, w3 = (int(w) & 0xFFFFFFFF for w in words)
    high = (w0 << 32) | w1
    low = (w2 << 32) | w3
    return uuid.UUID(int=(high << 64) | low)


def id_to_words(value: uuid.UUID) -> Tuple[int, int, int, int]:
    n = value.int
    return (
        (n >> 96) & 0xFFFFFFFF,
        (n >> 64) & 0xFFFFFFFF,
        (n >> 32) & 0xFFFFFFFF,
        n & 0xFFFFFFFF,
    )


def structural_hash(part: ModelPart) -> int:
    """64-bit hash of the parts of ``part`` that survive geometry edits.

    Exactly these fields participate, in this order:

    * the name (UTF-8),
    * the variant (group, cube or mesh),
    * for cubes, the texture slot of each side in n/s/u/d/w/e order, with
      absent sides hashed as a marker,
    * for meshes, the texture slot of each face in face order,
    * the structural hash of each child, in child order.

    Rotation, pivot, face UVs and rotation, inflate, and mesh vertex and UV
    arrays never participate: moving or reshaping a part must not change
    its identifier.
    """
    h = hashlib.blake2b(digest_size=8)
    name = part.name.encode("utf-8")
    h.update(struct.pack("<Q", len(name)))
    h.update(name)
    h.update(_KIND_TAG[part.kind])

    data = part.data
    if isinstance(data, CubeData):
        for key in SIDES:
            face = data.side(key)
            if face is None:
                h.update(b"-")
            else:
                h.update(b"+" + struct.pack("<Q", face.tex))
    elif isinstance(data, MeshData):
        faces = decode_mesh_faces(data.tex, data.fac)
        h.update(struct.pack("<Q", len(faces)))
        for face in faces:
            h.update(struct.pack("<Q", face.texture_index))

    h.update(struct.pack("<Q", len(part.children)))
    for child in part.children:
        h.update(struct.pack("<Q", structural_hash(child)))
    return struct.unpack("<Q", h.digest())[0]


def _name_uuid(namespace: uuid.UUID, name: bytes) -> uuid.UUID:
    digest = hashlib.sha1(namespace.bytes + name).digest()
    return uuid.UUID(bytes=digest[:16], version=5)


def derive_id(part: ModelPart, salt: Optional[int] = None, attempt: int = 0) -> uuid.UUID:
    # attempt > 0 only when an earlier identifier in the same conversion collided
    h = hashlib.blake2b(digest_size=8)
    if salt is not None:
        h.update(b"s" + struct.pack("<q", salt))
    if attempt:
        h.update(b"a" + struct.pack("<Q", attempt))
    h.update(struct.pack("<Q", structural_hash(part)))
    return _name_uuid(CONVERT_NS, h.digest())


def resolve_id(part: ModelPart, salt: Optional[int] = None) -> uuid.UUID:
    """Return the stored identifier of ``part``, or derive one.

    The salt only matters for derived identifiers; callers pass the number of
    elements emitted so far so identical siblings get different identifiers.
    """
    if part.nr is not None:
        return words_to_id(part.nr)
    return derive_id(part, salt)
