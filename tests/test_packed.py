import numpy as np
import pytest

from moon_errors import FormatError, InvariantViolation, SchemaViolation
from moon_packed import (
    MeshFace,
    decode_mesh_faces,
    encode_mesh_faces,
    narrowest_index_dtype,
    unpack_uvs,
    unpack_vertices,
)


def test_decode_splits_faces_in_order():
    tex = [(0 << 4) | 3, (2 << 4) | 4]
    fac = [0, 1, 2, 2, 3, 4, 5]
    faces = decode_mesh_faces(tex, fac)
    assert faces == [MeshFace(0, (0, 1, 2)), MeshFace(2, (2, 3, 4, 5))]


def test_decode_masks_signed_shorts():
    # 0xFFF4 read back from a signed short tag
    faces = decode_mesh_faces([-12], [0, 1, 2, 3])
    assert faces == [MeshFace(0xFFF, (0, 1, 2, 3))]


def test_decode_rejects_zero_vertex_face():
    with pytest.raises(FormatError):
        decode_mesh_faces([0x10], [])


def test_decode_rejects_short_fac():
    with pytest.raises(FormatError):
        decode_mesh_faces([4, 4], [0, 1, 2, 3, 4, 5])


def test_decode_rejects_leftover_fac():
    with pytest.raises(FormatError):
        decode_mesh_faces([4], [0, 1, 2, 3, 0, 1, 2])


@pytest.mark.parametrize(
    "max_index, dtype",
    [(0, np.uint8), (255, np.uint8), (256, np.uint16), (65535, np.uint16), (65536, np.uint32)],
)
def test_narrowest_dtype(max_index, dtype):
    assert narrowest_index_dtype(max_index) == np.dtype(dtype)


def test_narrowest_dtype_rejects_huge_index():
    with pytest.raises(SchemaViolation):
        narrowest_index_dtype(1 << 32)


def test_encode_picks_width_from_largest_index():
    faces = [MeshFace(1, (0, 1, 2)), MeshFace(0, (300, 2, 1, 0))]
    tex, fac = encode_mesh_faces(faces)
    assert tex == [(1 << 4) | 3, 4]
    assert fac.dtype == np.uint16
    assert decode_mesh_faces(tex, fac) == faces


def test_encode_rejects_oversized_face():
    with pytest.raises(InvariantViolation):
        encode_mesh_faces([MeshFace(0, tuple(range(16)))])


def test_encode_rejects_empty_face():
    with pytest.raises(InvariantViolation):
        encode_mesh_faces([MeshFace(0, ())])


def test_encode_rejects_texture_index_outside_twelve_bits():
    with pytest.raises(SchemaViolation):
        encode_mesh_faces([MeshFace(4096, (0, 1, 2))])


def test_unpack_vertices_and_uvs():
    positions = unpack_vertices([0, 1, 2, 3, 4, 5])
    assert positions.shape == (2, 3)
    faces = [MeshFace(0, (0, 1, 0)), MeshFace(0, (1, 0))]
    chunks = unpack_uvs([0, 0, 1, 1, 2, 2, 3, 3, 4, 4], faces)
    assert [c.shape for c in chunks] == [(3, 2), (2, 2)]
    assert chunks[1].tolist() == [[3.0, 3.0], [4.0, 4.0]]


def test_unpack_rejects_bad_lengths():
    with pytest.raises(InvariantViolation):
        unpack_vertices([0, 1])
    with pytest.raises(InvariantViolation):
        unpack_uvs([0, 0], [MeshFace(0, (0, 1, 2))])
