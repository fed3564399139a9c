import copy
import uuid

import pytest
from conftest import cube, quad_mesh

import bbmodel
from moon_convert import (
    convert,
    convert_subtree,
    hierarchy,
    part_from_hierarchy,
    summarize,
)
from moon_errors import FormatError, InvariantViolation, SchemaViolation
from moon_model import Bundle, CubeData, MeshData, ModelPart, TextureData, Textures


def test_group_with_cube_converts_to_element_and_reference():
    root = ModelPart("root", children=[cube("box")])
    elements = []
    item = convert(root, elements, salt=0)

    assert len(elements) == 1
    element = elements[0]
    assert element.name == "box"
    assert isinstance(element.shape, bbmodel.Cube)
    assert element.shape.from_ == (0.0, 0.0, 0.0)
    assert element.shape.to == (1.0, 1.0, 1.0)
    assert element.shape.faces.up.uv == (0.0, 0.0, 16.0, 16.0)
    assert element.shape.faces.up.texture == 0
    assert element.shape.faces.north is None

    assert isinstance(item, bbmodel.Group)
    assert item.name == "root"
    assert item.children == [element.uuid]


def test_cube_element_defaults():
    elements = []
    convert(cube("box", piv=(1.0, 2.0, 3.0)), elements)
    element = elements[0]
    assert element.origin == (1.0, 2.0, 3.0)
    assert element.allow_mirror_modeling is True
    assert element.export is True
    assert element.color == 0
    assert element.shape.autouv == 0
    assert element.shape.box_uv is None
    assert element.shape.mirror_uv is False
    assert element.shape.rescale is False
    assert element.shape.inflate == 0.0


def test_cube_with_children_is_rejected():
    bad = cube("box", children=[cube("inner")])
    with pytest.raises(InvariantViolation):
        convert(ModelPart("root", children=[bad]), [])


def test_mesh_with_children_is_rejected():
    bad = quad_mesh()
    bad.children.append(cube("inner"))
    with pytest.raises(InvariantViolation):
        convert(bad, [])


def test_identical_siblings_get_distinct_ids():
    root = ModelPart("root", children=[cube("box", piv=(0.0, 0.0, 0.0)), cube("box", piv=(5.0, 0.0, 0.0))])
    elements = []
    group = convert(root, elements, salt=0)
    assert len(set(group.children)) == 2
    assert [e.uuid for e in elements] == group.children


def test_identical_empty_groups_get_distinct_ids():
    root = ModelPart("root", children=[ModelPart("g"), ModelPart("g")])
    group = convert(root, [], salt=0)
    assert group.children[0].uuid != group.children[1].uuid


def test_conversion_is_deterministic():
    root = ModelPart("root", children=[cube("a"), ModelPart("g", children=[cube("b")]), quad_mesh()])
    first = hierarchy(root)
    second = hierarchy(root)
    assert first == second


def test_conversion_does_not_mutate_input():
    root = ModelPart("root", children=[cube("a"), quad_mesh()])
    before = copy.deepcopy(root)
    hierarchy(root)
    assert root == before


def test_stored_ids_are_used():
    stored = (1, 2, 3, 4)
    elements = []
    ident = convert(cube("box", nr=stored), elements)
    assert ident == str(uuid.UUID(int=(1 << 96) | (2 << 64) | (3 << 32) | 4))


def test_child_order_is_preserved():
    root = ModelPart("root", children=[cube("c"), cube("a"), cube("b")])
    tree = hierarchy(ModelPart("top", children=[root]))
    assert [e.name for e in tree.elements] == ["c", "a", "b"]


def test_mesh_conversion():
    elements = []
    ident = convert(quad_mesh(tex=1), elements, texture_count=2)
    mesh = elements[0].shape
    assert ident == elements[0].uuid
    assert isinstance(mesh, bbmodel.Mesh)
    assert mesh.vertices == {
        "0": (0.0, 0.0, 0.0),
        "1": (1.0, 0.0, 0.0),
        "2": (1.0, 0.0, 1.0),
        "3": (0.0, 0.0, 1.0),
    }
    face = mesh.faces["0"]
    assert face.vertices == ["0", "1", "2", "3"]
    assert face.texture == 1
    assert face.uv == {"0": (0.0, 0.0), "1": (16.0, 0.0), "2": (16.0, 16.0), "3": (0.0, 16.0)}


def test_mesh_vertex_index_out_of_range():
    mesh = quad_mesh()
    mesh.data.fac = [0, 1, 2, 9]
    with pytest.raises(InvariantViolation):
        convert(mesh, [])


def test_mesh_with_leftover_indices_is_rejected():
    mesh = quad_mesh()
    mesh.data.fac = [0, 1, 2, 3, 0, 1, 2]
    with pytest.raises(FormatError):
        convert(mesh, [])


def test_texture_slot_must_exist():
    with pytest.raises(SchemaViolation):
        convert(cube("box", tex=2), [], texture_count=2)
    with pytest.raises(SchemaViolation):
        convert(quad_mesh(tex=1), [], texture_count=1)


def test_hierarchy_requires_group():
    with pytest.raises(SchemaViolation):
        hierarchy(cube("box"))


def test_convert_subtree(simple_bundle):
    tree = convert_subtree(simple_bundle, [0])
    assert [e.name for e in tree.elements] == ["box", "plane"]
    assert tree.outliner == [e.uuid for e in tree.elements]

    whole = convert_subtree(simple_bundle, [])
    assert len(whole.outliner) == 1
    assert whole.outliner[0].name == "model"


def test_convert_subtree_bad_path(simple_bundle):
    with pytest.raises(SchemaViolation):
        convert_subtree(simple_bundle, [3])
    with pytest.raises(SchemaViolation):
        convert_subtree(Bundle(), [])


def test_summarize(simple_bundle):
    counts = summarize(convert_subtree(simple_bundle, []))
    assert counts == {"groups": 1, "cubes": 1, "meshes": 1, "faces": 2, "vertices": 12}


def test_reverse_conversion_keeps_ids_and_geometry(simple_bundle):
    tree = convert_subtree(simple_bundle, [])
    rebuilt = part_from_hierarchy("models", tree)
    assert rebuilt.name == "models"
    model = rebuilt.children[0]
    assert model.name == "model"
    assert model.piv == (0.0, 8.0, 0.0)
    assert model.rot == (0.0, 45.0, 0.0)

    box, plane = model.children
    assert isinstance(box.data, CubeData)
    assert box.data.faces["u"].uv == (0.0, 0.0, 16.0, 16.0)
    assert isinstance(plane.data, MeshData)
    assert plane.data.tex == simple_bundle.models.children[0].children[1].data.tex
    assert plane.data.fac == [0, 1, 2, 3]

    again = hierarchy(rebuilt, texture_count=1)
    assert [e.uuid for e in again.elements] == [e.uuid for e in tree.elements]
    assert again.outliner[0].uuid == tree.outliner[0].uuid


def test_reverse_conversion_remaps_and_drops_textures():
    tree = hierarchy(ModelPart("root", children=[cube("box", tex=0), quad_mesh(tex=1)]))
    rebuilt = part_from_hierarchy("m", tree, texture_map={0: 5})
    box, plane = rebuilt.children
    assert box.data.faces["u"].tex == 5
    assert plane.data.tex == []


def test_reverse_conversion_skips_unexported():
    tree = hierarchy(ModelPart("root", children=[cube("a"), cube("b")]))
    tree.elements[0].export = False
    rebuilt = part_from_hierarchy("m", tree)
    assert [c.name for c in rebuilt.children] == ["b"]


def test_reverse_conversion_unknown_reference():
    tree = bbmodel.Hierarchy(outliner=["missing"])
    with pytest.raises(SchemaViolation):
        part_from_hierarchy("m", tree)


def test_convert_checks_bundle_texture_slots(simple_bundle):
    simple_bundle.textures = Textures(src={}, data=[])
    with pytest.raises(SchemaViolation):
        convert_subtree(simple_bundle, [0])
    simple_bundle.textures.data.append(TextureData("x"))
    assert len(convert_subtree(simple_bundle, [0]).elements) == 2
