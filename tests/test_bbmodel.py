import json

import pytest
from conftest import cube, quad_mesh

import bbmodel
from moon_convert import hierarchy
from moon_errors import FormatError, SchemaViolation
from moon_model import ModelPart

MINIMAL = {
    "meta": {"format_version": "4.10", "model_format": "free", "box_uv": False},
    "name": "thing",
    "resolution": {"width": 64, "height": 64},
    "elements": [
        {
            "name": "box",
            "type": "cube",
            "uuid": "e1",
            "from": [0, 0, 0],
            "to": [1, 2, 3],
            "origin": [0, 0, 0],
            "faces": {"north": {"uv": [0, 0, 4, 4], "texture": 0}, "up": {"uv": [0, 0, 4, 4], "texture": None}},
        }
    ],
    "outliner": [{"name": "group", "uuid": "g1", "origin": [0, 0, 0], "children": ["e1"]}],
    "textures": [],
    "animations": [{"name": "idle"}],
}


def test_loads_minimal_document():
    model = bbmodel.loads(json.dumps(MINIMAL))
    assert model.name == "thing"
    assert model.resolution == bbmodel.Resolution(64, 64)
    box = model.elements[0]
    assert box.shape.to == (1.0, 2.0, 3.0)
    assert box.shape.faces.north.texture == 0
    assert box.shape.faces.up.texture is None
    assert model.outliner[0].children == ["e1"]
    assert model.opaque["animations"] == [{"name": "idle"}]


def test_dumps_then_loads_is_stable():
    model = bbmodel.loads(json.dumps(MINIMAL))
    again = bbmodel.loads(bbmodel.dumps(model))
    assert again == model


def test_unknown_top_level_field():
    doc = dict(MINIMAL, surprise=1)
    with pytest.raises(FormatError):
        bbmodel.loads(json.dumps(doc))


def test_unknown_nested_field():
    doc = json.loads(json.dumps(MINIMAL))
    doc["elements"][0]["faces"]["north"]["shine"] = True
    with pytest.raises(FormatError):
        bbmodel.loads(json.dumps(doc))
    doc = json.loads(json.dumps(MINIMAL))
    doc["outliner"][0]["selected"] = True
    with pytest.raises(FormatError):
        bbmodel.loads(json.dumps(doc))


def test_wrong_value_type():
    doc = json.loads(json.dumps(MINIMAL))
    doc["elements"][0]["from"] = [0, 0]
    with pytest.raises(SchemaViolation):
        bbmodel.loads(json.dumps(doc))


def test_unknown_element_type():
    doc = json.loads(json.dumps(MINIMAL))
    doc["elements"][0]["type"] = "locator"
    with pytest.raises(SchemaViolation):
        bbmodel.loads(json.dumps(doc))


def test_dangling_outliner_reference():
    doc = json.loads(json.dumps(MINIMAL))
    doc["outliner"][0]["children"].append("nope")
    with pytest.raises(SchemaViolation):
        bbmodel.loads(json.dumps(doc))


def test_invalid_json():
    with pytest.raises(FormatError):
        bbmodel.loads("{")


def test_missing_meta():
    doc = dict(MINIMAL)
    del doc["meta"]
    with pytest.raises(FormatError):
        bbmodel.loads(json.dumps(doc))


def test_mesh_faces_must_use_known_vertices():
    doc = json.loads(json.dumps(MINIMAL))
    doc["elements"][0] = {
        "name": "m",
        "type": "mesh",
        "uuid": "e1",
        "vertices": {"a": [0, 0, 0]},
        "faces": {"f": {"uv": {"a": [0, 0]}, "vertices": ["a", "b"], "texture": 0}},
    }
    with pytest.raises(SchemaViolation):
        bbmodel.loads(json.dumps(doc))


def test_converted_hierarchy_serialises_with_wire_names():
    tree = hierarchy(ModelPart("root", children=[ModelPart("g", children=[cube("box")]), quad_mesh()]))
    doc = bbmodel.BBModel.from_hierarchy(tree, name="x")
    raw = json.loads(bbmodel.dumps(doc))

    cube_json = raw["elements"][0]
    assert cube_json["type"] == "cube"
    assert cube_json["from"] == [0.0, 0.0, 0.0]
    assert cube_json["faces"]["up"] == {"uv": [0.0, 0.0, 16.0, 16.0], "texture": 0}
    assert cube_json["allow_mirror_modeling"] is True
    assert cube_json["mirror_uv"] is False

    mesh_json = raw["elements"][1]
    assert mesh_json["type"] == "mesh"
    assert mesh_json["faces"]["0"]["vertices"] == ["0", "1", "2", "3"]

    group_json = raw["outliner"][0]
    assert group_json["isOpen"] is False
    assert group_json["children"] == [cube_json["uuid"]]

    assert bbmodel.loads(bbmodel.dumps(doc)) == doc
