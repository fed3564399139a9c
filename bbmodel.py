"""
Blockbench ``.bbmodel`` documents.

Field names follow the Blockbench project format exactly. Decoding is strict:
an unknown field anywhere in the document raises ``FormatError`` and a value
of the wrong type raises ``SchemaViolation``. Animations, reference images and
similar tool state are carried as plain JSON values without interpretation.
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from moon_errors import FormatError, SchemaViolation

FACE_NAMES = ("north", "east", "south", "west", "up", "down")
FORMAT_VERSION_RX = re.compile(r"^\d+\.\d+$")
DEFAULT_FORMAT_VERSION = "4.10"


def _obj(value: Any, where: str, allowed: Iterable[str]) -> Dict[str, Any]:
    if not isinstance(value, dict):
        raise SchemaViolation(f"{where}: expected an object, got {type(value).__name__}")
    unknown = sorted(set(value) - set(allowed))
    if unknown:
        raise FormatError(f"{where}: unknown field(s): {', '.join(unknown)}")
    return value


def _required(obj: Dict[str, Any], key: str, where: str) -> Any:
    if key not in obj:
        raise FormatError(f"{where}: missing field '{key}'")
    return obj[key]


def _str(value: Any, where: str) -> str:
    if not isinstance(value, str):
        raise SchemaViolation(f"{where}: expected a string, got {value!r}")
    return value


def _opt_str(value: Any, where: str) -> Optional[str]:
    return None if value is None else _str(value, where)


def _bool(value: Any, where: str) -> bool:
    if not isinstance(value, bool):
        raise SchemaViolation(f"{where}: expected a boolean, got {value!r}")
    return value


def _opt_bool(value: Any, where: str) -> Optional[bool]:
    return None if value is None else _bool(value, where)


def _int(value: Any, where: str, lo: int = 0, hi: Optional[int] = None) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or int(value) != value:
        raise SchemaViolation(f"{where}: expected an integer, got {value!r}")
    value = int(value)
    if value < lo or (hi is not None and value > hi):
        raise SchemaViolation(f"{where}: {value} is out of range")
    return value


def _opt_int(value: Any, where: str, lo: int = 0, hi: Optional[int] = None) -> Optional[int]:
    return None if value is None else _int(value, where, lo, hi)


def _num(value: Any, where: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise SchemaViolation(f"{where}: expected a number, got {value!r}")
    return float(value)


def _opt_num(value: Any, where: str) -> Optional[float]:
    return None if value is None else _num(value, where)


def _vec(value: Any, n: int, where: str) -> Tuple[float, ...]:
    if not isinstance(value, list) or len(value) != n:
        raise SchemaViolation(f"{where}: expected a list of {n} numbers, got {value!r}")
    return tuple(_num(v, where) for v in value)


def _drop_none(obj: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in obj.items() if v is not None}


@dataclass
class Face:
    uv: Tuple[float, float, float, float]
    texture: Optional[int] = None
    rotation: float = 0.0
    cullface: Optional[str] = None
    tint: Optional[int] = None

    FIELDS = ("uv", "texture", "rotation", "cullface", "tint")

    @classmethod
    def from_json(cls, raw: Any, where: str = "face") -> "Face":
        obj = _obj(raw, where, cls.FIELDS)
        return cls(
            uv=_vec(_required(obj, "uv", where), 4, f"{where}.uv"),
            texture=_opt_int(obj.get("texture"), f"{where}.texture"),
            rotation=_num(obj.get("rotation", 0), f"{where}.rotation"),
            cullface=_opt_str(obj.get("cullface"), f"{where}.cullface"),
            tint=_opt_int(obj.get("tint"), f"{where}.tint", lo=-1),
        )

    def to_json(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"uv": list(self.uv), "texture": self.texture}
        if self.rotation:
            out["rotation"] = self.rotation
        if self.cullface is not None:
            out["cullface"] = self.cullface
        if self.tint is not None:
            out["tint"] = self.tint
        return out


@dataclass
class Faces:
    north: Optional[Face] = None
    east: Optional[Face] = None
    south: Optional[Face] = None
    west: Optional[Face] = None
    up: Optional[Face] = None
    down: Optional[Face] = None

    @classmethod
    def from_json(cls, raw: Any, where: str = "faces") -> "Faces":
        obj = _obj(raw, where, FACE_NAMES)
        return cls(
            **{
                name: None if obj.get(name) is None else Face.from_json(obj[name], f"{where}.{name}")
                for name in FACE_NAMES
            }
        )

    def to_json(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for name in FACE_NAMES:
            face = getattr(self, name)
            if face is not None:
                out[name] = face.to_json()
        return out

    def items(self) -> List[Tuple[str, Face]]:
        return [(n, getattr(self, n)) for n in FACE_NAMES if getattr(self, n) is not None]


@dataclass
class Cube:
    """Cube payload of an element (a box, possibly inverted or inflated)."""

    from_: Tuple[float, float, float]
    to: Tuple[float, float, float]
    faces: Faces = field(default_factory=Faces)
    uv_offset: Optional[Tuple[float, float]] = None
    box_uv: Optional[bool] = None
    rescale: bool = False
    autouv: int = 0
    light_emission: Optional[int] = None
    mirror_uv: Optional[bool] = None
    inflate: Optional[float] = None
    shade: Optional[bool] = None

    TYPE = "cube"
    FIELDS = (
        "from", "to", "uv_offset", "faces", "box_uv", "rescale", "autouv",
        "light_emission", "mirror_uv", "inflate", "shade",
    )

    @classmethod
    def from_json(cls, obj: Dict[str, Any], where: str) -> "Cube":
        uv_offset = obj.get("uv_offset")
        return cls(
            from_=_vec(_required(obj, "from", where), 3, f"{where}.from"),
            to=_vec(_required(obj, "to", where), 3, f"{where}.to"),
            faces=Faces.from_json(obj.get("faces", {}), f"{where}.faces"),
            uv_offset=None if uv_offset is None else _vec(uv_offset, 2, f"{where}.uv_offset"),
            box_uv=_opt_bool(obj.get("box_uv"), f"{where}.box_uv"),
            rescale=_bool(obj.get("rescale", False), f"{where}.rescale"),
            autouv=_int(obj.get("autouv", 0), f"{where}.autouv", hi=255),
            light_emission=_opt_int(obj.get("light_emission"), f"{where}.light_emission", hi=255),
            mirror_uv=_opt_bool(obj.get("mirror_uv"), f"{where}.mirror_uv"),
            inflate=_opt_num(obj.get("inflate"), f"{where}.inflate"),
            shade=_opt_bool(obj.get("shade"), f"{where}.shade"),
        )

    def to_json(self) -> Dict[str, Any]:
        return _drop_none(
            {
                "from": list(self.from_),
                "to": list(self.to),
                "uv_offset": None if self.uv_offset is None else list(self.uv_offset),
                "faces": self.faces.to_json(),
                "box_uv": self.box_uv,
                "rescale": self.rescale,
                "autouv": self.autouv,
                "light_emission": self.light_emission,
                "mirror_uv": self.mirror_uv,
                "inflate": self.inflate,
                "shade": self.shade,
            }
        )


@dataclass
class MeshFace:
    uv: Dict[str, Tuple[float, float]]
    vertices: List[str]
    texture: Optional[int] = None

    FIELDS = ("uv", "vertices", "texture")

    @classmethod
    def from_json(cls, raw: Any, where: str) -> "MeshFace":
        obj = _obj(raw, where, cls.FIELDS)
        uv = obj.get("uv", {})
        if not isinstance(uv, dict):
            raise SchemaViolation(f"{where}.uv: expected an object")
        vertices = _required(obj, "vertices", where)
        if not isinstance(vertices, list):
            raise SchemaViolation(f"{where}.vertices: expected a list")
        return cls(
            uv={k: _vec(v, 2, f"{where}.uv.{k}") for k, v in uv.items()},
            vertices=[_str(v, f"{where}.vertices") for v in vertices],
            texture=_opt_int(obj.get("texture"), f"{where}.texture"),
        )

    def to_json(self) -> Dict[str, Any]:
        return {
            "uv": {k: list(v) for k, v in self.uv.items()},
            "vertices": list(self.vertices),
            "texture": self.texture,
        }


@dataclass
class Mesh:
    """Mesh payload of an element: free vertices and polygon faces."""

    vertices: Dict[str, Tuple[float, float, float]] = field(default_factory=dict)
    faces: Dict[str, MeshFace] = field(default_factory=dict)

    TYPE = "mesh"
    FIELDS = ("vertices", "faces")

    @classmethod
    def from_json(cls, obj: Dict[str, Any], where: str) -> "Mesh":
        vertices = obj.get("vertices", {})
        faces = obj.get("faces", {})
        if not isinstance(vertices, dict) or not isinstance(faces, dict):
            raise SchemaViolation(f"{where}: mesh vertices and faces must be objects")
        mesh = cls(
            vertices={k: _vec(v, 3, f"{where}.vertices.{k}") for k, v in vertices.items()},
            faces={k: MeshFace.from_json(v, f"{where}.faces.{k}") for k, v in faces.items()},
        )
        for key, face in mesh.faces.items():
            missing = [v for v in face.vertices if v not in mesh.vertices]
            if missing:
                raise SchemaViolation(f"{where}.faces.{key}: unknown vertices {missing}")
        return mesh

    def to_json(self) -> Dict[str, Any]:
        return {
            "vertices": {k: list(v) for k, v in self.vertices.items()},
            "faces": {k: f.to_json() for k, f in self.faces.items()},
        }


ElementShape = Union[Cube, Mesh]
_SHAPES = {Cube.TYPE: Cube, Mesh.TYPE: Mesh}
_ELEMENT_FIELDS = (
    "name", "uuid", "origin", "visibility", "locked", "render_order",
    "allow_mirror_modeling", "export", "color", "rotation", "type",
)


@dataclass
class Element:
    name: str
    uuid: str
    shape: ElementShape
    origin: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    visibility: Optional[bool] = True
    locked: bool = False
    render_order: Any = None
    allow_mirror_modeling: bool = True
    export: Optional[bool] = True
    color: int = 0
    rotation: Tuple[float, float, float] = (0.0, 0.0, 0.0)

    @property
    def type(self) -> str:
        return self.shape.TYPE

    @classmethod
    def from_json(cls, raw: Any, where: str = "element") -> "Element":
        if not isinstance(raw, dict):
            raise SchemaViolation(f"{where}: expected an object")
        kind = raw.get("type", Cube.TYPE)
        shape_cls = _SHAPES.get(kind)
        if shape_cls is None:
            raise SchemaViolation(f"{where}: unsupported element type {kind!r}")
        obj = _obj(raw, where, _ELEMENT_FIELDS + shape_cls.FIELDS)
        return cls(
            name=_str(_required(obj, "name", where), f"{where}.name"),
            uuid=_str(_required(obj, "uuid", where), f"{where}.uuid"),
            shape=shape_cls.from_json(obj, where),
            origin=_vec(obj.get("origin", [0, 0, 0]), 3, f"{where}.origin"),
            visibility=_opt_bool(obj.get("visibility"), f"{where}.visibility"),
            locked=_bool(obj.get("locked", False), f"{where}.locked"),
            render_order=obj.get("render_order"),
            allow_mirror_modeling=_bool(
                obj.get("allow_mirror_modeling", True), f"{where}.allow_mirror_modeling"
            ),
            export=_opt_bool(obj.get("export"), f"{where}.export"),
            color=_int(obj.get("color", 0), f"{where}.color", hi=255),
            rotation=_vec(obj.get("rotation", [0, 0, 0]), 3, f"{where}.rotation"),
        )

    def to_json(self) -> Dict[str, Any]:
        out = _drop_none(
            {
                "name": self.name,
                "uuid": self.uuid,
                "type": self.type,
                "origin": list(self.origin),
                "visibility": self.visibility,
                "locked": self.locked,
                "render_order": self.render_order,
                "allow_mirror_modeling": self.allow_mirror_modeling,
                "export": self.export,
                "color": self.color,
                "rotation": list(self.rotation),
            }
        )
        out.update(self.shape.to_json())
        return out


@dataclass
class Group:
    name: str
    uuid: str
    origin: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    rotation: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    color: int = 0
    export: bool = True
    mirror_uv: bool = False
    isOpen: bool = False
    locked: bool = False
    visibility: bool = True
    autouv: int = 0
    children: List["OutlinerItem"] = field(default_factory=list)

    FIELDS = (
        "name", "uuid", "origin", "rotation", "color", "export", "mirror_uv",
        "isOpen", "locked", "visibility", "autouv", "children",
    )

    @classmethod
    def from_json(cls, raw: Any, where: str = "group") -> "Group":
        obj = _obj(raw, where, cls.FIELDS)
        children = obj.get("children", [])
        if not isinstance(children, list):
            raise SchemaViolation(f"{where}.children: expected a list")
        return cls(
            name=_str(_required(obj, "name", where), f"{where}.name"),
            uuid=_str(_required(obj, "uuid", where), f"{where}.uuid"),
            origin=_vec(obj.get("origin", [0, 0, 0]), 3, f"{where}.origin"),
            rotation=_vec(obj.get("rotation", [0, 0, 0]), 3, f"{where}.rotation"),
            color=_int(obj.get("color", 0), f"{where}.color", hi=255),
            export=_bool(obj.get("export", True), f"{where}.export"),
            mirror_uv=_bool(obj.get("mirror_uv", False), f"{where}.mirror_uv"),
            isOpen=_bool(obj.get("isOpen", False), f"{where}.isOpen"),
            locked=_bool(obj.get("locked", False), f"{where}.locked"),
            visibility=_bool(obj.get("visibility", True), f"{where}.visibility"),
            autouv=_int(obj.get("autouv", 0), f"{where}.autouv", hi=255),
            children=[
                outliner_item_from_json(c, f"{where}.children[{i}]") for i, c in enumerate(children)
            ],
        )

    def to_json(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "origin": list(self.origin),
            "rotation": list(self.rotation),
            "color": self.color,
            "uuid": self.uuid,
            "export": self.export,
            "mirror_uv": self.mirror_uv,
            "isOpen": self.isOpen,
            "locked": self.locked,
            "visibility": self.visibility,
            "autouv": self.autouv,
            "children": [outliner_item_to_json(c) for c in self.children],
        }


# Either a group or the uuid of an element in the flat element list.
OutlinerItem = Union[Group, str]


def outliner_item_from_json(raw: Any, where: str = "outliner") -> OutlinerItem:
    if isinstance(raw, str):
        return raw
    return Group.from_json(raw, where)


def outliner_item_to_json(item: OutlinerItem) -> Any:
    return item if isinstance(item, str) else item.to_json()


@dataclass
class Hierarchy:
    """Elements plus outliner: the part of a model that conversion produces."""

    elements: List[Element] = field(default_factory=list)
    outliner: List[OutlinerItem] = field(default_factory=list)

    def element_map(self) -> Dict[str, Element]:
        return {e.uuid: e for e in self.elements}

    def to_json(self) -> Dict[str, Any]:
        return {
            "elements": [e.to_json() for e in self.elements],
            "outliner": [outliner_item_to_json(o) for o in self.outliner],
        }


@dataclass
class Meta:
    format_version: str = DEFAULT_FORMAT_VERSION
    model_format: str = "free"
    box_uv: bool = False

    FIELDS = ("format_version", "model_format", "box_uv")

    @classmethod
    def from_json(cls, raw: Any, where: str = "meta") -> "Meta":
        obj = _obj(raw, where, cls.FIELDS)
        version = _str(_required(obj, "format_version", where), f"{where}.format_version")
        if not FORMAT_VERSION_RX.match(version):
            raise SchemaViolation(f"{where}.format_version: not a version number: {version!r}")
        return cls(
            format_version=version,
            model_format=_str(_required(obj, "model_format", where), f"{where}.model_format"),
            box_uv=_bool(obj.get("box_uv", False), f"{where}.box_uv"),
        )

    def to_json(self) -> Dict[str, Any]:
        return {
            "format_version": self.format_version,
            "model_format": self.model_format,
            "box_uv": self.box_uv,
        }


@dataclass
class Resolution:
    width: int = 16
    height: int = 16

    @classmethod
    def from_json(cls, raw: Any, where: str = "resolution") -> "Resolution":
        obj = _obj(raw, where, ("width", "height"))
        return cls(
            width=_int(_required(obj, "width", where), f"{where}.width"),
            height=_int(_required(obj, "height", where), f"{where}.height"),
        )

    def to_json(self) -> Dict[str, Any]:
        return {"width": self.width, "height": self.height}


@dataclass
class Texture:
    """A texture entry; ``source`` is usually a ``data:image/png;base64,`` URL."""

    name: str
    uuid: str
    id: str = "0"
    path: str = ""
    relative_path: Optional[str] = None
    folder: str = "block"
    namespace: str = ""
    group: Optional[str] = None
    width: int = 16
    height: int = 16
    uv_width: int = 16
    uv_height: int = 16
    particle: bool = False
    use_as_default: bool = False
    layers_enabled: bool = False
    sync_to_project: str = ""
    render_mode: str = "default"
    render_sides: str = "auto"
    frame_time: int = 1
    frame_order_type: str = "loop"
    frame_order: str = ""
    frame_interpolate: Optional[bool] = False
    visible: bool = True
    internal: bool = True
    saved: bool = True
    mode: Any = None
    layers: Any = None
    source: str = ""

    _STR = ("id", "path", "folder", "namespace", "sync_to_project", "render_mode",
            "render_sides", "frame_order_type", "frame_order", "source")
    _OPT_STR = ("relative_path", "group")
    _INT = ("width", "height", "uv_width", "uv_height", "frame_time")
    _BOOL = ("particle", "use_as_default", "layers_enabled", "visible", "internal", "saved")
    FIELDS = ("name", "uuid", "frame_interpolate", "mode", "layers") + _STR + _OPT_STR + _INT + _BOOL

    @classmethod
    def from_json(cls, raw: Any, where: str = "texture") -> "Texture":
        obj = _obj(raw, where, cls.FIELDS)
        kwargs: Dict[str, Any] = {
            "name": _str(_required(obj, "name", where), f"{where}.name"),
            "uuid": _str(_required(obj, "uuid", where), f"{where}.uuid"),
        }
        for key in cls._STR:
            if key in obj:
                kwargs[key] = _str(obj[key], f"{where}.{key}")
        for key in cls._OPT_STR:
            if key in obj:
                kwargs[key] = _opt_str(obj[key], f"{where}.{key}")
        for key in cls._INT:
            if key in obj:
                kwargs[key] = _int(obj[key], f"{where}.{key}")
        for key in cls._BOOL:
            if key in obj:
                kwargs[key] = _bool(obj[key], f"{where}.{key}")
        if "frame_interpolate" in obj:
            kwargs["frame_interpolate"] = _opt_bool(obj["frame_interpolate"], f"{where}.frame_interpolate")
        for key in ("mode", "layers"):
            if key in obj:
                kwargs[key] = obj[key]
        return cls(**kwargs)

    def to_json(self) -> Dict[str, Any]:
        out = {key: getattr(self, key) for key in self.FIELDS}
        return _drop_none(out)


# Top-level keys kept as raw JSON values.
_OPAQUE_ROOT = (
    "activity_tracker", "animation_variable_placeholders", "animations", "box_uv",
    "export_options", "model_identifier", "reference_images", "texture_groups",
    "timeline_setups", "unhandled_root_fields", "variable_placeholder_buttons",
    "variable_placeholders", "visible_box",
)


@dataclass
class BBModel:
    meta: Meta = field(default_factory=Meta)
    name: Optional[str] = None
    resolution: Resolution = field(default_factory=Resolution)
    elements: List[Element] = field(default_factory=list)
    outliner: List[OutlinerItem] = field(default_factory=list)
    textures: List[Texture] = field(default_factory=list)
    opaque: Dict[str, Any] = field(default_factory=dict)

    FIELDS = ("meta", "name", "resolution", "elements", "outliner", "textures") + _OPAQUE_ROOT

    @classmethod
    def from_json(cls, raw: Any) -> "BBModel":
        obj = _obj(raw, "model", cls.FIELDS)
        for key in ("elements", "outliner", "textures"):
            if not isinstance(obj.get(key, []), list):
                raise SchemaViolation(f"model.{key}: expected a list")
        model = cls(
            meta=Meta.from_json(_required(obj, "meta", "model")),
            name=_opt_str(obj.get("name"), "model.name"),
            resolution=Resolution.from_json(obj.get("resolution", {"width": 16, "height": 16})),
            elements=[Element.from_json(e, f"elements[{i}]") for i, e in enumerate(obj.get("elements", []))],
            outliner=[
                outliner_item_from_json(o, f"outliner[{i}]") for i, o in enumerate(obj.get("outliner", []))
            ],
            textures=[Texture.from_json(t, f"textures[{i}]") for i, t in enumerate(obj.get("textures", []))],
            opaque={k: obj[k] for k in _OPAQUE_ROOT if k in obj},
        )
        known = {e.uuid for e in model.elements}
        for ref in iter_element_refs(model.outliner):
            if ref not in known:
                raise SchemaViolation(f"outliner references unknown element {ref!r}")
        return model

    @classmethod
    def from_hierarchy(cls, hierarchy: Hierarchy, **kwargs: Any) -> "BBModel":
        return cls(elements=list(hierarchy.elements), outliner=list(hierarchy.outliner), **kwargs)

    @property
    def hierarchy(self) -> Hierarchy:
        return Hierarchy(list(self.elements), list(self.outliner))

    def to_json(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"meta": self.meta.to_json()}
        if self.name is not None:
            out["name"] = self.name
        out.update(self.opaque)
        out["resolution"] = self.resolution.to_json()
        out["elements"] = [e.to_json() for e in self.elements]
        out["outliner"] = [outliner_item_to_json(o) for o in self.outliner]
        out["textures"] = [t.to_json() for t in self.textures]
        return out


def iter_element_refs(items: Iterable[OutlinerItem]):
    stack = list(items)[::-1]
    while stack:
        item = stack.pop()
        if isinstance(item, str):
            yield item
        else:
            stack.extend(reversed(item.children))


def loads(text: Union[str, bytes]) -> BBModel:
    try:
        raw = json.loads(text)
    except ValueError as exc:
        raise FormatError(f"Invalid bbmodel JSON: {exc}") from exc
    return BBModel.from_json(raw)


def dumps(model: BBModel, indent: Optional[int] = None) -> str:
    return json.dumps(model.to_json(), ensure_ascii=False, indent=indent)
