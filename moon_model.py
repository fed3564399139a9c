"""
In-memory model of a moon (compiled avatar bundle).

A moon stores the textures, scripts, animations, resources and metadata of an
avatar together with a tree of model parts. Parts are groups, cubes or meshes;
cubes and meshes are always leaves.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from moon_errors import SchemaViolation
from moon_packed import MeshFace, decode_mesh_faces, encode_mesh_faces, unpack_uvs

Vec3 = Tuple[float, float, float]
ZERO3: Vec3 = (0.0, 0.0, 0.0)
SIDES = ("n", "s", "u", "d", "w", "e")


class ParentType(enum.Enum):
    """Body or attachment slot a part binds to in the host renderer."""

    # No parent type: follows the parent's rotations.
    None_ = "None"

    Head = "Head"
    Body = "Body"
    LeftArm = "LeftArm"
    RightArm = "RightArm"
    LeftLeg = "LeftLeg"
    RightLeg = "RightLeg"
    LeftElytra = "LeftElytra"
    RightElytra = "RightElytra"
    Cape = "Cape"

    World = "World"
    Hud = "Hud"
    Camera = "Camera"
    Skull = "Skull"
    Portrait = "Portrait"
    Arrow = "Arrow"
    Trident = "Trident"
    Item = "Item"

    LeftItemPivot = "LeftItemPivot"
    RightItemPivot = "RightItemPivot"
    LeftSpyglassPivot = "LeftSpyglassPivot"
    RightSpyglassPivot = "RightSpyglassPivot"
    LeftParrotPivot = "LeftParrotPivot"
    RightParrotPivot = "RightParrotPivot"

    HelmetItemPivot = "HelmetItemPivot"
    HelmetPivot = "HelmetPivot"
    ChestplatePivot = "ChestplatePivot"
    LeftShoulderPivot = "LeftShoulderPivot"
    RightShoulderPivot = "RightShoulderPivot"
    LeggingsPivot = "LeggingsPivot"
    LeftLeggingPivot = "LeftLeggingPivot"
    RightLeggingPivot = "RightLeggingPivot"
    LeftBootPivot = "LeftBootPivot"
    RightBootPivot = "RightBootPivot"
    LeftElytraPivot = "LeftElytraPivot"
    RightElytraPivot = "RightElytraPivot"

    @classmethod
    def parse(cls, raw: str) -> "ParentType":
        try:
            return cls(raw)
        except ValueError:
            raise SchemaViolation(f"Unknown parent type: {raw!r}") from None


@dataclass
class TextureData:
    """One texture slot: primary layer ``d`` and optional emissive layer ``e``."""

    d: str
    e: Optional[str] = None


@dataclass
class Textures:
    src: Dict[str, bytes] = field(default_factory=dict)
    data: List[TextureData] = field(default_factory=list)
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Metadata:
    name: str = ""
    description: str = ""
    authors: List[str] = field(default_factory=list)
    color: Optional[str] = None
    ver: str = ""
    uuid: str = ""
    bg: Optional[str] = None
    id: Optional[str] = None
    auto_scripts: Optional[List[str]] = None
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Face:
    tex: int
    uv: Tuple[float, float, float, float]
    rot: float = 0.0


@dataclass
class GroupData:
    pass


@dataclass
class CubeData:
    faces: Dict[str, Face] = field(default_factory=dict)
    f: Vec3 = ZERO3
    t: Vec3 = ZERO3
    inf: float = 0.0

    def side(self, key: str) -> Optional[Face]:
        return self.faces.get(key)


@dataclass
class MeshData:
    vtx: List[float] = field(default_factory=list)
    tex: List[int] = field(default_factory=list)
    fac: List[int] = field(default_factory=list)
    uvs: List[float] = field(default_factory=list)

    def faces(self) -> List[MeshFace]:
        return decode_mesh_faces(self.tex, self.fac)


PartData = Union[GroupData, CubeData, MeshData]


@dataclass
class ModelPart:
    name: str
    children: List["ModelPart"] = field(default_factory=list)
    data: PartData = field(default_factory=GroupData)
    anim: Any = None
    rot: Vec3 = ZERO3
    piv: Vec3 = ZERO3
    primary: Optional[str] = None
    secondary: Optional[str] = None
    pt: Optional[ParentType] = None
    vsb: bool = True
    smo: bool = False
    nr: Optional[Tuple[int, int, int, int]] = None
    cn: Optional[List[str]] = None
    pr: Optional[List[int]] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def kind(self) -> str:
        if isinstance(self.data, CubeData):
            return "cube"
        if isinstance(self.data, MeshData):
            return "mesh"
        return "group"

    def walk(self):
        """Yield this part and every descendant in pre-order."""
        stack = [self]
        while stack:
            part = stack.pop()
            yield part
            stack.extend(reversed(part.children))


@dataclass
class Bundle:
    textures: Textures = field(default_factory=Textures)
    scripts: Dict[str, bytes] = field(default_factory=dict)
    animations: List[Any] = field(default_factory=list)
    models: Optional[ModelPart] = None
    resources: Dict[str, bytes] = field(default_factory=dict)
    metadata: Metadata = field(default_factory=Metadata)
    tag_name: str = ""
    extra: Dict[str, Any] = field(default_factory=dict)


def add_script(bundle: Bundle, name: str, source: bytes) -> None:
    bundle.scripts[name] = bytes(source)


def remove_script(bundle: Bundle, name: str) -> None:
    if name not in bundle.scripts:
        raise KeyError(f"No script named {name!r}")
    del bundle.scripts[name]


def add_author(bundle: Bundle, author: str) -> bool:
    """Append ``author``; False when it is blank or already listed."""
    author = author.strip()
    if not author or author in bundle.metadata.authors:
        return False
    bundle.metadata.authors.append(author)
    return True


def add_texture(bundle: Bundle, name: str, png: bytes, emissive: Optional[str] = None) -> int:
    """Store texture bytes and return the index of the slot that uses them.

    A slot is created when no slot has ``name`` as its primary layer yet.
    """
    bundle.textures.src[name] = bytes(png)
    for i, slot in enumerate(bundle.textures.data):
        if slot.d == name:
            if emissive is not None:
                slot.e = emissive
            return i
    bundle.textures.data.append(TextureData(name, emissive))
    return len(bundle.textures.data) - 1


def remove_texture(bundle: Bundle, name: str) -> None:
    """Drop texture bytes and every slot whose primary layer they were.

    Slot indices above a dropped slot shift down by one; cube faces and mesh
    faces that used a dropped slot are removed from the model tree.
    """
    if name not in bundle.textures.src:
        raise KeyError(f"No texture named {name!r}")
    del bundle.textures.src[name]

    index_map: Dict[int, Optional[int]] = {}
    kept: List[TextureData] = []
    for i, slot in enumerate(bundle.textures.data):
        if slot.d == name:
            index_map[i] = None
            continue
        index_map[i] = len(kept)
        kept.append(TextureData(slot.d, None if slot.e == name else slot.e))
    bundle.textures.data = kept

    if bundle.models is not None and any(k != v for k, v in index_map.items()):
        bundle.models = remap_textures(bundle.models, index_map)


def remap_textures(part: ModelPart, index_map: Dict[int, Optional[int]]) -> ModelPart:
    """Return a copy of ``part`` with texture slot indices passed through ``index_map``.

    Indices missing from the map are kept; indices mapped to ``None`` remove
    the face that used them.
    """

    def remap(idx: int) -> Optional[int]:
        return index_map.get(idx, idx)

    data = part.data
    if isinstance(data, CubeData):
        faces: Dict[str, Face] = {}
        for key, face in data.faces.items():
            new_idx = remap(face.tex)
            if new_idx is not None:
                faces[key] = replace(face, tex=new_idx)
        data = replace(data, faces=faces)
    elif isinstance(data, MeshData):
        data = _remap_mesh(data, remap)

    return replace(
        part,
        data=data,
        children=[remap_textures(child, index_map) for child in part.children],
    )


def _remap_mesh(mesh: MeshData, remap) -> MeshData:
    faces = mesh.faces()
    uv_chunks = unpack_uvs(mesh.uvs, faces)
    new_faces: List[MeshFace] = []
    new_uvs: List[float] = []
    for face, uv in zip(faces, uv_chunks):
        new_idx = remap(face.texture_index)
        if new_idx is None:
            continue
        new_faces.append(MeshFace(new_idx, face.vertex_indices))
        new_uvs.extend(float(v) for v in uv.reshape(-1))
    tex, fac = encode_mesh_faces(new_faces)
    return MeshData(vtx=list(mesh.vtx), tex=tex, fac=[int(v) for v in fac], uvs=new_uvs)


def find_part(root: ModelPart, index_path: Sequence[int]) -> ModelPart:
    part = root
    for depth, idx in enumerate(index_path):
        if not 0 <= idx < len(part.children):
            raise SchemaViolation(
                f"Child index {idx} at depth {depth} is out of range "
                f"({part.name!r} has {len(part.children)} children)"
            )
        part = part.children[idx]
    return part
