"""
Conversion between the moon model-part tree and Blockbench hierarchies.

``convert``/``hierarchy`` turn model parts into bbmodel elements and outliner
groups without touching the input tree. ``part_from_hierarchy`` goes the
other way for packing; it cannot restore what a moon never stored.
"""
from __future__ import annotations

import uuid
from typing import Dict, List, Optional, Sequence

import bbmodel
from moon_errors import InvariantViolation, SchemaViolation
from moon_ids import derive_id, id_to_words, resolve_id
from moon_model import (
    Bundle,
    CubeData,
    Face,
    MeshData,
    ModelPart,
    find_part,
)
from moon_packed import MeshFace, encode_mesh_faces, unpack_uvs, unpack_vertices

SIDE_TO_FACE = {
    "n": "north",
    "s": "south",
    "u": "up",
    "d": "down",
    "w": "west",
    "e": "east",
}
FACE_TO_SIDE = {v: k for k, v in SIDE_TO_FACE.items()}


class _Converter:
    def __init__(self, elements: List[bbmodel.Element], texture_count: Optional[int]):
        self.elements = elements
        self.texture_count = texture_count
        self.issued = {e.uuid for e in elements}

    def issue_id(self, part: ModelPart, salt: Optional[int]) -> str:
        ident = str(resolve_id(part, salt))
        attempt = 0
        while ident in self.issued:
            attempt += 1
            ident = str(derive_id(part, salt, attempt=attempt))
        self.issued.add(ident)
        return ident

    def check_texture(self, idx: int, where: str) -> int:
        if self.texture_count is not None and not 0 <= idx < self.texture_count:
            raise SchemaViolation(
                f"{where}: texture slot {idx} does not exist ({self.texture_count} slots)"
            )
        return idx

    def convert(self, part: ModelPart, salt: Optional[int]) -> bbmodel.OutlinerItem:
        ident = self.issue_id(part, salt)
        data = part.data

        if isinstance(data, (CubeData, MeshData)) and part.children:
            raise InvariantViolation(
                f"{part.kind.capitalize()} part {part.name!r} has {len(part.children)} children"
            )

        if isinstance(data, CubeData):
            shape: bbmodel.ElementShape = self.cube_shape(part, data)
        elif isinstance(data, MeshData):
            shape = self.mesh_shape(part, data)
        else:
            return bbmodel.Group(
                name=part.name,
                uuid=ident,
                origin=tuple(part.piv),
                rotation=tuple(part.rot),
                visibility=part.vsb,
                children=[self.convert(child, len(self.elements)) for child in part.children],
            )

        self.elements.append(
            bbmodel.Element(
                name=part.name,
                uuid=ident,
                shape=shape,
                origin=tuple(part.piv),
                visibility=part.vsb,
                locked=False,
                allow_mirror_modeling=True,
                export=True,
                color=0,
                rotation=tuple(part.rot),
            )
        )
        return ident

    def cube_shape(self, part: ModelPart, data: CubeData) -> bbmodel.Cube:
        faces = bbmodel.Faces()
        for side, face_name in SIDE_TO_FACE.items():
            face = data.side(side)
            if face is None:
                continue
            tex = self.check_texture(face.tex, f"{part.name!r} face {face_name}")
            setattr(faces, face_name, bbmodel.Face(uv=tuple(face.uv), texture=tex, rotation=face.rot))
        return bbmodel.Cube(
            from_=tuple(data.f),
            to=tuple(data.t),
            faces=faces,
            uv_offset=None,
            box_uv=None,
            rescale=False,
            autouv=0,
            mirror_uv=False,
            inflate=data.inf,
        )

    def mesh_shape(self, part: ModelPart, data: MeshData) -> bbmodel.Mesh:
        positions = unpack_vertices(data.vtx)
        faces = data.faces()
        uv_chunks = unpack_uvs(data.uvs, faces)

        mesh = bbmodel.Mesh(
            vertices={str(i): tuple(float(c) for c in pos) for i, pos in enumerate(positions)}
        )
        for j, (face, uv) in enumerate(zip(faces, uv_chunks)):
            where = f"{part.name!r} mesh face {j}"
            bad = [v for v in face.vertex_indices if v >= len(positions)]
            if bad:
                raise InvariantViolation(f"{where}: vertex index {bad[0]} out of range ({len(positions)} vertices)")
            if len(set(face.vertex_indices)) != len(face.vertex_indices):
                raise InvariantViolation(f"{where}: repeats a vertex")
            ids = [str(v) for v in face.vertex_indices]
            mesh.faces[str(j)] = bbmodel.MeshFace(
                uv={vid: (float(u), float(v)) for vid, (u, v) in zip(ids, uv)},
                vertices=ids,
                texture=self.check_texture(face.texture_index, where),
            )
        return mesh


def convert(
    part: ModelPart,
    elements: List[bbmodel.Element],
    salt: Optional[int] = None,
    texture_count: Optional[int] = None,
) -> bbmodel.OutlinerItem:
    """Convert ``part`` into an outliner item, appending leaf elements to ``elements``.

    Children are visited in order and each one is salted with the number of
    elements emitted before it, so structurally identical siblings separated
    by other elements get distinct identifiers.
    """
    return _Converter(elements, texture_count).convert(part, salt)


def hierarchy(part: ModelPart, texture_count: Optional[int] = None) -> bbmodel.Hierarchy:
    """Convert the children of group ``part`` into a standalone hierarchy."""
    if isinstance(part.data, (CubeData, MeshData)):
        raise SchemaViolation(f"Part {part.name!r} is a {part.kind}, not a group")
    out = bbmodel.Hierarchy()
    conv = _Converter(out.elements, texture_count)
    out.outliner = [conv.convert(child, len(out.elements)) for child in part.children]
    return out


def convert_subtree(bundle: Bundle, index_path: Sequence[int]) -> bbmodel.Hierarchy:
    if bundle.models is None:
        raise SchemaViolation("Bundle has no model tree")
    part = find_part(bundle.models, index_path)
    return hierarchy(part, texture_count=len(bundle.textures.data))


def used_textures(tree: bbmodel.Hierarchy) -> List[int]:
    """Sorted texture indices referenced by any face of ``tree``."""
    used = set()
    for element in tree.elements:
        for _, face in element.shape.faces.items():
            if face.texture is not None:
                used.add(face.texture)
    return sorted(used)


def remap_hierarchy_textures(tree: bbmodel.Hierarchy, index_map: Dict[int, int]) -> None:
    """Rewrite face texture indices of ``tree`` in place; identifiers are untouched."""
    for element in tree.elements:
        for _, face in element.shape.faces.items():
            if face.texture is not None:
                face.texture = index_map[face.texture]


def summarize(tree: bbmodel.Hierarchy) -> Dict[str, int]:
    counts = {"groups": 0, "cubes": 0, "meshes": 0, "faces": 0, "vertices": 0}
    stack = list(tree.outliner)
    while stack:
        item = stack.pop()
        if isinstance(item, bbmodel.Group):
            counts["groups"] += 1
            stack.extend(item.children)
    for element in tree.elements:
        shape = element.shape
        if isinstance(shape, bbmodel.Cube):
            counts["cubes"] += 1
            counts["faces"] += len(shape.faces.items())
            counts["vertices"] += 8
        else:
            counts["meshes"] += 1
            counts["faces"] += len(shape.faces)
            counts["vertices"] += len(shape.vertices)
    return counts


def _stored_words(ident: str):
    try:
        return id_to_words(uuid.UUID(ident))
    except ValueError:
        return None


class _Rebuilder:
    def __init__(self, tree: bbmodel.Hierarchy, texture_map: Optional[Dict[int, int]]):
        self.elements = tree.element_map()
        self.texture_map = texture_map

    def slot(self, texture: Optional[int]) -> Optional[int]:
        if texture is None:
            return None
        if self.texture_map is None:
            return texture
        return self.texture_map.get(texture)

    def build(self, item: bbmodel.OutlinerItem) -> Optional[ModelPart]:
        if isinstance(item, str):
            element = self.elements.get(item)
            if element is None:
                raise SchemaViolation(f"Outliner references unknown element {item!r}")
            if element.export is False:
                return None
            return self.leaf(element)

        if not item.export:
            return None
        children = [part for part in (self.build(c) for c in item.children) if part is not None]
        return ModelPart(
            name=item.name,
            children=children,
            rot=tuple(item.rotation),
            piv=tuple(item.origin),
            vsb=item.visibility,
            nr=_stored_words(item.uuid),
        )

    def leaf(self, element: bbmodel.Element) -> ModelPart:
        shape = element.shape
        if isinstance(shape, bbmodel.Cube):
            data = self.cube_data(shape)
        else:
            data = self.mesh_data(element.name, shape)
        return ModelPart(
            name=element.name,
            data=data,
            rot=tuple(element.rotation),
            piv=tuple(element.origin),
            vsb=element.visibility is not False,
            nr=_stored_words(element.uuid),
        )

    def cube_data(self, shape: bbmodel.Cube) -> CubeData:
        faces: Dict[str, Face] = {}
        for face_name, face in shape.faces.items():
            slot = self.slot(face.texture)
            if slot is None:
                continue
            faces[FACE_TO_SIDE[face_name]] = Face(tex=slot, uv=tuple(face.uv), rot=face.rotation)
        return CubeData(
            faces=faces,
            f=tuple(shape.from_),
            t=tuple(shape.to),
            inf=shape.inflate or 0.0,
        )

    def mesh_data(self, name: str, shape: bbmodel.Mesh) -> MeshData:
        order = {vid: i for i, vid in enumerate(shape.vertices)}
        vtx: List[float] = []
        for pos in shape.vertices.values():
            vtx.extend(float(c) for c in pos)

        faces: List[MeshFace] = []
        uvs: List[float] = []
        for key, face in shape.faces.items():
            slot = self.slot(face.texture)
            if slot is None:
                continue
            try:
                indices = tuple(order[vid] for vid in face.vertices)
            except KeyError as exc:
                raise SchemaViolation(f"{name!r} mesh face {key} uses unknown vertex {exc}") from None
            faces.append(MeshFace(slot, indices))
            for vid in face.vertices:
                uvs.extend(face.uv.get(vid, (0.0, 0.0)))
        tex, fac = encode_mesh_faces(faces)
        return MeshData(vtx=vtx, tex=tex, fac=[int(v) for v in fac], uvs=[float(v) for v in uvs])


def part_from_hierarchy(
    name: str,
    tree: bbmodel.Hierarchy,
    texture_map: Optional[Dict[int, int]] = None,
) -> ModelPart:
    """Build a group part named ``name`` from an editable hierarchy.

    ``texture_map`` maps the model's texture indices to bundle texture slots;
    faces whose texture is unset or unmapped are dropped. Element and group
    identifiers are stored in ``nr`` so a later conversion reproduces them.
    """
    rebuilder = _Rebuilder(tree, texture_map)
    children = [part for part in (rebuilder.build(item) for item in tree.outliner) if part is not None]
    return ModelPart(name=name, children=children)
