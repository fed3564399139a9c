"""
Reading and writing moon files.

A moon is a gzip-compressed NBT compound. ``nbtlib`` parses the tag tree;
this module maps it onto ``moon_model`` and back. By default the mapping is
strict and any field this module does not know raises ``FormatError``. With
``strict=False`` unknown fields of the bundle, texture section, metadata and
model parts are kept as raw tags in their ``extra`` dict and written back.
"""
from __future__ import annotations

import gzip
import io
import struct
import zlib
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

import numpy as np
from nbtlib import (
    Byte,
    ByteArray,
    Compound,
    Double,
    File,
    Float,
    Int,
    IntArray,
    List as NbtList,
    Short,
    String,
)

from moon_errors import FormatError, SchemaViolation
from moon_model import (
    SIDES,
    Bundle,
    CubeData,
    Face,
    GroupData,
    MeshData,
    Metadata,
    ModelPart,
    ParentType,
    TextureData,
    Textures,
)
from moon_packed import narrowest_index_dtype

GZIP_MAGIC = b"\x1f\x8b"
TAG_COMPOUND = 0x0A
DEFAULT_COMPRESSLEVEL = 9
NO_AUTHOR = "?"

BUNDLE_KEYS = ("textures", "scripts", "animations", "models", "resources", "metadata")
TEXTURES_KEYS = ("src", "data")
METADATA_KEYS = ("uuid", "authors", "color", "bg", "id", "name", "description", "ver", "autoScripts")
PART_KEYS = ("name", "chld", "anim", "rot", "piv", "primary", "secondary", "pt", "vsb", "smo", "nr", "cn", "pr")
CUBE_KEYS = ("cube_data", "f", "t", "inf")
MESH_KEYS = ("mesh_data",)

_PARSE_ERRORS = (struct.error, EOFError, KeyError, IndexError, TypeError, ValueError, OverflowError)


# ---------------------------------------------------------------------------
# Tag readers


def _fields(tag: Any, allowed: Iterable[str], where: str, strict: bool) -> Dict[str, Any]:
    """Check ``tag`` is a compound and return its unrecognised fields."""
    if not isinstance(tag, Compound):
        raise FormatError(f"{where}: expected a compound tag, got {type(tag).__name__}")
    unknown = {k: v for k, v in tag.items() if k not in allowed}
    if unknown and strict:
        raise FormatError(f"{where}: unknown field(s): {', '.join(sorted(unknown))}")
    return unknown


def _string(tag: Any, where: str) -> str:
    if not isinstance(tag, str):
        raise FormatError(f"{where}: expected a string tag")
    return str(tag)


def _number(tag: Any, where: str) -> float:
    if isinstance(tag, np.ndarray) or not isinstance(tag, (int, float)):
        raise FormatError(f"{where}: expected a numeric tag")
    return float(tag)


def _integer(tag: Any, where: str) -> int:
    if isinstance(tag, np.ndarray) or not isinstance(tag, int):
        raise FormatError(f"{where}: expected an integer tag")
    return int(tag)


def _floats(tag: Any, where: str, length: Optional[int] = None) -> List[float]:
    if not isinstance(tag, NbtList):
        raise FormatError(f"{where}: expected a list tag")
    values = [_number(v, where) for v in tag]
    if length is not None and len(values) != length:
        raise FormatError(f"{where}: expected {length} values, got {len(values)}")
    return values


def _vec3(tag: Any, where: str) -> Tuple[float, float, float]:
    x, y, z = _floats(tag, where, 3)
    return (x, y, z)


def _unsigned(tag: Any, where: str) -> List[int]:
    """Read a ByteArray, a list of shorts or an IntArray as unsigned integers."""
    if isinstance(tag, ByteArray):
        return [int(v) & 0xFF for v in tag]
    if isinstance(tag, IntArray):
        return [int(v) & 0xFFFFFFFF for v in tag]
    if isinstance(tag, NbtList):
        out = []
        for v in tag:
            if isinstance(v, Short):
                out.append(int(v) & 0xFFFF)
            elif isinstance(v, Byte):
                out.append(int(v) & 0xFF)
            else:
                out.append(_integer(v, where) & 0xFFFFFFFF)
        return out
    raise FormatError(f"{where}: expected an integer array tag")


def _blob(tag: Any, where: str) -> bytes:
    if not isinstance(tag, ByteArray):
        raise FormatError(f"{where}: expected a byte array tag")
    return np.asarray(tag).astype(np.int8).tobytes()


def _blobs(tag: Any, where: str) -> Dict[str, bytes]:
    entries = _fields(tag, (), where, strict=False)
    return {name: _blob(value, f"{where}.{name}") for name, value in entries.items()}


def _strings(tag: Any, where: str) -> List[str]:
    if not isinstance(tag, NbtList):
        raise FormatError(f"{where}: expected a list tag")
    return [_string(v, where) for v in tag]


# ---------------------------------------------------------------------------
# Decoding


def parse_authors(tag: Any, where: str = "metadata.authors") -> List[str]:
    """Normalise the authors field to a list.

    The field is either one newline-separated string or a list of strings;
    the placeholder ``"?"`` means nobody is credited.
    """
    if isinstance(tag, NbtList):
        names = _strings(tag, where)
    else:
        names = _string(tag, where).split("\n")
    return [n.strip() for n in names if n.strip() and n.strip() != NO_AUTHOR]


def decode_metadata(tag: Any, strict: bool = True) -> Metadata:
    extra = _fields(tag, METADATA_KEYS, "metadata", strict)
    meta = Metadata(extra=extra)
    for key in ("name", "description", "ver", "uuid", "color", "bg", "id"):
        if key in tag:
            setattr(meta, key, _string(tag[key], f"metadata.{key}"))
    if "authors" in tag:
        meta.authors = parse_authors(tag["authors"])
    if "autoScripts" in tag:
        meta.auto_scripts = _strings(tag["autoScripts"], "metadata.autoScripts")
    return meta


def decode_textures(tag: Any, strict: bool = True) -> Textures:
    extra = _fields(tag, TEXTURES_KEYS, "textures", strict)
    textures = Textures(extra=extra)
    if "src" in tag:
        textures.src = _blobs(tag["src"], "textures.src")
    if "data" in tag:
        if not isinstance(tag["data"], NbtList):
            raise FormatError("textures.data: expected a list tag")
        for i, entry in enumerate(tag["data"]):
            where = f"textures.data[{i}]"
            _fields(entry, ("d", "e"), where, strict=True)
            if "d" not in entry:
                raise FormatError(f"{where}: missing field 'd'")
            e = _string(entry["e"], f"{where}.e") if "e" in entry else None
            textures.data.append(TextureData(_string(entry["d"], f"{where}.d"), e))
    return textures


def decode_face(tag: Any, where: str) -> Face:
    _fields(tag, ("tex", "uv", "rot"), where, strict=True)
    if "tex" not in tag or "uv" not in tag:
        raise FormatError(f"{where}: faces need 'tex' and 'uv'")
    tex = _integer(tag["tex"], f"{where}.tex")
    if tex < 0:
        raise SchemaViolation(f"{where}.tex: negative texture slot {tex}")
    x0, y0, x1, y1 = _floats(tag["uv"], f"{where}.uv", 4)
    rot = _number(tag["rot"], f"{where}.rot") if "rot" in tag else 0.0
    return Face(tex=tex, uv=(x0, y0, x1, y1), rot=rot)


def decode_cube(tag: Any, where: str) -> CubeData:
    cube = CubeData()
    if "cube_data" in tag:
        sides = tag["cube_data"]
        _fields(sides, SIDES, f"{where}.cube_data", strict=True)
        cube.faces = {
            side: decode_face(sides[side], f"{where}.cube_data.{side}") for side in SIDES if side in sides
        }
    if "f" in tag:
        cube.f = _vec3(tag["f"], f"{where}.f")
    if "t" in tag:
        cube.t = _vec3(tag["t"], f"{where}.t")
    if "inf" in tag:
        cube.inf = _number(tag["inf"], f"{where}.inf")
    return cube


def decode_mesh(tag: Any, where: str) -> MeshData:
    where = f"{where}.mesh_data"
    _fields(tag, ("vtx", "tex", "fac", "uvs"), where, strict=True)
    for key in ("vtx", "tex", "fac", "uvs"):
        if key not in tag:
            raise FormatError(f"{where}: missing field '{key}'")
    return MeshData(
        vtx=_floats(tag["vtx"], f"{where}.vtx"),
        tex=[v & 0xFFFF for v in _unsigned(tag["tex"], f"{where}.tex")],
        fac=_unsigned(tag["fac"], f"{where}.fac"),
        uvs=_floats(tag["uvs"], f"{where}.uvs"),
    )


def decode_part(tag: Any, where: str = "models", strict: bool = True) -> ModelPart:
    extra = _fields(tag, PART_KEYS + CUBE_KEYS + MESH_KEYS, where, strict)
    if "name" not in tag:
        raise FormatError(f"{where}: missing field 'name'")
    name = _string(tag["name"], f"{where}.name")
    where = f"{where}[{name!r}]"

    is_cube = any(k in tag for k in CUBE_KEYS)
    is_mesh = any(k in tag for k in MESH_KEYS)
    if is_cube and is_mesh:
        raise SchemaViolation(f"{where}: has both cube and mesh fields")
    if is_cube:
        data: Any = decode_cube(tag, where)
    elif is_mesh:
        data = decode_mesh(tag["mesh_data"], where)
    else:
        data = GroupData()

    part = ModelPart(name=name, data=data, extra=extra)
    if "chld" in tag:
        if not isinstance(tag["chld"], NbtList):
            raise FormatError(f"{where}.chld: expected a list tag")
        part.children = [
            decode_part(child, f"{where}.chld[{i}]", strict) for i, child in enumerate(tag["chld"])
        ]
    if "anim" in tag:
        part.anim = tag["anim"]
    if "rot" in tag:
        part.rot = _vec3(tag["rot"], f"{where}.rot")
    if "piv" in tag:
        part.piv = _vec3(tag["piv"], f"{where}.piv")
    for key in ("primary", "secondary"):
        if key in tag:
            setattr(part, key, _string(tag[key], f"{where}.{key}"))
    if "pt" in tag:
        part.pt = ParentType.parse(_string(tag["pt"], f"{where}.pt"))
    if "vsb" in tag:
        part.vsb = bool(_integer(tag["vsb"], f"{where}.vsb"))
    if "smo" in tag:
        part.smo = bool(_integer(tag["smo"], f"{where}.smo"))
    if "nr" in tag:
        words = _unsigned(tag["nr"], f"{where}.nr")
        if len(words) != 4:
            raise FormatError(f"{where}.nr: expected 4 words, got {len(words)}")
        part.nr = (words[0], words[1], words[2], words[3])
    if "cn" in tag:
        part.cn = _strings(tag["cn"], f"{where}.cn")
    if "pr" in tag:
        part.pr = _unsigned(tag["pr"], f"{where}.pr")
    return part


def decode_root(root: Compound, tag_name: str = "", strict: bool = True) -> Bundle:
    extra = _fields(root, BUNDLE_KEYS, "moon", strict)
    bundle = Bundle(tag_name=tag_name, extra=extra)
    if "textures" in root:
        bundle.textures = decode_textures(root["textures"], strict)
    if "scripts" in root:
        bundle.scripts = _blobs(root["scripts"], "scripts")
    if "animations" in root:
        if not isinstance(root["animations"], NbtList):
            raise FormatError("animations: expected a list tag")
        bundle.animations = list(root["animations"])
    if "models" in root:
        bundle.models = decode_part(root["models"], "models", strict)
    if "resources" in root:
        bundle.resources = _blobs(root["resources"], "resources")
    if "metadata" in root:
        bundle.metadata = decode_metadata(root["metadata"], strict)
    return bundle


def decompress(data: bytes) -> bytes:
    if not data.startswith(GZIP_MAGIC):
        return data
    try:
        return gzip.decompress(data)
    except (OSError, EOFError, zlib.error) as exc:
        raise FormatError(f"Failed to decompress moon: {exc}") from exc


class _StrictReader(io.BytesIO):
    """Byte stream that fails on short reads instead of returning what is left."""

    def read(self, size=-1):
        data = super().read(size)
        if size is not None and size >= 0 and len(data) < size:
            raise FormatError(f"Moon is truncated at byte {self.tell()}")
        return data


def parse_nbt(raw: bytes) -> Tuple[str, Compound]:
    """Parse an uncompressed NBT file into its root name and compound."""
    if not raw:
        raise FormatError("Moon is empty")
    if raw[0] != TAG_COMPOUND:
        raise FormatError(f"Root tag must be a compound (id {TAG_COMPOUND}), got id {raw[0]}")
    buff = _StrictReader(raw)
    try:
        root = File.parse(buff)
    except FormatError:
        raise
    except _PARSE_ERRORS as exc:
        raise FormatError(f"Malformed NBT data: {exc!r}") from exc
    if buff.tell() != len(raw):
        raise FormatError(f"{len(raw) - buff.tell()} trailing bytes after the root compound")
    return str(root.root_name), root


def decode(data: bytes, strict: bool = True) -> Bundle:
    """Decode the bytes of a moon file (gzip-compressed or raw NBT)."""
    name, root = parse_nbt(decompress(data))
    return decode_root(root, name, strict)


def read_bundle(path: Path, strict: bool = True) -> Bundle:
    return decode(Path(path).read_bytes(), strict)


# ---------------------------------------------------------------------------
# Encoding


def _single_exact(values: List[float]) -> bool:
    return all(float(np.float32(v)) == v for v in values)


def _float_tag(value: float) -> Any:
    return Float(value) if _single_exact([value]) else Double(value)


def _float_list(values: Iterable[float]) -> NbtList:
    """Floats when every value survives float32, doubles otherwise."""
    values = [float(v) for v in values]
    if _single_exact(values):
        return NbtList[Float]([Float(v) for v in values])
    return NbtList[Double]([Double(v) for v in values])


def _blob_tag(data: bytes) -> ByteArray:
    return ByteArray(np.frombuffer(bytes(data), dtype=np.int8))


def _blob_map(blobs: Dict[str, bytes]) -> Compound:
    return Compound({name: _blob_tag(data) for name, data in blobs.items()})


def _short_list(values: Iterable[int]) -> NbtList:
    return NbtList[Short]([Short(v - 0x10000 if v > 0x7FFF else v) for v in values])


def _int_array(values: Iterable[int]) -> IntArray:
    signed = [v - 0x100000000 if v > 0x7FFFFFFF else v for v in values]
    return IntArray(np.asarray(signed, dtype=np.int32))


def encode_fac(fac: List[int]) -> Any:
    """Store face indices with the narrowest tag that fits the largest index."""
    dtype = narrowest_index_dtype(max(fac, default=0))
    if dtype == np.uint8:
        return ByteArray(np.asarray(fac, dtype=np.uint8).view(np.int8))
    if dtype == np.uint16:
        return _short_list(fac)
    return _int_array(fac)


def encode_metadata(meta: Metadata) -> Compound:
    tag = Compound()
    tag["name"] = String(meta.name)
    tag["description"] = String(meta.description)
    tag["authors"] = String("\n".join(meta.authors) if meta.authors else NO_AUTHOR)
    tag["ver"] = String(meta.ver)
    if meta.uuid:
        tag["uuid"] = String(meta.uuid)
    for key in ("color", "bg", "id"):
        value = getattr(meta, key)
        if value is not None:
            tag[key] = String(value)
    if meta.auto_scripts is not None:
        tag["autoScripts"] = NbtList[String]([String(s) for s in meta.auto_scripts])
    tag.update(meta.extra)
    return tag


def encode_textures(textures: Textures) -> Compound:
    data = []
    for slot in textures.data:
        entry = Compound({"d": String(slot.d)})
        if slot.e is not None:
            entry["e"] = String(slot.e)
        data.append(entry)
    tag = Compound({"src": _blob_map(textures.src), "data": NbtList[Compound](data)})
    tag.update(textures.extra)
    return tag


def encode_part(part: ModelPart) -> Compound:
    tag = Compound({"name": String(part.name)})
    if part.children:
        tag["chld"] = NbtList[Compound]([encode_part(child) for child in part.children])
    if part.anim is not None:
        tag["anim"] = part.anim
    if any(part.rot):
        tag["rot"] = _float_list(part.rot)
    if any(part.piv):
        tag["piv"] = _float_list(part.piv)
    for key in ("primary", "secondary"):
        value = getattr(part, key)
        if value is not None:
            tag[key] = String(value)
    if part.pt is not None:
        tag["pt"] = String(part.pt.value)
    if not part.vsb:
        tag["vsb"] = Byte(0)
    if part.smo:
        tag["smo"] = Byte(1)
    if part.nr is not None:
        tag["nr"] = _int_array(part.nr)
    if part.cn is not None:
        tag["cn"] = NbtList[String]([String(c) for c in part.cn])
    if part.pr is not None:
        tag["pr"] = _int_array(part.pr)

    data = part.data
    if isinstance(data, CubeData):
        sides = Compound()
        for side in SIDES:
            face = data.side(side)
            if face is None:
                continue
            face_tag = Compound({"tex": Int(face.tex), "uv": _float_list(face.uv)})
            if face.rot:
                face_tag["rot"] = _float_tag(face.rot)
            sides[side] = face_tag
        tag["cube_data"] = sides
        tag["f"] = _float_list(data.f)
        tag["t"] = _float_list(data.t)
        if data.inf:
            tag["inf"] = _float_tag(data.inf)
    elif isinstance(data, MeshData):
        tag["mesh_data"] = Compound(
            {
                "vtx": _float_list(data.vtx),
                "tex": _short_list(data.tex),
                "fac": encode_fac(list(data.fac)),
                "uvs": _float_list(data.uvs),
            }
        )
    tag.update(part.extra)
    return tag


def encode_root(bundle: Bundle) -> Compound:
    root = Compound()
    root["textures"] = encode_textures(bundle.textures)
    if bundle.scripts:
        root["scripts"] = _blob_map(bundle.scripts)
    if bundle.animations:
        root["animations"] = NbtList(bundle.animations)
    if bundle.models is not None:
        root["models"] = encode_part(bundle.models)
    if bundle.resources:
        root["resources"] = _blob_map(bundle.resources)
    root["metadata"] = encode_metadata(bundle.metadata)
    root.update(bundle.extra)
    return root


def write_nbt(root: Compound, name: str = "") -> bytes:
    buff = io.BytesIO()
    File(root, root_name=name).write(buff)
    return buff.getvalue()


def encode(bundle: Bundle, compresslevel: int = DEFAULT_COMPRESSLEVEL) -> bytes:
    """Encode ``bundle`` as a gzip-compressed moon.

    Level 0 still produces a gzip stream, only without compression.
    """
    if not 0 <= compresslevel <= 9:
        raise ValueError(f"Compression level must be 0..9, got {compresslevel}")
    raw = write_nbt(encode_root(bundle), bundle.tag_name)
    return gzip.compress(raw, compresslevel=compresslevel, mtime=0)


def write_bundle(path: Path, bundle: Bundle, compresslevel: int = DEFAULT_COMPRESSLEVEL) -> int:
    data = encode(bundle, compresslevel)
    Path(path).write_bytes(data)
    return len(data)
