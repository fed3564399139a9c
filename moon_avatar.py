"""
Avatar folders and bbmodel documents built around the moon codec.

``pack_avatar`` reads an avatar folder (``avatar.json``, ``*.lua``,
``*.bbmodel`` and resource globs) into a bundle; ``unpack_bundle`` writes a
bundle back out as such a folder. ``bbmodel_document`` wraps a converted
subtree with the metadata, resolution and texture list a full ``.bbmodel``
needs.
"""
from __future__ import annotations

import base64
import io
import json
import re
import uuid
from pathlib import Path, PurePosixPath
from typing import Any, Dict, List, Optional, Sequence, Tuple

from PIL import Image, UnidentifiedImageError

import bbmodel
from moon_convert import convert_subtree, part_from_hierarchy, remap_hierarchy_textures, used_textures
from moon_errors import FormatError, SchemaViolation
from moon_model import Bundle, Metadata, ModelPart, add_texture, find_part

AVATAR_JSON = "avatar.json"
MODELS_ROOT = "models"
DATA_URL_PREFIX = "data:image/png;base64,"
TEXTURE_NS = uuid.UUID("5d1b0d4e-3c52-4a9f-9f0b-6f1a0e7c2b31")
EMISSIVE_SUFFIX = "_e"
DEFAULT_RESOLUTION = (64, 64)
SAFE_SEGMENT_RX = re.compile(r'[<>:"|?*\x00-\x1f]')

AVATAR_JSON_KEYS = (
    "name", "description", "author", "authors", "version", "color", "background", "id",
    "autoScripts", "autoAnims", "ignoredTextures", "resources", "customizations",
)


def image_size(data: bytes) -> Optional[Tuple[int, int]]:
    """Width and height of an encoded image, or None if it cannot be read."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            return img.size
    except (UnidentifiedImageError, OSError, ValueError):
        return None


def require_png(data: bytes, label: str) -> Tuple[int, int]:
    try:
        with Image.open(io.BytesIO(data)) as img:
            fmt = img.format
            size = img.size
            img.verify()
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        raise FormatError(f"{label} is not a readable image: {exc}") from exc
    if fmt != "PNG":
        raise FormatError(f"{label} is {fmt}, textures must be PNG")
    return size


def safe_relpath(name: str, suffix: str = "") -> Path:
    parts = []
    for part in PurePosixPath(name.replace("\\", "/")).parts:
        if part in {"", ".", "..", "/"}:
            continue
        parts.append(SAFE_SEGMENT_RX.sub("_", part))
    if not parts:
        raise SchemaViolation(f"Cannot build output path from name: {name!r}")
    rel = Path(*parts)
    return rel.with_name(rel.name + suffix) if suffix else rel


# ---------------------------------------------------------------------------
# avatar.json


def metadata_from_avatar_json(raw: Dict[str, Any], default_name: str) -> Tuple[Metadata, List[str]]:
    """Map ``avatar.json`` onto bundle metadata; also returns keys it did not know."""
    if not isinstance(raw, dict):
        raise SchemaViolation(f"{AVATAR_JSON} must hold an object")
    unknown = sorted(k for k in raw if k not in AVATAR_JSON_KEYS)
    authors = raw.get("authors")
    if authors is None:
        authors = [raw["author"]] if raw.get("author") else []
    if not isinstance(authors, list) or not all(isinstance(a, str) for a in authors):
        raise SchemaViolation(f"{AVATAR_JSON}: authors must be a list of strings")
    auto_scripts = raw.get("autoScripts")
    if auto_scripts is not None and not isinstance(auto_scripts, list):
        raise SchemaViolation(f"{AVATAR_JSON}: autoScripts must be a list")
    meta = Metadata(
        name=str(raw.get("name") or default_name),
        description=str(raw.get("description") or ""),
        authors=[a for a in authors if a.strip()],
        color=raw.get("color"),
        ver=str(raw.get("version") or ""),
        bg=raw.get("background"),
        id=raw.get("id"),
        auto_scripts=None if auto_scripts is None else [str(s) for s in auto_scripts],
    )
    return meta, unknown


def avatar_json_from_metadata(meta: Metadata) -> Dict[str, Any]:
    out: Dict[str, Any] = {"name": meta.name}
    if meta.description:
        out["description"] = meta.description
    if len(meta.authors) == 1:
        out["author"] = meta.authors[0]
    elif meta.authors:
        out["authors"] = list(meta.authors)
    if meta.ver:
        out["version"] = meta.ver
    if meta.color is not None:
        out["color"] = meta.color
    if meta.bg is not None:
        out["background"] = meta.bg
    if meta.id is not None:
        out["id"] = meta.id
    if meta.auto_scripts is not None:
        out["autoScripts"] = list(meta.auto_scripts)
    return out


# ---------------------------------------------------------------------------
# bbmodel documents


def _short_texture_name(full: str, prefix: Optional[str]) -> str:
    if prefix and full.startswith(prefix + "."):
        return full[len(prefix) + 1 :]
    return full


def texture_entries(
    bundle: Bundle,
    prefix: Optional[str] = None,
    slots: Optional[Sequence[int]] = None,
) -> List[bbmodel.Texture]:
    """bbmodel textures for ``slots`` (every slot by default), in that order.

    Emissive layers follow as ``<base>_e`` entries that no face points at.
    """
    if slots is None:
        slots = range(len(bundle.textures.data))
    chosen = [bundle.textures.data[i] for i in slots]
    layers = [(_short_texture_name(slot.d, prefix), slot.d) for slot in chosen]
    layers += [
        (_short_texture_name(slot.d, prefix) + EMISSIVE_SUFFIX, slot.e) for slot in chosen if slot.e is not None
    ]
    entries = []
    for i, (name, key) in enumerate(layers):
        data = bundle.textures.src.get(key, b"")
        width, height = image_size(data) or (16, 16)
        entries.append(
            bbmodel.Texture(
                name=name + ".png",
                uuid=str(uuid.uuid5(TEXTURE_NS, key)),
                id=str(i),
                width=width,
                height=height,
                uv_width=width,
                uv_height=height,
                source=DATA_URL_PREFIX + base64.b64encode(data).decode("ascii"),
            )
        )
    return entries


def bbmodel_document(bundle: Bundle, index_path: Sequence[int]) -> bbmodel.BBModel:
    """Full document for one subtree, embedding only the textures it uses."""
    tree = convert_subtree(bundle, index_path)
    slots = used_textures(tree)
    remap_hierarchy_textures(tree, {old: new for new, old in enumerate(slots)})
    part = find_part(bundle.models, index_path)
    name = part.name if index_path else (bundle.metadata.name or part.name)
    # textures of packed models are named "<model>.<texture>"
    prefix = bundle.models.children[index_path[0]].name if index_path else None
    textures = texture_entries(bundle, prefix, slots)
    resolution = (textures[0].uv_width, textures[0].uv_height) if textures else DEFAULT_RESOLUTION
    return bbmodel.BBModel.from_hierarchy(
        tree,
        meta=bbmodel.Meta(model_format="free"),
        name=name,
        resolution=bbmodel.Resolution(*resolution),
        textures=textures,
    )


# ---------------------------------------------------------------------------
# Packing


def _texture_bytes(tex: bbmodel.Texture, model_dir: Path) -> bytes:
    if tex.source.startswith("data:"):
        head, _, payload = tex.source.partition(",")
        if not head.endswith(";base64"):
            raise FormatError(f"Texture {tex.name!r}: only base64 data URLs are supported")
        try:
            return base64.b64decode(payload, validate=True)
        except ValueError as exc:
            raise FormatError(f"Texture {tex.name!r}: bad base64 data") from exc
    for candidate in (tex.relative_path, tex.path):
        if candidate:
            path = (model_dir / candidate) if not Path(candidate).is_absolute() else Path(candidate)
            if path.is_file():
                return path.read_bytes()
    raise FormatError(f"Texture {tex.name!r} has no embedded data and no readable file")


def add_model_textures(
    bundle: Bundle,
    model_name: str,
    model: bbmodel.BBModel,
    model_dir: Path,
    ignored: Sequence[str] = (),
    model_names: Sequence[str] = (),
) -> Dict[int, int]:
    """Store the textures of ``model`` in ``bundle`` and map its indices to slots.

    Textures are stored as ``<model>.<texture>``, except names that already
    start with another model's name, which share that model's slot. A texture
    named ``<base>_e`` becomes the emissive layer of ``<base>`` when the
    model has one; faces that use it are pointed at the base slot.
    """

    def qualify(base: str) -> str:
        head, dot, _ = base.partition(".")
        if dot and head != model_name and head in model_names:
            return base
        return f"{model_name}.{base}"

    bases = {Path(t.name).stem for t in model.textures}
    index_map: Dict[int, int] = {}
    emissive: List[Tuple[int, str, str]] = []
    for i, tex in enumerate(model.textures):
        base = Path(tex.name).stem
        full = qualify(base)
        if full in ignored or base in ignored:
            continue
        data = _texture_bytes(tex, model_dir)
        if base.endswith(EMISSIVE_SUFFIX) and base[: -len(EMISSIVE_SUFFIX)] in bases:
            bundle.textures.src[full] = data
            emissive.append((i, full, qualify(base[: -len(EMISSIVE_SUFFIX)])))
            continue
        index_map[i] = add_texture(bundle, full, data)

    slots = {slot.d: idx for idx, slot in enumerate(bundle.textures.data)}
    for i, full, base_full in emissive:
        idx = slots.get(base_full)
        if idx is None:
            index_map[i] = add_texture(bundle, full, bundle.textures.src[full])
            continue
        bundle.textures.data[idx].e = full
        index_map[i] = idx
    return index_map


def pack_avatar(root: Path) -> Tuple[Bundle, List[str]]:
    """Build a bundle from an avatar folder. Returns the bundle and warnings."""
    root = Path(root)
    warnings: List[str] = []
    meta_path = root / AVATAR_JSON
    if not meta_path.is_file():
        raise FileNotFoundError(f"{AVATAR_JSON} not found in {root}")
    try:
        raw = json.loads(meta_path.read_text(encoding="utf-8"))
    except ValueError as exc:
        raise FormatError(f"{meta_path}: {exc}") from exc
    meta, unknown = metadata_from_avatar_json(raw, root.name)
    if unknown:
        warnings.append(f"{AVATAR_JSON}: ignored keys {', '.join(unknown)}")

    bundle = Bundle(metadata=meta)
    for path in sorted(root.rglob("*.lua")):
        bundle.scripts[path.relative_to(root).with_suffix("").as_posix()] = path.read_bytes()

    ignored = [str(t) for t in raw.get("ignoredTextures", [])]
    model_paths = sorted(root.rglob("*.bbmodel"))
    model_names = [path.stem for path in model_paths]
    models = ModelPart(MODELS_ROOT)
    for path in model_paths:
        name = path.stem
        if any(child.name == name for child in models.children):
            raise SchemaViolation(f"Two models are named {name!r}")
        model = bbmodel.loads(path.read_bytes())
        index_map = add_model_textures(bundle, name, model, path.parent, ignored, model_names)
        models.children.append(part_from_hierarchy(name, model.hierarchy, index_map))
    if models.children:
        bundle.models = models

    for pattern in raw.get("resources", []):
        for path in sorted(root.glob(str(pattern))):
            if path.is_file():
                bundle.resources[path.relative_to(root).as_posix()] = path.read_bytes()
    return bundle, warnings


# ---------------------------------------------------------------------------
# Unpacking


def unpack_bundle(bundle: Bundle, out: Path) -> Dict[str, Any]:
    """Write textures, scripts, resources, avatar.json and bbmodels under ``out``."""
    out = Path(out)
    files: Dict[Path, bytes] = {}
    warnings: List[str] = []

    for name, data in bundle.textures.src.items():
        files[out / safe_relpath(name, ".png")] = data
    for name, data in bundle.scripts.items():
        files[out / safe_relpath(name, ".lua")] = data
    for name, data in bundle.resources.items():
        files[out / safe_relpath(name)] = data
    files[out / AVATAR_JSON] = json.dumps(
        avatar_json_from_metadata(bundle.metadata), ensure_ascii=False, indent=2
    ).encode("utf-8")

    if bundle.models is not None:
        for i, child in enumerate(bundle.models.children):
            if child.kind != "group":
                warnings.append(f"Skipped top-level {child.kind} {child.name!r}: only groups become models")
                continue
            doc = bbmodel_document(bundle, [i])
            files[out / safe_relpath(child.name, ".bbmodel")] = bbmodel.dumps(doc, indent=2).encode("utf-8")

    written = []
    for path, data in files.items():
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        written.append(str(path))
    return {"written": written, "warnings": warnings}
