#!/usr/bin/env python3
"""
moon file tool.

Shows, unpacks, packs, repacks and converts compiled avatar files (moons).
Model trees are exported as Blockbench .bbmodel documents.
"""
from __future__ import annotations

import argparse
import json
import os
import shlex
import subprocess
import sys
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Sequence, Tuple

import bbmodel
from moon_avatar import (
    bbmodel_document,
    image_size,
    pack_avatar,
    require_png,
    unpack_bundle,
)
from moon_convert import hierarchy, summarize
from moon_model import (
    Bundle,
    ModelPart,
    add_author,
    add_script,
    add_texture,
    remove_script,
    remove_texture,
)
from moon_nbt import DEFAULT_COMPRESSLEVEL, encode, read_bundle, write_bundle

DEFAULT_EDITOR = "vi"
EDIT_OPTIONS = ("add_author", "add_script", "add_texture", "edit_script", "remove_script", "remove_texture")


def default_compresslevel() -> int:
    raw = os.environ.get("MOONTOOL_COMPRESS_LEVEL", "").strip()
    if not raw:
        return DEFAULT_COMPRESSLEVEL
    try:
        level = int(raw)
    except ValueError:
        raise SystemExit(f"MOONTOOL_COMPRESS_LEVEL must be an integer, got {raw!r}")
    if not 0 <= level <= 9:
        raise SystemExit(f"MOONTOOL_COMPRESS_LEVEL must be 0..9, got {level}")
    return level


def editor_command() -> List[str]:
    raw = os.environ.get("MOONTOOL_EDITOR", "").strip() or os.environ.get("EDITOR", "").strip()
    return shlex.split(raw or DEFAULT_EDITOR)


def split_named_path(raw: str) -> Tuple[str, Path]:
    """``NAME=PATH`` or just ``PATH`` (the name is then the file stem)."""
    if "=" in raw:
        name, _, path = raw.partition("=")
        return name.strip(), Path(path)
    path = Path(raw)
    return path.stem, path


def format_size(n: int) -> str:
    if n < 1024:
        return f"{n} B"
    if n < 1024 * 1024:
        return f"{n / 1024:.1f} KiB"
    return f"{n / (1024 * 1024):.1f} MiB"


def plural(n: int, word: str) -> str:
    return f"{n} {word}{'' if n == 1 else 's'}"


def print_tree(part: ModelPart, depth: int = 0) -> None:
    extra = ""
    if part.kind == "mesh":
        extra = f" ({plural(len(part.data.tex), 'face')})"
    elif part.kind == "cube":
        extra = f" ({plural(len(part.data.faces), 'face')})"
    print(f"{'  ' * depth}- {part.name} [{part.kind}]{extra}")
    for child in part.children:
        print_tree(child, depth + 1)


def describe(bundle: Bundle) -> Dict[str, Any]:
    meta = bundle.metadata
    out: Dict[str, Any] = {
        "tag_name": bundle.tag_name,
        "metadata": {
            "name": meta.name,
            "description": meta.description,
            "authors": meta.authors,
            "color": meta.color,
            "version": meta.ver,
            "uuid": meta.uuid,
            "background": meta.bg,
            "id": meta.id,
            "autoScripts": meta.auto_scripts,
        },
        "textures": {
            "src": {name: len(data) for name, data in bundle.textures.src.items()},
            "data": [{"d": s.d, "e": s.e} for s in bundle.textures.data],
        },
        "scripts": {name: len(data) for name, data in bundle.scripts.items()},
        "resources": {name: len(data) for name, data in bundle.resources.items()},
        "animations": len(bundle.animations),
        "unknown_fields": sorted(bundle.extra),
    }
    if bundle.models is not None and bundle.models.kind == "group":
        out["models"] = hierarchy(bundle.models, len(bundle.textures.data)).to_json()
    return out


def cmd_show(args: argparse.Namespace) -> int:
    bundle = read_bundle(args.file, strict=not args.lenient)
    if args.parse:
        print(json.dumps(describe(bundle), ensure_ascii=False, indent=2))
        return 0

    meta = bundle.metadata
    print(meta.name or "(unnamed avatar)")
    if meta.description:
        print(meta.description)
    if meta.authors:
        print(f"Authors: {', '.join(meta.authors)}")
    if meta.ver:
        print(f"Target version: {meta.ver}")

    if bundle.textures.src:
        if args.verbose:
            print("\nTextures")
            for name, data in bundle.textures.src.items():
                size = image_size(data)
                dims = f" {size[0]}x{size[1]}" if size else ""
                print(f"  - {name}{dims} {format_size(len(data))}")
        else:
            print(f"  - {plural(len(bundle.textures.src), 'texture')}")
    if bundle.scripts:
        if args.verbose:
            print("\nScripts")
            for name, data in bundle.scripts.items():
                print(f"  - {name} {format_size(len(data))}")
        else:
            print(f"  - {plural(len(bundle.scripts), 'script')}")
    if bundle.resources:
        print(f"  - {plural(len(bundle.resources), 'resource')}")
    if bundle.animations:
        print(f"  - {plural(len(bundle.animations), 'animation')}")

    if bundle.models is not None:
        if args.verbose:
            print("\nModels")
            print_tree(bundle.models)
        elif bundle.models.kind == "group":
            counts = summarize(hierarchy(bundle.models, len(bundle.textures.data)))
            print(
                f"  - models: {plural(counts['groups'], 'group')}, {plural(counts['cubes'], 'cube')}, "
                f"{plural(counts['meshes'], 'mesh')}, {plural(counts['faces'], 'face')}"
            )
    return 0


def cmd_unpack(args: argparse.Namespace) -> int:
    bundle = read_bundle(args.file, strict=not args.lenient)
    report = unpack_bundle(bundle, args.out)
    for warning in report["warnings"]:
        print(f"[WARN] {warning}")
    print(f"[OK] Wrote {plural(len(report['written']), 'file')} to {args.out}")
    return 0


def cmd_pack(args: argparse.Namespace) -> int:
    if not args.dir.is_dir():
        raise SystemExit(f"Avatar folder not found: {args.dir}")
    bundle, warnings = pack_avatar(args.dir)
    for warning in warnings:
        print(f"[WARN] {warning}")
    level = default_compresslevel() if args.compress is None else args.compress
    size = write_bundle(args.out, bundle, level)
    print(f"[OK] Wrote {args.out} ({format_size(size)})")
    return 0


def edit_script(bundle: Bundle, name: str) -> None:
    source = bundle.scripts.get(name, b"")
    with tempfile.TemporaryDirectory(prefix="moontool-") as tmp:
        path = Path(tmp) / (Path(name).name + ".lua")
        path.write_bytes(source)
        subprocess.run([*editor_command(), str(path)], check=True)
        add_script(bundle, name, path.read_bytes())


def has_edits(args: argparse.Namespace) -> bool:
    return any(getattr(args, option) for option in EDIT_OPTIONS)


def apply_edits(bundle: Bundle, args: argparse.Namespace) -> int:
    changes = 0
    for author in args.add_author:
        if not add_author(bundle, author):
            print(f"[WARN] Author not added (blank or already listed): {author!r}")
            continue
        changes += 1
    for raw in args.add_script:
        name, path = split_named_path(raw)
        add_script(bundle, name, path.read_bytes())
        changes += 1
    for raw in args.add_texture:
        name, path = split_named_path(raw)
        data = path.read_bytes()
        require_png(data, str(path))
        add_texture(bundle, name, data)
        changes += 1
    for name in args.edit_script:
        edit_script(bundle, name)
        changes += 1
    for name in args.remove_script:
        remove_script(bundle, name)
        changes += 1
    for name in args.remove_texture:
        remove_texture(bundle, name)
        changes += 1
    return changes


def cmd_repack(args: argparse.Namespace) -> int:
    original = args.file.read_bytes()
    bundle = read_bundle(args.file, strict=not args.lenient)
    changes = apply_edits(bundle, args)

    if args.no_compress:
        level = 0
    elif args.compress is None:
        level = default_compresslevel()
    else:
        level = args.compress
    data = encode(bundle, level)

    out = args.out or args.file
    if args.if_smaller and len(data) >= len(original):
        print(f"[INFO] Not written: {format_size(len(data))} is not smaller than {format_size(len(original))}")
        return 0
    out.write_bytes(data)
    print(
        f"[OK] Wrote {out} ({format_size(len(original))} -> {format_size(len(data))}, "
        f"{plural(changes, 'change')})"
    )
    return 0


def cmd_convert(args: argparse.Namespace) -> int:
    bundle = read_bundle(args.file, strict=not args.lenient)
    doc = bbmodel_document(bundle, args.path)
    text = bbmodel.dumps(doc, indent=2)
    if args.out is None:
        print(text)
        return 0
    args.out.parent.mkdir(parents=True, exist_ok=True)
    args.out.write_text(text, encoding="utf-8")
    counts = summarize(doc.hierarchy)
    print(
        f"[OK] Wrote {args.out}: {plural(counts['groups'], 'group')}, "
        f"{plural(counts['cubes'], 'cube')}, {plural(counts['meshes'], 'mesh')}"
    )
    return 0


def compress_level(raw: str) -> int:
    level = int(raw)
    if not 0 <= level <= 9:
        raise argparse.ArgumentTypeError(f"compression level must be 0..9, got {level}")
    return level


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Inspect, unpack, pack and convert moon avatar files.")
    parser.add_argument(
        "--lenient",
        action="store_true",
        help="Keep unknown fields instead of rejecting the file",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    show = sub.add_parser("show", help="Print information about a moon file")
    show.add_argument("file", type=Path)
    show.add_argument("-p", "--parse", action="store_true", help="Dump the parsed structure as JSON")
    show.add_argument("-v", "--verbose", action="store_true", help="List every texture, script and model part")
    show.set_defaults(func=cmd_show)

    unpack = sub.add_parser("unpack", help="Unpack a moon file into an avatar folder")
    unpack.add_argument("file", type=Path)
    unpack.add_argument("-o", "--out", type=Path, default=Path("."), help="Output folder (default: .)")
    unpack.set_defaults(func=cmd_unpack)

    pack = sub.add_parser("pack", help="Create a moon file from an avatar folder")
    pack.add_argument("dir", type=Path)
    pack.add_argument("out", type=Path)
    pack.add_argument(
        "-z",
        "--compress",
        type=compress_level,
        default=None,
        help=f"Gzip level 0..9 (default: $MOONTOOL_COMPRESS_LEVEL or {DEFAULT_COMPRESSLEVEL})",
    )
    pack.set_defaults(func=cmd_pack)

    repack = sub.add_parser("repack", help="Rewrite, recompress and optionally modify a moon file")
    repack.add_argument("file", type=Path)
    repack.add_argument("-o", "--out", type=Path, default=None, help="Output path (default: overwrite input)")
    level = repack.add_mutually_exclusive_group()
    level.add_argument(
        "-z",
        "--compress",
        type=compress_level,
        nargs="?",
        const=9,
        default=None,
        help=f"Gzip level 0..9; without a value uses 9 (default: $MOONTOOL_COMPRESS_LEVEL or {DEFAULT_COMPRESSLEVEL})",
    )
    level.add_argument("-Z", "--no-compress", action="store_true", help="Store without compression")
    repack.add_argument(
        "-w",
        "--if-smaller",
        action="store_true",
        help="Only write when the result is smaller than the input",
    )
    repack.add_argument("-A", "--add-author", action="append", default=[], metavar="AUTHOR")
    repack.add_argument("-s", "--add-script", action="append", default=[], metavar="[NAME=]PATH")
    repack.add_argument("-t", "--add-texture", action="append", default=[], metavar="[NAME=]PATH")
    repack.add_argument(
        "-e",
        "--edit-script",
        action="append",
        default=[],
        metavar="NAME",
        help="Open a script in $MOONTOOL_EDITOR / $EDITOR",
    )
    repack.add_argument("-r", "--remove-script", action="append", default=[], metavar="NAME")
    repack.add_argument("-R", "--remove-texture", action="append", default=[], metavar="NAME")
    repack.set_defaults(func=cmd_repack)

    convert = sub.add_parser("convert", help="Convert a model subtree to a .bbmodel document")
    convert.add_argument("file", type=Path)
    convert.add_argument(
        "path",
        type=int,
        nargs="*",
        default=[],
        help="Child indices leading from the model root to the group to convert",
    )
    convert.add_argument("-o", "--out", type=Path, default=None, help="Output .bbmodel (default: stdout)")
    convert.set_defaults(func=cmd_convert)
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    if args.command == "repack" and args.if_smaller and has_edits(args):
        parser.error("--if-smaller cannot be combined with -A/-s/-t/-e/-r/-R")
    try:
        return args.func(args)
    except (OSError, ValueError, KeyError, subprocess.CalledProcessError) as exc:
        print(f"[ERROR] {exc}")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
