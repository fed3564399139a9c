import json
import shlex
import sys

import pytest
from conftest import png_bytes
from nbtlib import String

import bbmodel
from moon_nbt import read_bundle, write_bundle
from moon_tool import main, split_named_path


@pytest.fixture
def moon(tmp_path, simple_bundle):
    path = tmp_path / "avatar.moon"
    write_bundle(path, simple_bundle)
    return path


def test_show_summary(moon, capsys):
    assert main(["show", str(moon)]) == 0
    out = capsys.readouterr().out
    assert "Test" in out
    assert "Authors: alice" in out
    assert "1 texture" in out
    assert "1 group, 1 cube, 1 mesh, 2 faces" in out


def test_show_verbose_lists_parts(moon, capsys):
    assert main(["show", "-v", str(moon)]) == 0
    out = capsys.readouterr().out
    assert "model.skin 16x16" in out
    assert "    - box [cube] (1 face)" in out
    assert "    - plane [mesh] (1 face)" in out


def test_show_parse_dumps_json(moon, capsys):
    assert main(["show", "-p", str(moon)]) == 0
    parsed = json.loads(capsys.readouterr().out)
    assert parsed["metadata"]["authors"] == ["alice"]
    assert parsed["scripts"] == {"script": len(b"print('hello')")}
    assert parsed["models"]["outliner"][0]["name"] == "model"


def test_convert_to_file(moon, tmp_path, capsys):
    out = tmp_path / "out" / "model.bbmodel"
    assert main(["convert", str(moon), "0", "-o", str(out)]) == 0
    doc = bbmodel.loads(out.read_text(encoding="utf-8"))
    assert [e.name for e in doc.elements] == ["box", "plane"]
    assert "[OK]" in capsys.readouterr().out


def test_convert_to_stdout(moon, capsys):
    assert main(["convert", str(moon)]) == 0
    doc = bbmodel.loads(capsys.readouterr().out)
    assert doc.outliner[0].name == "model"


def test_convert_bad_path_is_reported(moon, capsys):
    assert main(["convert", str(moon), "4"]) == 1
    assert "[ERROR]" in capsys.readouterr().out


def test_repack_edits(moon, tmp_path, capsys):
    script = tmp_path / "extra.lua"
    script.write_bytes(b"return 1")
    texture = tmp_path / "cape.png"
    texture.write_bytes(png_bytes(8, 8))
    out = tmp_path / "edited.moon"

    code = main(
        [
            "repack", str(moon), "-o", str(out),
            "-A", "bob", "-s", str(script), "-t", f"model.cape={texture}", "-r", "script",
        ]
    )
    assert code == 0
    assert "4 changes" in capsys.readouterr().out

    bundle = read_bundle(out)
    assert bundle.metadata.authors == ["alice", "bob"]
    assert bundle.scripts == {"extra": b"return 1"}
    assert [slot.d for slot in bundle.textures.data] == ["model.skin", "model.cape"]


def test_repack_if_smaller_keeps_input(moon, capsys):
    before = moon.read_bytes()
    assert main(["repack", str(moon), "-Z", "-w"]) == 0
    assert moon.read_bytes() == before
    assert "[INFO] Not written" in capsys.readouterr().out


def test_repack_rejects_non_png_texture(moon, tmp_path, capsys):
    bogus = tmp_path / "skin.png"
    bogus.write_bytes(b"GIF89a")
    assert main(["repack", str(moon), "-t", str(bogus)]) == 1
    assert "[ERROR]" in capsys.readouterr().out


def test_repack_compression_level_from_environment(moon, monkeypatch):
    monkeypatch.setenv("MOONTOOL_COMPRESS_LEVEL", "0")
    before = len(moon.read_bytes())
    assert main(["repack", str(moon)]) == 0
    assert len(moon.read_bytes()) > before


def test_unpack_and_pack(moon, tmp_path, simple_bundle, capsys):
    folder = tmp_path / "avatar"
    assert main(["unpack", str(moon), "-o", str(folder)]) == 0
    assert (folder / "model.bbmodel").is_file()

    packed = tmp_path / "packed.moon"
    assert main(["pack", str(folder), str(packed), "-z", "6"]) == 0
    bundle = read_bundle(packed)
    assert bundle.metadata == simple_bundle.metadata
    assert bundle.textures.src == simple_bundle.textures.src
    assert "[OK]" in capsys.readouterr().out


def test_strict_mode_reports_unknown_fields(tmp_path, simple_bundle, capsys):
    simple_bundle.extra["future"] = String("x")
    path = tmp_path / "future.moon"
    write_bundle(path, simple_bundle)
    assert main(["show", str(path)]) == 1
    assert "[ERROR]" in capsys.readouterr().out
    assert main(["--lenient", "show", str(path)]) == 0


def test_invalid_compression_level(moon):
    with pytest.raises(SystemExit):
        main(["repack", str(moon), "-z", "12"])


def test_split_named_path():
    name, path = split_named_path("main=src/a.lua")
    assert name == "main"
    assert path.as_posix() == "src/a.lua"
    name, path = split_named_path("dir/thing.lua")
    assert name == "thing"
    assert path.name == "thing.lua"


def test_repack_edit_script_runs_editor(moon, tmp_path, monkeypatch):
    editor = tmp_path / "editor.py"
    editor.write_text(
        "import sys\nwith open(sys.argv[1], 'ab') as f:\n    f.write(b'\\n-- edited')\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("MOONTOOL_EDITOR", f"{shlex.quote(sys.executable)} {shlex.quote(str(editor))}")
    assert main(["repack", str(moon), "-e", "script", "-e", "fresh"]) == 0
    bundle = read_bundle(moon)
    assert bundle.scripts["script"] == b"print('hello')\n-- edited"
    assert bundle.scripts["fresh"] == b"\n-- edited"


def test_repack_failing_editor_is_reported(moon, monkeypatch, capsys):
    before = moon.read_bytes()
    monkeypatch.setenv("MOONTOOL_EDITOR", f"{shlex.quote(sys.executable)} -c 'raise SystemExit(3)'")
    assert main(["repack", str(moon), "-e", "script"]) == 1
    assert "[ERROR]" in capsys.readouterr().out
    assert moon.read_bytes() == before


def test_repack_duplicate_author_warns(moon, capsys):
    assert main(["repack", str(moon), "-A", "alice", "-A", "carol"]) == 0
    out = capsys.readouterr().out
    assert "[WARN] Author not added" in out
    assert "1 change" in out
    assert read_bundle(moon).metadata.authors == ["alice", "carol"]


@pytest.mark.parametrize(
    "edit",
    [["-A", "bob"], ["-s", "x.lua"], ["-t", "x.png"], ["-e", "script"], ["-r", "script"], ["-R", "model.skin"]],
)
def test_if_smaller_conflicts_with_edits(moon, edit, capsys):
    before = moon.read_bytes()
    with pytest.raises(SystemExit) as exc:
        main(["repack", str(moon), "-w", *edit])
    assert exc.value.code == 2
    assert "--if-smaller" in capsys.readouterr().err
    assert moon.read_bytes() == before
