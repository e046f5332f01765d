import asyncio
import json
from pathlib import Path

import pytest

from baker import bundler as bundler_mod
from baker.bundler import BundleResult, EsbuildBundler, build_command, bundle_error, parse_metafile
from baker.config import ConfigurationError
from baker.engines.base import RenderError
from baker.executable_utils import find_executable
from baker.protocols import LEGACY, MODERN

STDERR = """\
✘ [ERROR] Could not resolve "./missing"

    scripts/app.js:1:7:
      1 │ import "./missing";
        ╵        ~~~~~~~~~~~

"""


def test_build_command_modern_development(tmp_path):
    command = build_command(
        "/bin/esbuild",
        {"b": tmp_path / "b.js", "a": tmp_path / "a.js"},
        MODERN,
        tmp_path / "out",
        tmp_path / "meta.json",
        production=False,
        defines={"process.env.NODE_ENV": '"development"'},
    )
    assert command[:3] == ["/bin/esbuild", str(tmp_path / "a.js"), str(tmp_path / "b.js")]
    assert "--bundle" in command
    assert "--format=esm" in command and "--splitting" in command
    assert "--entry-names=[name]" in command
    assert "--sourcemap" in command and "--minify" not in command
    assert f"--outdir={tmp_path / 'out'}" in command
    assert f"--metafile={tmp_path / 'meta.json'}" in command
    assert command[-1] == '--define:process.env.NODE_ENV="development"'


def test_build_command_production_and_legacy(tmp_path):
    prod = build_command("esbuild", {"a": tmp_path / "a.js"}, MODERN, tmp_path, tmp_path / "m", True)
    assert "--minify" in prod and "--entry-names=[name].[hash]" in prod

    legacy = build_command("esbuild", {"a": tmp_path / "a.js"}, LEGACY, tmp_path, tmp_path / "m", True)
    assert "--format=iife" in legacy and "--target=es2015" in legacy
    assert "--splitting" not in legacy

    with pytest.raises(ValueError):
        build_command("esbuild", {}, "umd", tmp_path, tmp_path / "m", False)


def test_parse_metafile(tmp_path):
    cwd = tmp_path.resolve()
    meta = {
        "outputs": {
            "_dist/scripts/app.js": {
                "entryPoint": "scripts/app.js",
                "cssBundle": "_dist/scripts/app.css",
                "imports": [{"path": "_dist/scripts/chunks/chunk.ABC.js", "kind": "import-statement"}],
                "inputs": {"scripts/app.js": {}},
            },
            "_dist/scripts/app.js.map": {"inputs": {}},
            "_dist/scripts/admin.js": {
                "entryPoint": "scripts/admin.js",
                "imports": [{"path": "_dist/scripts/chunks/chunk.ABC.js", "kind": "import-statement"}],
                "inputs": {"scripts/admin.js": {}, "(disabled):fs": {}},
            },
            "_dist/scripts/chunks/chunk.ABC.js": {
                "imports": [],
                "inputs": {"scripts/lib/shared.js": {}, "node_modules/pkg/index.js": {}},
            },
            "_dist/scripts/app.css": {"inputs": {"scripts/app.css": {}}},
        }
    }
    entrypoints = {"app": cwd / "scripts" / "app.js", "admin": cwd / "scripts" / "admin.js"}
    result = parse_metafile(meta, entrypoints, cwd, cwd / "_dist")

    assert result.entries == {"app": "scripts/app.js", "admin": "scripts/admin.js"}
    assert result.css == {"app": ["scripts/app.css"], "admin": []}
    assert result.chunks == ["scripts/chunks/chunk.ABC.js"]
    assert set(result.inputs["app"]) == {
        cwd / "scripts" / "app.js",
        cwd / "scripts" / "app.css",
        cwd / "scripts" / "lib" / "shared.js",
        cwd / "node_modules" / "pkg" / "index.js",
    }
    assert set(result.inputs["admin"]) == {
        cwd / "scripts" / "admin.js",
        cwd / "scripts" / "lib" / "shared.js",
        cwd / "node_modules" / "pkg" / "index.js",
    }


def test_bundle_error_parses_location(tmp_path):
    (tmp_path / "scripts").mkdir()
    (tmp_path / "scripts" / "app.js").write_text('import "./missing";\n', encoding="utf-8")
    error = bundle_error(STDERR, tmp_path)
    assert error.message == 'Could not resolve "./missing"'
    assert error.source_path == (tmp_path / "scripts" / "app.js").resolve()
    assert error.line == 1
    assert error.column == 8
    assert "> 1 |" in error.frame

    bare = bundle_error("something broke", tmp_path)
    assert bare.message == "something broke"
    assert bare.line is None


def test_find_executable_prefers_node_modules(tmp_path, monkeypatch):
    local = tmp_path / "node_modules" / ".bin" / "esbuild"
    local.parent.mkdir(parents=True)
    local.write_text("", encoding="utf-8")
    monkeypatch.setattr("baker.executable_utils.shutil.which", lambda name: f"/usr/bin/{name}")
    assert find_executable("esbuild", tmp_path / "node_modules") == str(local)
    assert find_executable("esbuild", tmp_path / "elsewhere") == "/usr/bin/esbuild"
    assert find_executable("esbuild") == "/usr/bin/esbuild"


def test_missing_esbuild_is_a_configuration_error(make_config, monkeypatch):
    monkeypatch.setattr("baker.bundler.find_executable", lambda name, node_modules=None: None)
    bundler = EsbuildBundler(make_config())
    assert asyncio.run(bundler.bundle({}, MODERN)) == BundleResult()
    with pytest.raises(ConfigurationError, match="esbuild"):
        asyncio.run(bundler.bundle({"app": Path("scripts/app.js")}, MODERN))


class FakeProcess:
    def __init__(self, returncode, stderr=b""):
        self.returncode = returncode
        self._stderr = stderr

    async def communicate(self):
        return b"", self._stderr


def test_esbuild_bundler_runs_subprocess(tmp_path, make_config, monkeypatch):
    config = make_config("production", static_root="static")
    entry = tmp_path.resolve() / "scripts" / "app.js"
    calls = {}

    async def fake_exec(*command, cwd=None, stdout=None, stderr=None):
        calls["command"] = command
        calls["cwd"] = cwd
        metafile = next(arg for arg in command if arg.startswith("--metafile="))
        meta = {
            "outputs": {
                "_dist/static/scripts/app.XYZ.js": {
                    "entryPoint": "scripts/app.js",
                    "imports": [],
                    "inputs": {"scripts/app.js": {}},
                }
            }
        }
        Path(metafile.split("=", 1)[1]).write_text(json.dumps(meta), encoding="utf-8")
        return FakeProcess(0)

    monkeypatch.setattr(bundler_mod, "find_executable", lambda name, node_modules=None: "/bin/esbuild")
    monkeypatch.setattr(bundler_mod.asyncio, "create_subprocess_exec", fake_exec)
    bundler = EsbuildBundler(config)
    result = asyncio.run(bundler.bundle({"app": entry}, MODERN))

    assert result.entries == {"app": "static/scripts/app.XYZ.js"}
    assert result.inputs == {"app": [entry]}
    assert calls["cwd"] == str(config.input)
    assert f"--outdir={config.output / 'static' / 'scripts'}" in calls["command"]
    assert "--minify" in calls["command"]
    assert any(arg.startswith("--define:process.env.NODE_ENV=") for arg in calls["command"])
    assert bundler.outdir(LEGACY) == config.output / "static" / "scripts" / "nomodule"


def test_esbuild_bundler_failure_raises_render_error(tmp_path, make_config, monkeypatch):
    config = make_config()

    async def fake_exec(*command, cwd=None, stdout=None, stderr=None):
        return FakeProcess(1, STDERR.encode("utf-8"))

    monkeypatch.setattr(bundler_mod, "find_executable", lambda name, node_modules=None: "/bin/esbuild")
    monkeypatch.setattr(bundler_mod.asyncio, "create_subprocess_exec", fake_exec)
    with pytest.raises(RenderError, match="Could not resolve"):
        asyncio.run(EsbuildBundler(config).bundle({"app": tmp_path / "scripts" / "app.js"}, MODERN))
