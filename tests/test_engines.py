import asyncio
import io
import re
from pathlib import Path

import pytest
from PIL import Image

from baker.config import ConfigurationError
from baker.engines.assets import AssetsEngine, ImageProcessor, JSProcessor, create_default_registry
from baker.engines.base import ChangeHandler, Engine, RenderError
from baker.engines.scripts import ScriptEngine, entry_names
from baker.engines.styles import (
    StyleEngine,
    _candidates,
    collect_imports,
    resolve_import,
    rewrite_css_urls,
)
from baker.bundler import EsbuildBundler
from baker.protocols import Bundler
from baker.utils import rev_hash


def write(path, content):
    path.parent.mkdir(parents=True, exist_ok=True)
    if isinstance(content, bytes):
        path.write_bytes(content)
    else:
        path.write_text(content, encoding="utf-8")
    return path


def png_bytes(color="red"):
    buffer = io.BytesIO()
    Image.new("RGB", (4, 4), color).save(buffer, format="PNG")
    return buffer.getvalue()


class TextEngine(Engine):
    """Uppercases .txt files and inlines ``include <path>`` lines."""

    name = "text"

    def __init__(self, config):
        super().__init__(config)
        self.file_patterns = ["**/*.txt"]
        self.rendered = []

    async def render(self, file):
        self.rendered.append(file.name)
        self.add_dependency(file)
        lines = []
        for line in file.read_text(encoding="utf-8").splitlines():
            if line.startswith("include "):
                included = file.parent / line.split()[1]
                self.add_dependency(included, file)
                line = included.read_text(encoding="utf-8")
            lines.append(line)
        return "\n".join(lines).upper()

    def get_output_path(self, relative, content):
        return relative


@pytest.fixture
def text_project(tmp_path):
    write(tmp_path / "a.txt", "page a\ninclude _partials/part.txt")
    write(tmp_path / "c.txt", "page c")
    write(tmp_path / "_partials" / "part.txt", "partial")
    write(tmp_path / "node_modules" / "pkg" / "readme.txt", "ignored")
    write(tmp_path / "_dist" / "stale.txt", "ignored")
    return tmp_path


# engine base


def test_engine_discovers_renders_and_writes(text_project, make_config):
    engine = TextEngine(make_config())
    assert [p.name for p in engine.find_files()] == ["a.txt", "c.txt"]

    manifest = asyncio.run(engine.build())
    assert manifest == {"a.txt": "a.txt", "c.txt": "c.txt"}
    output = text_project / "_dist"
    assert (output / "a.txt").read_text(encoding="utf-8") == "PAGE A\nPARTIAL"
    assert engine.importers_of(text_project / "_partials" / "part.txt") == {
        (text_project / "a.txt").resolve()
    }


def test_engine_rebuild_only_renders_affected_inputs(text_project, make_config):
    engine = TextEngine(make_config())
    asyncio.run(engine.build())

    engine.rendered.clear()
    write(text_project / "_partials" / "part.txt", "changed")
    asyncio.run(engine.rebuild([text_project / "_partials" / "part.txt"]))
    assert engine.rendered == ["a.txt"]
    assert (text_project / "_dist" / "a.txt").read_text(encoding="utf-8") == "PAGE A\nCHANGED"

    engine.rendered.clear()
    asyncio.run(engine.rebuild([text_project / "c.txt"]))
    assert engine.rendered == ["c.txt"]

    # unknown files force a full build
    engine.rendered.clear()
    write(text_project / "new.txt", "new")
    manifest = asyncio.run(engine.rebuild([text_project / "new.txt"]))
    assert sorted(engine.rendered) == ["a.txt", "c.txt", "new.txt"]
    assert "new.txt" in manifest


def test_engine_rebuild_after_failed_build_rebuilds_everything(text_project, make_config):
    write(text_project / "b.txt", "page b\ninclude _partials/missing.txt")
    engine = TextEngine(make_config())
    with pytest.raises(FileNotFoundError):
        asyncio.run(engine.build())
    assert not engine.complete
    assert engine.manifest == {}

    outcomes = []
    batch = {("modified", text_project / "c.txt")}
    asyncio.run(engine.handle_changes(batch, lambda error, result: outcomes.append((error, result))))
    ((error, result),) = outcomes
    assert isinstance(error, FileNotFoundError)
    assert result is None

    write(text_project / "b.txt", "page b")
    outcomes.clear()
    asyncio.run(engine.handle_changes(batch, lambda error, result: outcomes.append((error, result))))
    assert outcomes == [(None, {"a.txt": "a.txt", "b.txt": "b.txt", "c.txt": "c.txt"})]
    assert engine.complete


def test_engine_failed_rebuild_forces_full_build_next_time(text_project, make_config):
    engine = TextEngine(make_config())
    asyncio.run(engine.build())
    assert engine.complete

    write(text_project / "a.txt", "page a\ninclude _partials/missing.txt")
    with pytest.raises(FileNotFoundError):
        asyncio.run(engine.rebuild([text_project / "a.txt"]))
    assert not engine.complete

    # a.txt is still broken, so an edit elsewhere must not report success
    with pytest.raises(FileNotFoundError):
        asyncio.run(engine.rebuild([text_project / "c.txt"]))


def test_engine_defaults_copy_files_through(tmp_path, make_config):
    write(tmp_path / "files" / "data.bin", b"\x00\x01")

    class CopyEngine(Engine):
        name = "copy"

    engine = CopyEngine(make_config())
    engine.file_patterns = ["files/*"]
    assert asyncio.run(engine.build()) == {"files/data.bin": "files/data.bin"}
    assert (tmp_path / "_dist" / "files" / "data.bin").read_bytes() == b"\x00\x01"


def test_engine_build_is_idempotent(text_project, make_config):
    engine = TextEngine(make_config())
    first = dict(asyncio.run(engine.build()))
    first_deps = engine.get_dependencies()
    second = asyncio.run(engine.build())
    assert first == second
    assert engine.get_dependencies() == first_deps

    engine.invalidate()
    assert engine.manifest == {}
    assert engine.dependencies == set()


def test_engine_is_watched(text_project, make_config):
    engine = TextEngine(make_config())
    asyncio.run(engine.build())
    assert engine.is_watched(text_project / "c.txt")
    assert engine.is_watched(text_project / "_partials" / "part.txt")
    assert not engine.is_watched(text_project / "_partials" / "other.txt")
    assert not engine.is_watched(text_project / "style.css")


def test_engine_handle_changes_reports_result_and_errors(text_project, make_config):
    engine = TextEngine(make_config())
    asyncio.run(engine.build())
    outcomes = []

    async def on_change(error, result):
        outcomes.append((error, result))

    asyncio.run(engine.handle_changes({("modified", (text_project / "c.txt").resolve())}, on_change))
    assert outcomes[-1][0] is None
    assert outcomes[-1][1]["c.txt"] == "c.txt"

    (text_project / "c.txt").unlink()
    write(text_project / "broken.txt", "include _partials/missing.txt")
    asyncio.run(engine.handle_changes({("created", (text_project / "broken.txt").resolve())}, on_change))
    error, result = outcomes[-1]
    assert isinstance(error, FileNotFoundError)
    assert result is None

    sync_outcomes = []
    (text_project / "broken.txt").unlink()
    asyncio.run(
        engine.handle_changes(
            {("deleted", (text_project / "broken.txt").resolve())},
            lambda error, result: sync_outcomes.append(error),
        )
    )
    assert sync_outcomes == [None]


def test_engine_watch_schedules_on_given_observer(text_project, make_config):
    engine = TextEngine(make_config())

    class DummyObserver:
        def __init__(self):
            self.scheduled = []

        def schedule(self, handler, path, recursive=False):
            self.scheduled.append((handler, path, recursive))

    async def run():
        observer = DummyObserver()
        assert engine.watch(lambda error, result: None, observer=observer) is observer
        return observer

    observer = asyncio.run(run())
    handler, path, recursive = observer.scheduled[0]
    assert isinstance(handler, ChangeHandler)
    assert path == str(engine.input)
    assert recursive


def test_change_handler_forwards_accepted_events(tmp_path):
    class DummyEvent:
        def __init__(self, src_path, event_type="modified", is_directory=False, dest_path=""):
            self.src_path = src_path
            self.event_type = event_type
            self.is_directory = is_directory
            self.dest_path = dest_path

    pushed = []

    class DummyDebouncer:
        def push(self, item):
            pushed.append(item)

    async def run():
        loop = asyncio.get_running_loop()
        handler = ChangeHandler(lambda path: path.suffix == ".txt", loop, DummyDebouncer())
        handler.on_any_event(DummyEvent(str(tmp_path / "a.txt")))
        handler.on_any_event(DummyEvent(str(tmp_path / "a.css")))
        handler.on_any_event(DummyEvent(str(tmp_path / "dir"), is_directory=True))
        await asyncio.sleep(0)

    asyncio.run(run())
    assert pushed == [("modified", (tmp_path / "a.txt").resolve())]


# assets


def test_assets_engine_copies_in_development(tmp_path, make_config):
    write(tmp_path / "assets" / "img" / "logo.png", png_bytes())
    write(tmp_path / "assets" / "data.json", '{ "a": 1 }')
    write(tmp_path / "assets" / "css" / "site.scss", "body {}")
    write(tmp_path / "assets" / "_drafts" / "draft.png", png_bytes())
    engine = AssetsEngine(make_config())
    manifest = asyncio.run(engine.build())
    assert manifest == {
        "assets/data.json": "assets/data.json",
        "assets/img/logo.png": "assets/img/logo.png",
    }
    assert (tmp_path / "_dist" / "assets" / "data.json").read_text(encoding="utf-8") == '{ "a": 1 }'


def test_assets_engine_hashes_in_production(tmp_path, make_config):
    write(tmp_path / "assets" / "img" / "logo.png", png_bytes())
    write(tmp_path / "assets" / "data.json", '{ "a": 1 }')
    write(tmp_path / "assets" / "robots.txt", "User-agent: *")
    engine = AssetsEngine(make_config("production", static_root="static"))
    manifest = asyncio.run(engine.build())

    logo = manifest["assets/img/logo.png"]
    assert re.fullmatch(r"static/assets/img/logo\.[0-9a-f]{8}\.png", logo)
    written = (tmp_path / "_dist" / logo).read_bytes()
    assert logo == f"static/assets/img/logo.{rev_hash(written)}.png"

    data = manifest["assets/data.json"]
    assert (tmp_path / "_dist" / data).read_text(encoding="utf-8") == '{"a":1}'
    assert manifest["assets/robots.txt"] == "static/assets/robots.txt"

    # same content, same names
    assert asyncio.run(engine.build()) == manifest
    write(tmp_path / "assets" / "img" / "logo.png", png_bytes("blue"))
    assert asyncio.run(engine.build())["assets/img/logo.png"] != logo


def test_asset_processors():
    registry = create_default_registry()
    assert isinstance(registry.get_processor(Path("a.png")), ImageProcessor)
    assert registry.get_processor(Path("a.woff2")) is None
    assert registry.process(b"\x00font", Path("a.woff2")) == b"\x00font"
    # unreadable images are left alone
    assert ImageProcessor().process(b"not an image", Path("a.png")) == b"not an image"
    minified = JSProcessor().process(b"var  a = 1;\n\n// comment\nvar b = 2;", Path("a.js"))
    assert b"comment" not in minified
    assert registry.process(b"body {  color: red;  }", Path("a.css")) == b"body{color:red}"


# styles


@pytest.fixture
def style_project(tmp_path):
    write(tmp_path / "css" / "main.scss", '@import "partials/vars";\nbody { color: $color; }\n')
    write(tmp_path / "css" / "partials" / "_vars.scss", '@import "colors";\n')
    write(tmp_path / "css" / "partials" / "_colors.scss", "$color: red;\n")
    return tmp_path


def test_sass_import_resolution(style_project):
    css = style_project / "css"
    assert "partials/_vars.scss" in _candidates("partials/vars")
    assert resolve_import("partials/vars", css, []) == (css / "partials" / "_vars.scss").resolve()
    assert resolve_import("sass:math", css, []) is None
    assert resolve_import("reset.css", css, []) is None
    assert resolve_import("missing", css, []) is None
    assert collect_imports(css / "main.scss", []) == [
        (css / "partials" / "_vars.scss").resolve(),
        (css / "partials" / "_colors.scss").resolve(),
    ]


def test_style_engine_compiles_and_tracks_partials(style_project, make_config):
    engine = StyleEngine(make_config())
    manifest = asyncio.run(engine.build())
    assert manifest == {"css/main.scss": "css/main.css"}
    output = style_project / "_dist" / "css" / "main.css"
    assert "color: red" in output.read_text(encoding="utf-8")

    colors = style_project / "css" / "partials" / "_colors.scss"
    assert engine.importers_of(colors) == {(style_project / "css" / "main.scss").resolve()}
    assert engine.is_watched(colors)

    write(colors, "$color: blue;\n")
    asyncio.run(engine.rebuild([colors]))
    assert "color: blue" in output.read_text(encoding="utf-8")


def test_style_engine_hashes_and_minifies_in_production(style_project, make_config):
    engine = StyleEngine(make_config("production", static_root="static"))
    manifest = asyncio.run(engine.build())
    output = manifest["css/main.scss"]
    assert re.fullmatch(r"static/css/main\.[0-9a-f]{8}\.css", output)
    content = (style_project / "_dist" / output).read_text(encoding="utf-8")
    assert content == "body{color:red}"
    assert output == f"static/css/main.{rev_hash(content)}.css"


def test_style_engine_rewrites_urls_through_resolver(tmp_path, make_config):
    write(
        tmp_path / "css" / "main.scss",
        '.logo { background: url("../assets/img/logo.png"); }\n'
        ".icon { background: url(data:image/png;base64,AAAA); }\n"
        ".other { background: url(../assets/unknown.png); }\n",
    )
    known = {"assets/img/logo.png": "/static/assets/img/logo.1234abcd.png"}
    engine = StyleEngine(make_config(), url_resolver=known.get)
    asyncio.run(engine.build())
    css = (tmp_path / "_dist" / "css" / "main.css").read_text(encoding="utf-8")
    assert 'url("/static/assets/img/logo.1234abcd.png")' in css
    assert "url(data:image/png;base64,AAAA)" in css
    assert "url(../assets/unknown.png)" in css


def test_style_engine_static_functions(tmp_path, make_config):
    write(
        tmp_path / "main.scss",
        'a { b: static-url("assets/logo.png"); c: static-path("assets/logo.png"); }\n',
    )
    known = {"assets/logo.png": "/static/assets/logo.1234abcd.png"}
    engine = StyleEngine(make_config(), static_resolver=known.__getitem__)
    asyncio.run(engine.build())
    css = (tmp_path / "_dist" / "main.css").read_text(encoding="utf-8")
    assert "b: url(/static/assets/logo.1234abcd.png);" in css
    assert "c: /static/assets/logo.1234abcd.png;" in css

    write(tmp_path / "main.scss", 'a { b: static-url("assets/missing.png"); }\n')
    with pytest.raises(RenderError):
        asyncio.run(engine.build())

    assert StyleEngine(make_config()).sass_functions() == {}


def test_rewrite_css_urls_keeps_suffixes():
    css = "@font-face { src: url('fonts/a.woff2?#iefix'); } a { b: url(https://x.com/y.png); }"
    rewritten = rewrite_css_urls(css, lambda path: f"/out/{path}", base="css")
    assert "url('/out/css/fonts/a.woff2?#iefix')" in rewritten
    assert "url(https://x.com/y.png)" in rewritten


def test_style_engine_reports_compile_errors(tmp_path, make_config):
    write(tmp_path / "main.scss", "body { color: $missing; }\n")
    engine = StyleEngine(make_config())
    with pytest.raises(RenderError) as excinfo:
        asyncio.run(engine.build())
    error = excinfo.value
    assert "Undefined variable" in error.message
    assert error.line == 1
    assert error.frame and "> 1 |" in error.frame


# scripts


def test_entry_names_rejects_duplicates(tmp_path):
    assert entry_names([tmp_path / "a" / "app.js"]) == {"app": tmp_path / "a" / "app.js"}
    with pytest.raises(ConfigurationError, match='"main"'):
        entry_names([tmp_path / "a" / "main.js", tmp_path / "b" / "main.js"])


def test_script_engine_builds_manifest_with_fake_bundler(tmp_path, make_config, fake_bundler):
    write(tmp_path / "scripts" / "app.js", "import './lib.js';")
    write(tmp_path / "scripts" / "lib.js", "export const x = 1;")
    config = make_config(entrypoints=["scripts/app.js"])
    bundler = fake_bundler(config)
    engine = ScriptEngine(config, bundler=bundler)
    assert isinstance(bundler, Bundler)

    manifest = asyncio.run(engine.build())
    assert manifest == {
        "modern": {"app": "scripts/app.js"},
        "css": {"app": ["scripts/app.css"]},
        "preloads": ["scripts/chunks/shared.js"],
    }
    app = (tmp_path / "scripts" / "app.js").resolve()
    assert engine.importers_of(tmp_path / "scripts" / "lib.js") == {app}
    assert engine.is_watched(tmp_path / "scripts" / "lib.js")
    assert engine.is_watched(tmp_path / "scripts" / "other.ts")

    asyncio.run(engine.rebuild([tmp_path / "scripts" / "lib.js"]))
    assert len(bundler.calls) == 2


def test_script_engine_legacy_flavor(tmp_path, make_config, fake_bundler):
    write(tmp_path / "scripts" / "app.js", "console.log(1);")
    config = make_config(legacy=True)
    engine = ScriptEngine(config, bundler=fake_bundler(config))
    manifest = asyncio.run(engine.build())
    assert manifest["legacy"] == {"app": "scripts/nomodule/app.js"}
    assert (tmp_path / "_dist" / "scripts" / "nomodule" / "app.js").exists()


def test_script_engine_duplicate_names_write_nothing(tmp_path, make_config, fake_bundler):
    write(tmp_path / "a" / "main.js", "1")
    write(tmp_path / "b" / "main.js", "2")
    config = make_config(entrypoints=["a/main.js", "b/main.js"])
    bundler = fake_bundler(config)
    engine = ScriptEngine(config, bundler=bundler)
    with pytest.raises(ConfigurationError, match='"main"'):
        asyncio.run(engine.build())
    assert bundler.calls == []
    assert not (tmp_path / "_dist").exists()


def test_script_engine_defaults_to_esbuild(make_config):
    engine = ScriptEngine(make_config())
    assert isinstance(engine.bundler, EsbuildBundler)
    with pytest.raises(NotImplementedError):
        engine.get_output_path("a.js", "")
