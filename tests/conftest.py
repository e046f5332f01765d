from pathlib import Path

import pytest

from baker.bundler import BundleResult
from baker.config import prepare_config
from baker.protocols import LEGACY, MODERN


class FakeBundler:
    """Stands in for esbuild: writes one file per entry and reports it."""

    def __init__(self, config):
        self.config = config
        self.calls = []

    async def bundle(self, entrypoints, flavor):
        self.calls.append((flavor, dict(entrypoints)))
        base = "scripts/nomodule" if flavor == LEGACY else "scripts"
        if self.config.static_root:
            base = f"{self.config.static_root}/{base}"
        result = BundleResult()
        for name, path in sorted(entrypoints.items()):
            output = f"{base}/{name}.js"
            target = self.config.output / output
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(f"/* {flavor} */\n" + Path(path).read_text(encoding="utf-8"), encoding="utf-8")
            result.entries[name] = output
            result.inputs[name] = [Path(path), Path(path).parent / "lib.js"]
            if flavor == MODERN:
                result.css[name] = [f"{base}/{name}.css"]
        if flavor == MODERN:
            result.chunks = [f"{base}/chunks/shared.js"]
        return result


@pytest.fixture
def make_config(tmp_path):
    def factory(mode="development", **options):
        return prepare_config({"input": str(tmp_path), **options}, mode)

    return factory


@pytest.fixture
def fake_bundler():
    return FakeBundler
