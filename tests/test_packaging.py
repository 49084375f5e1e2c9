"""Test that the build configuration ships every source directory."""

import tomllib
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent


def test_every_source_directory_is_packaged():
    config = tomllib.loads((ROOT / "pyproject.toml").read_text())
    packages = set(config["tool"]["setuptools"]["packages"])

    source_dirs = {
        ".".join(path.parent.relative_to(ROOT).parts)
        for path in (ROOT / "promptchain").rglob("*.py")
        if "__pycache__" not in path.parts
    }
    assert source_dirs == packages


def test_entry_points_target_packaged_modules():
    config = tomllib.loads((ROOT / "pyproject.toml").read_text())
    packages = set(config["tool"]["setuptools"]["packages"])
    for target in config["project"]["scripts"].values():
        module = target.split(":")[0]
        assert module.rsplit(".", 1)[0] in packages
        assert (ROOT / (module.replace(".", "/") + ".py")).exists()
