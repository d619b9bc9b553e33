from __future__ import annotations

import tomllib
from pathlib import Path

PYPROJECT = Path(__file__).resolve().parents[2] / "pyproject.toml"


def _requirement_names(requirements: list[str]) -> set[str]:
    return {req.split(">")[0].split("=")[0].split("<")[0].strip().lower() for req in requirements}


def test_test_only_libraries_stay_out_of_runtime_dependencies() -> None:
    project = tomllib.loads(PYPROJECT.read_text(encoding="utf-8"))["project"]
    runtime = _requirement_names(project["dependencies"])
    test_extra = _requirement_names(project["optional-dependencies"]["test"])

    assert {"fastapi", "pydantic", "pydantic-settings", "python-json-logger", "pyfarmhash"} <= runtime
    assert "httpx" not in runtime
    assert {"pytest", "httpx"} <= test_extra
    assert "anyio" not in runtime | test_extra
