import importlib
import sys
import textwrap
from collections.abc import Callable, Iterator
from pathlib import Path
from types import ModuleType

import pytest

GENERATOR_DIR = Path(__file__).resolve().parent.parent
if str(GENERATOR_DIR) not in sys.path:
    sys.path.insert(0, str(GENERATOR_DIR))

import juv  # noqa: E402

POST_MODEL = """
from __future__ import annotations

import datetime
from dataclasses import dataclass, field
from typing import Annotated, Optional

from pydantic import Field


@dataclass
class Post:
    id: Annotated[int, Field(gt=0)] = 0
    created: Optional[datetime.datetime] = None
    draft: Optional[bool] = None
    title: Annotated[str, Field(min_length=1)] = "untitled"
    body: Annotated[str, Field(max_length=50)] = ""
    tags: list[str] = field(default_factory=list)
    extra: dict[str, int] = field(default_factory=dict)


class NotARecord:
    value: int = 0
"""


@pytest.fixture
def write_source(tmp_path: Path) -> Callable[..., Path]:
    def _write_source(name: str, text: str, directory: Path | None = None) -> Path:
        target_dir = tmp_path if directory is None else directory
        target_dir.mkdir(parents=True, exist_ok=True)
        path = target_dir / name
        path.write_text(textwrap.dedent(text).lstrip("\n"), encoding="utf-8")
        return path

    return _write_source


@pytest.fixture
def make_package(tmp_path: Path) -> Callable[..., Path]:
    """Create an importable package under tmp_path with the given modules.

    Module keys may name a subpackage ("sub/model"); the module's directory
    gets an empty __init__.py when it has none.
    """

    def _make_package(package: str, modules: dict[str, str]) -> Path:
        package_dir = tmp_path / package
        package_dir.mkdir()
        (package_dir / "__init__.py").write_text("", encoding="utf-8")
        for stem, text in modules.items():
            module_file = package_dir / f"{stem}.py"
            module_file.parent.mkdir(parents=True, exist_ok=True)
            init_file = module_file.parent / "__init__.py"
            if not init_file.exists():
                init_file.write_text("", encoding="utf-8")
            module_file.write_text(textwrap.dedent(text).lstrip("\n"), encoding="utf-8")
        return package_dir

    return _make_package


@pytest.fixture
def import_generated(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> Iterator[Callable[[str], ModuleType]]:
    """Import a generated module from tmp_path, unloading the package afterwards."""
    monkeypatch.syspath_prepend(str(tmp_path))
    imported: list[str] = []

    def _import_generated(dotted: str) -> ModuleType:
        imported.append(dotted.split(".")[0])
        return importlib.import_module(dotted)

    yield _import_generated

    for package in imported:
        for name in list(sys.modules):
            if name == package or name.startswith(package + "."):
                del sys.modules[name]


@pytest.fixture
def make_record() -> Callable[..., juv.RecordToken]:
    def _make_record(
        name: str, fields: list[tuple[str, str]], module: str = "model"
    ) -> juv.RecordToken:
        return juv.RecordToken(
            name=name,
            fields=tuple(juv.FieldToken(name=n, type=t) for n, t in fields),
            module=module,
        )

    return _make_record


@pytest.fixture
def post_model() -> str:
    return POST_MODEL
