"""Validating JSON decoder generator for Python dataclasses.

Scans Python sources for top-level ``@dataclass`` records and generates one
``unmarshal_<record>`` function per record. Each generated function decodes
JSON, validates it with pydantic against the constraints declared on the
record (``Annotated[int, Field(gt=0)]`` and friends) and copies the decoded
fields into an existing instance.

Usage:
    juv -p example -o example/juv_gen.py example/model.py
"""

import argparse
import ast
import enum
import re
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

import black

DEFAULT_OUTPUT = Path("juv_gen.py")
GENERATED_HEADER = "# generated by juv; DO NOT EDIT"


# ===--- Errors ---=== #


class JuvError(Exception):
    """Base class for every failure juv reports to the user."""


VALID_ERROR_CODES = {
    "NO_INPUT_PATHS",
    "PATH_NOT_FOUND",
}


class DiscoveryError(JuvError):
    def __init__(self, code: str, message: str, suggestion: str | None = None):
        if code not in VALID_ERROR_CODES:
            raise ValueError(f"Unknown discovery error code: {code}")
        super().__init__(message)
        self.code = code
        self.message = message
        self.suggestion = suggestion


class NoTypesFoundError(JuvError):
    """No dataclass records were found in any input file."""


class RenderError(JuvError):
    """The generation unit cannot be rendered into source text."""


class FormatError(JuvError):
    """Rendered source is not valid Python and cannot be formatted.

    Attributes:
        lineno: 1-based line in the rendered text where parsing failed, when
            known.
    """

    def __init__(self, message: str, lineno: int | None = None):
        super().__init__(message)
        self.lineno = lineno


# ===--- CLI config contracts ---=== #


@dataclass(frozen=True)
class GenerateConfig:
    paths: tuple[Path, ...]
    output: Path
    package: str
    check: bool = False


def build_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="juv",
        description="Generate validating JSON decoders for Python dataclasses",
    )

    parser.add_argument("paths", nargs="*", type=Path, metavar="PATH")
    parser.add_argument("-o", "--output", type=Path, default=DEFAULT_OUTPUT)
    parser.add_argument("-p", "--package", type=str, default=None)
    parser.add_argument("--check", action="store_true", default=False)

    return parser


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = build_argument_parser()
    return parser.parse_args(argv)


def validate_config(args: argparse.Namespace, cwd: Path | None = None) -> GenerateConfig:
    """Turn parsed arguments into a GenerateConfig.

    The package defaults to the name of the working directory, matching the
    common layout where juv runs inside the package it generates for.

    Args:
        args: Namespace from parse_args.
        cwd: Directory used for the package default. Defaults to Path.cwd().

    Returns:
        Frozen GenerateConfig. Input paths are not checked here; find_files
        reports missing paths as DiscoveryError.
    """
    package = args.package
    if package is None:
        package = (cwd if cwd is not None else Path.cwd()).resolve().name

    return GenerateConfig(
        paths=tuple(args.paths),
        output=args.output,
        package=package,
        check=args.check,
    )


def build_config(argv: list[str] | None = None) -> GenerateConfig:
    return validate_config(parse_args(argv))


# ===--- File discovery ---=== #


def _is_hidden(path: Path, root: Path) -> bool:
    return any(part.startswith(".") for part in path.relative_to(root).parts)


@dataclass(frozen=True)
class SourceFile:
    """One input file and the dotted module it defines inside the package.

    Attributes:
        path: Path as given or as found while walking a directory.
        module: Module path relative to the package, e.g. "model" or
            "sub.model". A subpackage's ``__init__.py`` maps to the
            subpackage ("sub"); the package's own ``__init__.py`` is
            "__init__".
    """

    path: Path
    module: str


def module_path(path: Path, root: Path | None = None) -> str:
    """Return the dotted module of path relative to a walked directory root.

    Files given explicitly (root is None) map to their stem.
    """
    if root is None:
        return path.stem
    parts = list(path.relative_to(root).with_suffix("").parts)
    if len(parts) > 1 and parts[-1] == "__init__":
        parts.pop()
    return ".".join(parts)


def discover_sources(paths: Iterable[Path]) -> list[SourceFile]:
    """Resolve input paths into an ordered, duplicate-free list of source files.

    Files are taken as given. Directories are walked recursively and every
    ``*.py`` file is collected in sorted order, skipping dot files and
    anything below a dot directory; each keeps its module path relative to
    the walked directory. The same file named twice (for example once
    directly and once through its directory) is kept only at its first
    position.

    Raises:
        DiscoveryError: NO_INPUT_PATHS when paths is empty, PATH_NOT_FOUND
            when a path cannot be stat'ed.
    """
    paths = [Path(p) for p in paths]
    if not paths:
        raise DiscoveryError(
            "NO_INPUT_PATHS",
            "No input paths given.",
            "Pass one or more source files or directories, e.g. juv model.py",
        )

    found: dict[Path, SourceFile] = {}
    for path in paths:
        try:
            path.stat()
        except OSError as err:
            raise DiscoveryError(
                "PATH_NOT_FOUND",
                f"Cannot read input path: {path} ({err.strerror})",
                "Check the path exists and is readable.",
            ) from err

        if path.is_dir():
            candidates = [
                SourceFile(p, module_path(p, path))
                for p in sorted(path.rglob("*.py"))
                if p.is_file() and not _is_hidden(p, path)
            ]
        else:
            candidates = [SourceFile(path, module_path(path))]

        for candidate in candidates:
            found.setdefault(candidate.path.resolve(), candidate)

    return list(found.values())


def find_files(paths: Iterable[Path]) -> list[Path]:
    return [source.path for source in discover_sources(paths)]


# ===--- Token model ---=== #


@dataclass(frozen=True)
class FieldToken:
    name: str
    type: str


@dataclass(frozen=True)
class RecordToken:
    """One dataclass record discovered in a source file.

    Attributes:
        name: Class name as declared.
        fields: Fields with a supported annotation, in declaration order.
            Order drives the order of generated assignments.
        module: Dotted module of the defining file relative to the package,
            e.g. "model" for model.py or "sub.model" for sub/model.py. Used
            to build the import of the record in generated code.
    """

    name: str
    fields: tuple[FieldToken, ...]
    module: str = ""


@dataclass(frozen=True)
class GenerationUnit:
    """Everything one generation run renders: target package plus records.

    Records are in file-then-declaration order. Names are expected to be
    unique; collisions are not detected.
    """

    package: str
    records: tuple[RecordToken, ...]


# ===--- Type describer ---=== #


class TypeShape(enum.Enum):
    PLAIN = "plain"
    QUALIFIED = "qualified"
    ARRAY = "array"
    OPTIONAL = "optional"


ALL_SHAPES = frozenset(TypeShape)
ARRAY_ELEMENT_SHAPES = frozenset({TypeShape.PLAIN, TypeShape.QUALIFIED, TypeShape.OPTIONAL})
OPTIONAL_TARGET_SHAPES = frozenset({TypeShape.PLAIN, TypeShape.QUALIFIED, TypeShape.ARRAY})

_ARRAY_HEADS = {"list", "List"}
_OPTIONAL_HEADS = {"Optional"}
_TYPING_MODULES = {"typing", "typing_extensions"}


def _generic_head(node: ast.expr) -> str | None:
    # list / List / typing.List all name the same generic
    match node:
        case ast.Name(id=name):
            return name
        case ast.Attribute(value=ast.Name(id=module), attr=name) if module in _TYPING_MODULES:
            return name
    return None


def _describe(node: ast.expr, allowed: frozenset[TypeShape]) -> str | None:
    match node:
        case ast.Name(id=name) if TypeShape.PLAIN in allowed:
            return name
        case ast.Attribute(value=ast.Name(id=namespace), attr=name) if (
            TypeShape.QUALIFIED in allowed
        ):
            return f"{namespace}.{name}"
        case ast.Subscript(value=head, slice=element) if (
            TypeShape.ARRAY in allowed and _generic_head(head) in _ARRAY_HEADS
        ):
            inner = _describe(element, ARRAY_ELEMENT_SHAPES)
            return None if inner is None else f"list[{inner}]"
        case ast.Subscript(value=head, slice=target) if (
            TypeShape.OPTIONAL in allowed and _generic_head(head) in _OPTIONAL_HEADS
        ):
            inner = _describe(target, OPTIONAL_TARGET_SHAPES)
            return None if inner is None else f"Optional[{inner}]"
        case ast.BinOp(left=target, op=ast.BitOr(), right=ast.Constant(value=None)) | ast.BinOp(
            left=ast.Constant(value=None), op=ast.BitOr(), right=target
        ) if TypeShape.OPTIONAL in allowed:
            inner = _describe(target, OPTIONAL_TARGET_SHAPES)
            return None if inner is None else f"Optional[{inner}]"
        case _:
            return None


def describe_type(node: ast.expr) -> str | None:
    """Return the canonical descriptor of a field annotation, or None.

    Supported shapes compose as follows:
        plain       int                  -> "int"
        qualified   datetime.datetime    -> "datetime.datetime"
        array       list[T] / List[T]    -> "list[T]"      T: plain, qualified, optional
        optional    Optional[T] / T|None -> "Optional[T]"  T: plain, qualified, array

    Qualified names deeper than one dot, arrays of arrays, optionals of
    optionals and every other shape (dicts, tuples, unions, callables,
    string forward references) are unsupported.

    Args:
        node: Annotation expression from the parsed source.

    Returns:
        Descriptor string, or None when the shape is unsupported.
    """
    return _describe(node, ALL_SHAPES)


def type_descriptor(annotation: str) -> str | None:
    """Describe an annotation given as source text, e.g. "list[int | None]"."""
    return describe_type(ast.parse(annotation, mode="eval").body)


# ===--- Source parser ---=== #


_KW_ONLY_SENTINELS = {"KW_ONLY", "dataclasses.KW_ONLY"}


def _is_dataclass_decorator(node: ast.expr) -> bool:
    if isinstance(node, ast.Call):
        node = node.func
    match node:
        case ast.Name(id="dataclass"):
            return True
        case ast.Attribute(attr="dataclass"):
            return True
    return False


def _strip_annotated(node: ast.expr) -> ast.expr:
    # Annotated[T, ...] carries validation metadata for pydantic, not shape
    match node:
        case ast.Subscript(value=head, slice=ast.Tuple(elts=[inner, *_])) if (
            _generic_head(head) == "Annotated"
        ):
            return inner
    return node


def parse_fields(class_def: ast.ClassDef) -> tuple[FieldToken, ...]:
    fields: list[FieldToken] = []
    for stmt in class_def.body:
        if not isinstance(stmt, ast.AnnAssign) or not isinstance(stmt.target, ast.Name):
            continue

        field_type = describe_type(_strip_annotated(stmt.annotation))
        if field_type is None or field_type in _KW_ONLY_SENTINELS:
            continue

        fields.append(FieldToken(name=stmt.target.id, type=field_type))
    return tuple(fields)


def parse_source(
    text: str, filename: str = "<unknown>", module: str = ""
) -> list[RecordToken]:
    """Collect the dataclass records declared at the top level of a source.

    Only module-level classes decorated with ``dataclass`` (bare, dotted such
    as ``dataclasses.dataclass``, or called such as ``dataclass(frozen=True)``)
    are records. Fields whose annotation is unsupported by describe_type are
    dropped silently; the remaining fields keep declaration order.

    Args:
        text: Python source text.
        filename: Reported in SyntaxError messages.
        module: Stem of the defining module, stored on every RecordToken.

    Returns:
        Records in declaration order. Empty when the source has none.

    Raises:
        SyntaxError: The text is not valid Python. Never caught here.
    """
    tree = ast.parse(text, filename=filename)

    records: list[RecordToken] = []
    for stmt in tree.body:
        if not isinstance(stmt, ast.ClassDef):
            continue
        if not any(_is_dataclass_decorator(d) for d in stmt.decorator_list):
            continue
        records.append(
            RecordToken(name=stmt.name, fields=parse_fields(stmt), module=module)
        )
    return records


def parse_file(path: Path, module: str | None = None) -> list[RecordToken]:
    """Read a source file as UTF-8 and parse it.

    module defaults to the file stem; directory walks pass the dotted path
    relative to the walked root instead.

    Raises:
        UnicodeDecodeError: The file is not valid UTF-8.
        ValueError: The source contains NUL bytes.
    """
    path = Path(path)
    text = path.read_text(encoding="utf-8")
    return parse_source(text, filename=str(path), module=module or path.stem)


# ===--- Template renderer ---=== #


_SHADOW_HELPER = '''\
@functools.cache
def _shadow_adapter(cls):
    """Return a validator for a shadow of cls: same fields, none of its methods."""
    hints = typing.get_type_hints(cls, include_extras=True)
    fields = [
        (
            f.name,
            hints[f.name],
            dataclasses.field(
                default=f.default,
                default_factory=f.default_factory,
                kw_only=f.kw_only,
                metadata=f.metadata,
            ),
        )
        for f in dataclasses.fields(cls)
    ]
    alias = dataclasses.make_dataclass(cls.__name__ + "Alias", fields)
    return pydantic.TypeAdapter(alias)
'''


def to_snake_case(name: str) -> str:
    return re.sub(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])", "_", name).lower()


def wrapper_name(record: RecordToken) -> str:
    return f"unmarshal_{to_snake_case(record.name)}"


def format_record_imports(package: str, records: tuple[RecordToken, ...]) -> list[str]:
    """Return one import line per defining module, in first-seen order.

    Records defined in the package's ``__init__`` are imported from the
    package itself.
    """
    by_module: dict[str, list[str]] = {}
    for record in records:
        names = by_module.setdefault(record.module, [])
        if record.name not in names:
            names.append(record.name)

    lines: list[str] = []
    for module, names in by_module.items():
        source = package if module == "__init__" else f"{package}.{module}"
        lines.append(f"from {source} import {', '.join(names)}")
    return lines


def render_wrapper(record: RecordToken) -> list[str]:
    lines = [
        f"def {wrapper_name(record)}(r: {record.name}, b: bytes | str) -> None:",
        f'    """Decode JSON into r after validating it against {record.name}."""',
        f"    adapter = _shadow_adapter({record.name})",
        "    payload = json.loads(b)",
        "    a = adapter.validate_python(payload)",
        "",
    ]
    for field in record.fields:
        lines.append(f"    r.{field.name} = a.{field.name}")
    if record.fields:
        lines.append("")
    lines.append("    return None")
    return lines


def render_unit(unit: GenerationUnit) -> str:
    """Render the generated module for a whole generation run.

    Output layout:
        <header comment>
        <module docstring>
        <stdlib + pydantic imports>
        <one import per defining module>
        <_shadow_adapter helper>
        <one unmarshal_* function per record, in unit order>
        <__all__>

    The text is not formatted; pass it through format_source before writing.

    Raises:
        NoTypesFoundError: unit.records is empty.
        RenderError: unit.package is empty, or a record has no module to
            import it from.
    """
    if not unit.records:
        raise NoTypesFoundError("no dataclass records found in the input files")
    if not unit.package.strip():
        raise RenderError("package name must not be empty")
    for record in unit.records:
        if not record.module:
            raise RenderError(f"record {record.name} has no defining module")

    parts: list[str] = [
        GENERATED_HEADER,
        f'"""Validating JSON decoders for the {unit.package} package."""',
        "",
        "import dataclasses",
        "import functools",
        "import json",
        "import typing",
        "",
        "import pydantic",
        "",
    ]
    parts.extend(format_record_imports(unit.package, unit.records))
    parts.extend(["", "", _SHADOW_HELPER.rstrip("\n")])

    for record in unit.records:
        parts.extend(["", ""])
        parts.extend(render_wrapper(record))

    exported = "".join(f'    "{wrapper_name(r)}",\n' for r in unit.records)
    parts.extend(["", "", f"__all__ = [\n{exported}]"])

    return "\n".join(parts) + "\n"


# ===--- Output formatter/writer ---=== #


@dataclass(frozen=True)
class FileWriteResult:
    """Result of writing the generated file.

    Attributes:
        path: Absolute path of the written file.
        line_count: Number of newline characters in the written content.
        byte_count: Number of bytes written (UTF-8 encoded).
    """

    path: Path
    line_count: int
    byte_count: int


def format_source(text: str) -> str:
    """Canonicalize rendered source with black.

    Raises:
        FormatError: The text does not parse as Python. The underlying
            SyntaxError or black.InvalidInput is chained as __cause__.
    """
    try:
        ast.parse(text)
    except SyntaxError as err:
        raise FormatError(
            f"generated source is not valid Python (line {err.lineno}): {err.msg}",
            lineno=err.lineno,
        ) from err

    try:
        return black.format_str(text, mode=black.Mode())
    except black.InvalidInput as err:
        raise FormatError(f"black rejected generated source: {err}") from err


def write_output(path: Path, text: str) -> FileWriteResult:
    """Format rendered text and write it to path.

    Formatting completes before the file is opened, so when it fails the
    destination is left exactly as it was. Missing parent directories are
    created.

    Raises:
        FormatError: Propagated from format_source.
        OSError: Propagated directly if the filesystem write fails.
    """
    source = format_source(text)

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(source, encoding="utf-8")
    return FileWriteResult(
        path=path.resolve(),
        line_count=source.count("\n"),
        byte_count=len(source.encode("utf-8")),
    )


def check_output(path: Path, text: str) -> bool:
    """Return True when path already holds exactly the formatted text."""
    source = format_source(text)
    path = Path(path)
    if not path.is_file():
        return False
    return path.read_text(encoding="utf-8") == source


# ===--- Pipeline ---=== #


def collect_records(sources: Iterable[SourceFile]) -> tuple[RecordToken, ...]:
    records: list[RecordToken] = []
    for source in sources:
        print(f"Parsing: {source.path}")
        records.extend(parse_file(source.path, source.module))
    return tuple(records)


def build_unit(config: GenerateConfig) -> GenerationUnit:
    """Discover and parse every input file of a run.

    Raises:
        DiscoveryError: Propagated from discover_sources.
        SyntaxError: The first input file that does not parse.
        OSError: An input file cannot be read.
        ValueError: An input file is not UTF-8 or contains NUL bytes.
    """
    sources = discover_sources(config.paths)
    records = collect_records(sources)
    print(f"  Records: {len(records)} found in {len(sources)} files")
    return GenerationUnit(package=config.package, records=records)


def run_generate(config: GenerateConfig) -> FileWriteResult:
    """Execute the complete generation pipeline for a GenerateConfig.

    Stages: discover -> parse -> render -> format -> write -> summary. Any
    stage failure propagates unchanged and nothing is written.

    Returns:
        FileWriteResult describing the written file.
    """
    unit = build_unit(config)
    rendered = render_unit(unit)
    result = write_output(config.output, rendered)
    print_generation_summary(build_generation_summary(unit, result))
    return result


def run_check(config: GenerateConfig) -> bool:
    """Report whether the output file matches what a run would generate.

    Never writes. Prints "up-to-date: <path>" or "out of date: <path>".
    """
    unit = build_unit(config)
    up_to_date = check_output(config.output, render_unit(unit))
    if up_to_date:
        print(f"up-to-date: {config.output}")
    else:
        print(f"out of date: {config.output}")
    return up_to_date


# ===--- Summary report ---=== #


@dataclass(frozen=True)
class GenerationSummary:
    """Immutable data for the post-generation console report.

    Attributes:
        package: Target package name.
        output: Written path as string.
        records: Records in generation order.
        file: Write result for the generated file.
    """

    package: str
    output: str
    records: tuple[RecordToken, ...]
    file: FileWriteResult


def build_generation_summary(
    unit: GenerationUnit, result: FileWriteResult
) -> GenerationSummary:
    return GenerationSummary(
        package=unit.package,
        output=str(result.path),
        records=unit.records,
        file=result,
    )


def format_generation_summary(summary: GenerationSummary) -> str:
    """Render a GenerationSummary to the console string.

    One row per record with its field count, followed by the record's
    fields as ``name: descriptor``. Byte and line counts use thousands
    separators. Returns a string with exactly one trailing newline.
    """
    count = len(summary.records)
    noun = "wrapper" if count == 1 else "wrappers"

    lines: list[str] = []
    lines.append(f"{count} {noun} generated for package {summary.package}:")
    lines.append("")
    lines.append(f"  Output:   {summary.output}")
    lines.append("")
    lines.append("  Records:")
    for record in summary.records:
        label = f"{record.module}.{record.name}"
        n_fields = len(record.fields)
        field_word = "field" if n_fields == 1 else "fields"
        lines.append(f"    {label:<32}{n_fields:>4} {field_word}")
        for field in record.fields:
            lines.append(f"      {field.name}: {field.type}")
    lines.append("")
    lines.append(
        f"  Written: {summary.file.line_count:,} lines, "
        f"{summary.file.byte_count:,} bytes"
    )
    lines.append("")

    return "\n".join(lines)


def print_generation_summary(summary: GenerationSummary) -> None:
    print(format_generation_summary(summary), end="")


# ===--- Main ---=== #


def main(argv: list[str] | None = None) -> None:
    config = build_config(argv)

    try:
        if config.check:
            if not run_check(config):
                raise SystemExit(1)
            return
        run_generate(config)
    except DiscoveryError as err:
        print(f"Discovery error [{err.code}]: {err.message}")
        if err.suggestion:
            print(f"Hint: {err.suggestion}")
        raise SystemExit(1) from err
    except SyntaxError as err:
        print(f"Syntax error: {err.filename}:{err.lineno}: {err.msg}")
        raise SystemExit(1) from err
    except (JuvError, OSError, ValueError) as err:
        print(f"Error: {err}")
        raise SystemExit(1) from err


if __name__ == "__main__":
    main()
