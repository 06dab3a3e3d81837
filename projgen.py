"""Demand-driven projection generator for native API metadata.

Projects an indexed interface description of a native API surface into a
renderer-agnostic declaration tree for a C#-style target language. Requests
are demand-driven: asking for one function commits it together with every
type, constant and helper declaration it needs.

Usage:
    python projgen.py --metadata win32.xml --request CreateFileW --request "KERNEL32.*"
"""

import argparse
import difflib
import json
import re
import xml.etree.ElementTree as ET
from collections import defaultdict
from collections.abc import Callable, Iterable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from pathlib import Path
from types import MappingProxyType
from typing import Protocol

PROJECT_ROOT = Path(__file__).parent
DEFAULT_METADATA = PROJECT_ROOT / "metadata" / "win32.xml"


# ===--- CLI config contracts ---=== #


@dataclass(frozen=True)
class ComInteropOptions:
    use_raw_pointers_for_out_interfaces: bool = False
    preserve_return_code_methods: frozenset[str] = frozenset()


@dataclass(frozen=True)
class GeneratorOptions:
    """Switches that shape every projection produced by one Generator.

    Attributes:
        allow_marshaling: Select the marshaling-aware style. False selects the
            raw/blittable style everywhere.
        wide_char_only: Suppress narrow (`A`-suffixed) string variants in
            fuzzy name matching and bulk sweeps.
        public: Emit declarations with public rather than internal visibility.
        use_guarded_handles: Synthesize guarded-handle wrappers and the
            overloads that use them.
        emit_single_unit: Group all committed declarations into one unit.
        platform: Active target architecture (`x86`, `x64`, `arm64`), or None
            for architecture-neutral output.
        com_interop: COM-specific projection switches.
    """

    allow_marshaling: bool = True
    wide_char_only: bool = True
    public: bool = False
    use_guarded_handles: bool = True
    emit_single_unit: bool = False
    platform: str | None = None
    com_interop: ComInteropOptions = field(default_factory=ComInteropOptions)


@dataclass(frozen=True)
class GenerateConfig:
    metadata: tuple[Path, ...]
    requests: tuple[str, ...]
    options: GeneratorOptions
    docs: Path | None = None
    templates: Path | None = None
    manifest: Path | None = None


@dataclass(frozen=True)
class DiscoveryConfig:
    command: str
    metadata: tuple[Path, ...]
    suggest_name: str | None = None


VALID_ERROR_CODES = {
    "PATH_NOT_FOUND",
    "INVALID_PLATFORM",
    "INVALID_OPTIONS",
    "INVALID_REQUEST",
    "MISSING_REQUESTS",
    "CONFLICT_GENERATE_DISCOVERY",
}
VALID_PLATFORMS = ("x86", "x64", "arm64")
_REQUEST_LINE_RE = re.compile(
    r"^(?:[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)*(\.\*|\*)?"
    # Module wildcards also accept API-set names such as api-ms-win-core-file-l1-1-0.
    r"|[A-Za-z0-9_][A-Za-z0-9_-]*(\.[A-Za-z0-9_-]+)*\.\*)$"
)


class ConfigError(Exception):
    def __init__(self, code: str, message: str, suggestion: str | None = None):
        if code not in VALID_ERROR_CODES:
            raise ValueError(f"Unknown config error code: {code}")
        super().__init__(message)
        self.code = code
        self.message = message
        self.suggestion = suggestion


def parse_platform(raw: str | None) -> str | None:
    if raw is None:
        return None
    normalized = raw.strip().lower()
    if normalized in ("", "any", "anycpu"):
        return None
    if normalized not in VALID_PLATFORMS:
        raise ConfigError(
            "INVALID_PLATFORM",
            f"Unsupported platform: {raw}",
            "Use one of: x86, x64, arm64, or anycpu.",
        )
    return normalized


def validate_request_line(line: str) -> str:
    text = line.strip()
    if _REQUEST_LINE_RE.match(text):
        return text
    raise ConfigError(
        "INVALID_REQUEST",
        f"Invalid request: {line!r}",
        "Request a name (CreateFileW), a namespace, a module wildcard "
        "(KERNEL32.*) or a constant prefix (WM_*).",
    )


def parse_request_lines(text: str) -> tuple[str, ...]:
    """Parse a requests file: one request per line, `//` and `#` comments."""
    requests: list[str] = []
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("//") or line.startswith("#"):
            continue
        requests.append(validate_request_line(line))
    return tuple(requests)


_OPTION_KEYS = {
    "allowMarshaling": "allow_marshaling",
    "wideCharOnly": "wide_char_only",
    "public": "public",
    "useSafeHandles": "use_guarded_handles",
    "emitSingleFile": "emit_single_unit",
}
_COM_OPTION_KEYS = {
    "useIntPtrForComOutPointers": "use_raw_pointers_for_out_interfaces",
    "preserveSigMethods": "preserve_return_code_methods",
}


def _invalid_options(message: str) -> ConfigError:
    return ConfigError(
        "INVALID_OPTIONS",
        message,
        "Options files are JSON objects, e.g. {\"allowMarshaling\": false}.",
    )


def parse_generator_options(data: object) -> GeneratorOptions:
    """Translate a decoded options document into GeneratorOptions.

    Accepts the camelCase keys of a `NativeMethods.json` style file. Unknown
    keys and values of the wrong type raise ConfigError rather than being
    silently ignored.

    Args:
        data: Decoded JSON value.

    Returns:
        GeneratorOptions with every present key applied over the defaults.

    Raises:
        ConfigError: INVALID_OPTIONS on any unknown key or wrong value type.
    """
    if not isinstance(data, dict):
        raise _invalid_options("Options document must be a JSON object.")

    values: dict[str, object] = {}
    com_values: dict[str, object] = {}
    for key, value in data.items():
        if key in ("$schema",):
            continue
        if key == "platform":
            if value is not None and not isinstance(value, str):
                raise _invalid_options("Option 'platform' must be a string.")
            values["platform"] = parse_platform(value)
            continue
        if key == "comInterop":
            if not isinstance(value, dict):
                raise _invalid_options("Option 'comInterop' must be an object.")
            for com_key, com_value in value.items():
                if com_key not in _COM_OPTION_KEYS:
                    raise _invalid_options(f"Unknown comInterop option: {com_key}")
                target = _COM_OPTION_KEYS[com_key]
                if target == "preserve_return_code_methods":
                    if not isinstance(com_value, list) or not all(
                        isinstance(item, str) for item in com_value
                    ):
                        raise _invalid_options(
                            f"Option 'comInterop.{com_key}' must be a list of names."
                        )
                    com_values[target] = frozenset(com_value)
                else:
                    if not isinstance(com_value, bool):
                        raise _invalid_options(
                            f"Option 'comInterop.{com_key}' must be true or false."
                        )
                    com_values[target] = com_value
            continue
        if key not in _OPTION_KEYS:
            raise _invalid_options(f"Unknown option: {key}")
        if not isinstance(value, bool):
            raise _invalid_options(f"Option '{key}' must be true or false.")
        values[_OPTION_KEYS[key]] = value

    return GeneratorOptions(com_interop=ComInteropOptions(**com_values), **values)


def load_generator_options(path: Path) -> GeneratorOptions:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as err:
        raise _invalid_options(f"Options file is not valid JSON: {path}: {err}") from err
    return parse_generator_options(data)


def validate_path_exists(
    path: Path | None, flag: str, suggestion: str | None = None
) -> Path:
    if path is None:
        raise ConfigError(
            "PATH_NOT_FOUND",
            f"{flag} is required: no path provided.",
            suggestion or f"Pass the path explicitly: {flag} /path/to/resource",
        )
    if path.exists():
        return path
    raise ConfigError(
        "PATH_NOT_FOUND",
        f"Path for {flag} does not exist: {path}",
        suggestion or "Provide an existing path for this flag.",
    )


def build_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Project native API metadata into binding declarations"
    )

    parser.add_argument("--metadata", type=Path, action="append", default=None)
    parser.add_argument("--request", type=str, action="append", default=None)
    parser.add_argument("--requests-file", type=Path, default=None)
    parser.add_argument("--options", type=Path, default=None)
    parser.add_argument("--platform", type=str, default=None)
    parser.add_argument("--docs", type=Path, default=None)
    parser.add_argument("--templates", type=Path, default=None)
    parser.add_argument("--manifest", type=Path, default=None)

    discovery_group = parser.add_mutually_exclusive_group()
    discovery_group.add_argument("--suggest", type=str, default=None)
    discovery_group.add_argument(
        "--list-namespaces", action="store_true", default=False
    )

    return parser


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = build_argument_parser()
    return parser.parse_args(argv)


def validate_config(args: argparse.Namespace) -> GenerateConfig | DiscoveryConfig:
    metadata_paths = tuple(
        validate_path_exists(path, "--metadata")
        for path in (args.metadata or [DEFAULT_METADATA])
    )

    requests: list[str] = [validate_request_line(r) for r in (args.request or [])]
    if args.requests_file is not None:
        requests_file = validate_path_exists(args.requests_file, "--requests-file")
        requests.extend(parse_request_lines(requests_file.read_text(encoding="utf-8")))

    has_discovery_command = bool(args.suggest or args.list_namespaces)
    if has_discovery_command:
        if requests:
            raise ConfigError(
                "CONFLICT_GENERATE_DISCOVERY",
                "Discovery commands cannot be combined with generation requests.",
                "Run --suggest/--list-namespaces separately from --request.",
            )
        command = "suggest" if args.suggest else "list-namespaces"
        return DiscoveryConfig(
            command=command,
            metadata=metadata_paths,
            suggest_name=args.suggest,
        )

    if not requests:
        raise ConfigError(
            "MISSING_REQUESTS",
            "Nothing to generate: no requests given.",
            "Pass --request NAME (repeatable) or --requests-file PATH.",
        )

    options = GeneratorOptions()
    if args.options is not None:
        options = load_generator_options(validate_path_exists(args.options, "--options"))
    if args.platform is not None:
        options = replace(options, platform=parse_platform(args.platform))

    docs = validate_path_exists(args.docs, "--docs") if args.docs else None
    templates = (
        validate_path_exists(args.templates, "--templates") if args.templates else None
    )

    return GenerateConfig(
        metadata=metadata_paths,
        requests=tuple(requests),
        options=options,
        docs=docs,
        templates=templates,
        manifest=args.manifest,
    )


def build_config(argv: list[str] | None = None) -> GenerateConfig | DiscoveryConfig:
    return validate_config(parse_args(argv))


# ===--- Generation errors ---=== #


class GenerationError(Exception):
    """Base class for failures raised while projecting metadata."""


class StructuralFailure(GenerationError):
    """The metadata describes a shape the generator cannot project.

    Memoized against every entity the failure propagated through, so a later
    request for any of them short-circuits with the same message.
    """

    def __init__(self, message: str, key: "EntityKey | None" = None):
        super().__init__(message)
        self.message = message
        self.key = key


class PlatformMismatch(GenerationError):
    """The requested entity only exists for other architectures."""

    def __init__(self, name: str, platform: str | None, architectures: frozenset[str]):
        available = ", ".join(sorted(architectures))
        target = platform or "any CPU"
        super().__init__(f"{name} is only available for {available}, not {target}")
        self.name = name
        self.platform = platform
        self.architectures = architectures


class UserInputError(GenerationError):
    def __init__(self, message: str, candidates: tuple[str, ...] = ()):
        super().__init__(message)
        self.message = message
        self.candidates = candidates


class GenerationCancelled(GenerationError):
    pass


# ===--- Constants ---=== #

PRIMITIVE_TARGET_NAMES = {
    "void": "void",
    "bool": "bool",
    "char": "char",
    "i1": "sbyte",
    "u1": "byte",
    "i2": "short",
    "u2": "ushort",
    "i4": "int",
    "u4": "uint",
    "i8": "long",
    "u8": "ulong",
    "r4": "float",
    "r8": "double",
    "isize": "nint",
    "usize": "nuint",
}
PRIMITIVE_CODES = frozenset(PRIMITIVE_TARGET_NAMES)

# Underlying field types a guarded handle can wrap (plus any pointer).
GUARDED_HANDLE_FIELD_CODES = frozenset({"i4", "u4", "isize", "usize"})
DEFAULT_INVALID_HANDLE_VALUES = (-1,)
GUARDED_HANDLE_SUFFIX = "SafeHandle"
GUARDED_RETURN_SUFFIX = "_SafeHandle"

UNMANAGED_SUFFIX = "_unmanaged"
INLINE_ARRAY_NAMESPACE = "Windows.Win32"
MACRO_NAMESPACE = "Windows.Win32"

SUPPORTED_CONSTANT_KINDS = frozenset({"int", "float", "string", "guid", "struct"})
_GUID_RE = re.compile(
    r"^[0-9A-Fa-f]{8}-[0-9A-Fa-f]{4}-[0-9A-Fa-f]{4}-[0-9A-Fa-f]{4}-[0-9A-Fa-f]{12}$"
)
_API_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)*$")


# ===--- Native type descriptors ---=== #


@dataclass(frozen=True)
class PrimitiveType:
    code: str


@dataclass(frozen=True)
class PointerType:
    element: "NativeType"
    is_const: bool = False


@dataclass(frozen=True)
class ArrayType:
    element: "NativeType"
    lengths: tuple[int | None, ...] = (None,)

    @property
    def rank(self) -> int:
        return len(self.lengths)

    @property
    def length(self) -> int | None:
        total = 1
        for dim in self.lengths:
            if dim is None:
                return None
            total *= dim
        return total


@dataclass(frozen=True)
class HandleType:
    name: str
    namespace: str = ""

    @property
    def full_name(self) -> str:
        return f"{self.namespace}.{self.name}" if self.namespace else self.name


@dataclass(frozen=True)
class FunctionSignatureType:
    params: tuple["NativeType", ...]
    returns: "NativeType"


NativeType = PrimitiveType | PointerType | ArrayType | HandleType | FunctionSignatureType

_SIGNATURE_TOKEN_RE = re.compile(
    r"\s*(fn\(|->|[A-Za-z_][A-Za-z0-9_.]*|\*|\[\d*\]|[(),])"
)


def _tokenize_signature(text: str) -> list[str]:
    tokens: list[str] = []
    pos = 0
    stripped = text.rstrip()
    while pos < len(stripped):
        m = _SIGNATURE_TOKEN_RE.match(stripped, pos)
        if m is None:
            raise StructuralFailure(f"Malformed type signature: {text!r}")
        tokens.append(m.group(1))
        pos = m.end()
    if not tokens:
        raise StructuralFailure("Empty type signature")
    return tokens


def _handle_from_name(token: str, scope: str) -> HandleType:
    if "." in token:
        namespace, _, name = token.rpartition(".")
        return HandleType(name, namespace)
    return HandleType(token, scope)


def _parse_signature_tokens(
    tokens: list[str], pos: int, scope: str, text: str
) -> tuple[NativeType, int]:
    def expect(token: str) -> None:
        nonlocal pos
        if pos >= len(tokens) or tokens[pos] != token:
            raise StructuralFailure(f"Expected {token!r} in type signature: {text!r}")
        pos += 1

    is_const = False
    if pos < len(tokens) and tokens[pos] == "const":
        is_const = True
        pos += 1
    if pos >= len(tokens):
        raise StructuralFailure(f"Truncated type signature: {text!r}")

    token = tokens[pos]
    base: NativeType
    if token == "fn(":
        pos += 1
        params: list[NativeType] = []
        if pos < len(tokens) and tokens[pos] != ")":
            while True:
                param, pos = _parse_signature_tokens(tokens, pos, scope, text)
                params.append(param)
                if pos < len(tokens) and tokens[pos] == ",":
                    pos += 1
                    continue
                break
        expect(")")
        expect("->")
        returns, pos = _parse_signature_tokens(tokens, pos, scope, text)
        return FunctionSignatureType(tuple(params), returns), pos
    if token in ("*", "->", ",", "(", ")") or token.startswith("["):
        raise StructuralFailure(f"Unexpected {token!r} in type signature: {text!r}")
    base = PrimitiveType(token) if token in PRIMITIVE_CODES else _handle_from_name(token, scope)
    pos += 1

    const_applied = False
    while pos < len(tokens):
        token = tokens[pos]
        if token == "*":
            base = PointerType(base, is_const=is_const and not const_applied)
            const_applied = True
            pos += 1
        elif token.startswith("["):
            lengths: list[int | None] = []
            while pos < len(tokens) and tokens[pos].startswith("["):
                digits = tokens[pos][1:-1]
                lengths.append(int(digits) if digits else None)
                pos += 1
            base = ArrayType(base, tuple(lengths))
        else:
            break
    return base, pos


def parse_type_signature(text: str, scope: str = "") -> NativeType:
    """Decode a textual type signature into a NativeType.

    Unqualified names are scoped to `scope`; the index falls back to a unique
    simple-name match when the scoped lookup misses.

    Args:
        text: Signature such as "u4", "const char*", "RECT[4]" or
            "fn(i4, void*)->BOOL".
        scope: Namespace of the declaring element.

    Returns:
        The decoded descriptor.

    Raises:
        StructuralFailure: On malformed input.
    """
    tokens = _tokenize_signature(text)
    parsed, pos = _parse_signature_tokens(tokens, 0, scope, text)
    if pos != len(tokens):
        raise StructuralFailure(f"Unexpected trailing tokens in type signature: {text!r}")
    return parsed


def format_type_signature(native: NativeType) -> str:
    if isinstance(native, PrimitiveType):
        return native.code
    if isinstance(native, HandleType):
        return native.full_name
    if isinstance(native, PointerType):
        inner = format_type_signature(native.element)
        if native.is_const and not inner.startswith("const "):
            inner = "const " + inner
        return inner + "*"
    if isinstance(native, ArrayType):
        dims = "".join("[]" if dim is None else f"[{dim}]" for dim in native.lengths)
        return format_type_signature(native.element) + dims
    if isinstance(native, FunctionSignatureType):
        params = ", ".join(format_type_signature(p) for p in native.params)
        return f"fn({params})->{format_type_signature(native.returns)}"
    raise StructuralFailure(f"Unrecognized native type descriptor: {native!r}")


# ===--- Metadata records ---=== #


@dataclass(frozen=True)
class NativeArrayInfo:
    count_param_index: int | None = None
    count_const: int | None = None
    count_field: str | None = None


@dataclass(frozen=True)
class UsageSite:
    """Per-use metadata attached to a parameter, field or return value."""

    is_in: bool = False
    is_out: bool = False
    is_optional: bool = False
    is_const: bool = False
    is_retval: bool = False
    is_null_terminated: bool = False
    is_com_out_ptr: bool = False
    native_array: NativeArrayInfo | None = None


RETURN_USAGE = UsageSite()


@dataclass(frozen=True)
class ParamDef:
    name: str
    type: NativeType
    usage: UsageSite = field(default_factory=UsageSite)


@dataclass(frozen=True)
class FieldDef:
    name: str
    type: NativeType
    usage: UsageSite = field(default_factory=UsageSite)
    offset: int | None = None


@dataclass(frozen=True)
class MethodDef:
    name: str
    returns: NativeType
    params: tuple[ParamDef, ...] = ()


@dataclass(frozen=True)
class FunctionDef:
    name: str
    namespace: str
    module: str
    returns: NativeType
    params: tuple[ParamDef, ...] = ()
    set_last_error: bool = False
    architectures: frozenset[str] = frozenset()

    @property
    def full_name(self) -> str:
        return f"{self.namespace}.{self.name}"


TYPE_KINDS = ("struct", "union", "enum", "interface", "delegate")


@dataclass(frozen=True)
class TypeDef:
    name: str
    namespace: str
    kind: str
    fields: tuple[FieldDef, ...] = ()
    methods: tuple[MethodDef, ...] = ()
    bases: tuple[HandleType, ...] = ()
    enum_base: str = "i4"
    members: tuple[tuple[str, int], ...] = ()
    is_flags: bool = False
    guid: str | None = None
    is_typedef: bool = False
    explicit_layout: bool = False
    release_function: str | None = None
    invalid_values: tuple[int, ...] = ()
    returns: NativeType | None = None
    params: tuple[ParamDef, ...] = ()
    architectures: frozenset[str] = frozenset()

    @property
    def full_name(self) -> str:
        return f"{self.namespace}.{self.name}"


@dataclass(frozen=True)
class ConstantDef:
    name: str
    namespace: str
    type: NativeType
    value: str
    kind: str = "int"
    architectures: frozenset[str] = frozenset()

    @property
    def full_name(self) -> str:
        return f"{self.namespace}.{self.name}"


ApiElement = FunctionDef | TypeDef | ConstantDef


# ===--- XML parsing ---=== #


def _bool_attr(el: ET.Element, name: str) -> bool:
    return el.get(name, "false").strip().lower() in ("true", "1", "yes")


def _int_attr(el: ET.Element, name: str) -> int | None:
    raw = el.get(name)
    if raw is None:
        return None
    try:
        return int(raw, 0)
    except ValueError as err:
        raise StructuralFailure(
            f"Attribute {name}={raw!r} on <{el.tag} name={el.get('name')!r}> is not an integer"
        ) from err


def _arch_attr(el: ET.Element) -> frozenset[str]:
    raw = el.get("arch", "")
    return frozenset(token.strip().lower() for token in raw.split(",") if token.strip())


def _required_attr(el: ET.Element, name: str) -> str:
    value = el.get(name)
    if not value:
        raise StructuralFailure(f"<{el.tag}> element is missing required attribute '{name}'")
    return value


def parse_usage(el: ET.Element) -> UsageSite:
    count_param = _int_attr(el, "count-param")
    count_const = _int_attr(el, "count-const")
    count_field = el.get("count-field")
    native_array = None
    if count_param is not None or count_const is not None or count_field is not None:
        native_array = NativeArrayInfo(count_param, count_const, count_field)
    type_text = el.get("type", "")
    return UsageSite(
        is_in=_bool_attr(el, "in"),
        is_out=_bool_attr(el, "out"),
        is_optional=_bool_attr(el, "optional"),
        is_const=_bool_attr(el, "const") or type_text.strip().startswith("const "),
        is_retval=_bool_attr(el, "retval"),
        is_null_terminated=_bool_attr(el, "null-terminated"),
        is_com_out_ptr=_bool_attr(el, "com-out-ptr"),
        native_array=native_array,
    )


def parse_param(el: ET.Element, scope: str) -> ParamDef:
    return ParamDef(
        name=_required_attr(el, "name"),
        type=parse_type_signature(_required_attr(el, "type"), scope),
        usage=parse_usage(el),
    )


def parse_field(el: ET.Element, scope: str) -> FieldDef:
    return FieldDef(
        name=_required_attr(el, "name"),
        type=parse_type_signature(_required_attr(el, "type"), scope),
        usage=parse_usage(el),
        offset=_int_attr(el, "offset"),
    )


def _parse_returns(el: ET.Element, scope: str) -> NativeType:
    return parse_type_signature(el.get("returns", "void"), scope)


def parse_function(el: ET.Element, namespace: str) -> FunctionDef:
    return FunctionDef(
        name=_required_attr(el, "name"),
        namespace=namespace,
        module=_required_attr(el, "module"),
        returns=_parse_returns(el, namespace),
        params=tuple(parse_param(p, namespace) for p in el.findall("param")),
        set_last_error=_bool_attr(el, "set-last-error"),
        architectures=_arch_attr(el),
    )


def _parse_invalid_values(el: ET.Element) -> tuple[int, ...]:
    raw = el.get("invalid", "")
    values: list[int] = []
    for token in raw.split(","):
        token = token.strip()
        if not token:
            continue
        try:
            values.append(int(token, 0))
        except ValueError as err:
            raise StructuralFailure(
                f"Invalid handle value {token!r} on {el.get('name')!r}"
            ) from err
    return tuple(values)


def parse_type(el: ET.Element, namespace: str) -> TypeDef:
    kind = el.tag
    name = _required_attr(el, "name")
    common = dict(name=name, namespace=namespace, kind=kind, architectures=_arch_attr(el))

    if kind in ("struct", "union"):
        return TypeDef(
            **common,
            fields=tuple(parse_field(f, namespace) for f in el.findall("field")),
            guid=el.get("guid"),
            is_typedef=_bool_attr(el, "typedef"),
            explicit_layout=kind == "union" or el.get("layout") == "explicit",
            release_function=el.get("release"),
            invalid_values=_parse_invalid_values(el),
        )
    if kind == "enum":
        base = el.get("base", "i4")
        if base not in PRIMITIVE_CODES or base in ("void", "bool", "r4", "r8"):
            raise StructuralFailure(f"Enum {namespace}.{name} has unsupported base type {base!r}")
        members = []
        for member in el.findall("member"):
            value = _int_attr(member, "value")
            members.append((_required_attr(member, "name"), 0 if value is None else value))
        return TypeDef(
            **common, enum_base=base, members=tuple(members), is_flags=_bool_attr(el, "flags")
        )
    if kind == "interface":
        bases = tuple(
            _handle_from_name(token.strip(), namespace)
            for token in el.get("base", "").split(",")
            if token.strip()
        )
        methods = tuple(
            MethodDef(
                name=_required_attr(m, "name"),
                returns=_parse_returns(m, namespace),
                params=tuple(parse_param(p, namespace) for p in m.findall("param")),
            )
            for m in el.findall("method")
        )
        return TypeDef(**common, methods=methods, bases=bases, guid=el.get("guid"))
    if kind == "delegate":
        return TypeDef(
            **common,
            returns=_parse_returns(el, namespace),
            params=tuple(parse_param(p, namespace) for p in el.findall("param")),
        )
    raise StructuralFailure(f"Unrecognized type element <{kind}> for {namespace}.{name}")


def parse_constant(el: ET.Element, namespace: str) -> ConstantDef:
    type_text = _required_attr(el, "type")
    native = parse_type_signature(type_text, namespace)
    default_kind = "int"
    if isinstance(native, PrimitiveType) and native.code in ("r4", "r8"):
        default_kind = "float"
    elif isinstance(native, HandleType):
        default_kind = "struct"
    return ConstantDef(
        name=_required_attr(el, "name"),
        namespace=namespace,
        type=native,
        value=el.get("value", ""),
        kind=el.get("kind", default_kind),
        architectures=_arch_attr(el),
    )


# ===--- Metadata index ---=== #


@dataclass
class NamespaceMembers:
    functions: dict[str, list[FunctionDef]] = field(default_factory=dict)
    types: dict[str, list[TypeDef]] = field(default_factory=dict)
    constants: dict[str, list[ConstantDef]] = field(default_factory=dict)


def normalize_module_name(module: str) -> str:
    stem = module.strip()
    if stem.lower().endswith(".dll"):
        stem = stem[:-4]
    return stem.lower()


def select_variant(
    variants: list[ApiElement], platform: str | None, name: str
) -> ApiElement:
    """Pick the one variant of an API element that applies to `platform`.

    Variants without an `arch` restriction apply everywhere. With no platform
    selected, architecture-restricted variants never apply.

    Raises:
        PlatformMismatch: Variants exist but none applies to `platform`.
        StructuralFailure: `variants` is empty or several variants apply.
    """
    if not variants:
        raise StructuralFailure(f"No metadata entry for {name}")
    matching = [
        v
        for v in variants
        if not v.architectures or (platform is not None and platform in v.architectures)
    ]
    if not matching:
        available: set[str] = set()
        for v in variants:
            available.update(v.architectures)
        raise PlatformMismatch(name, platform, frozenset(available))
    if len(matching) > 1:
        raise StructuralFailure(f"Ambiguous metadata: {len(matching)} variants of {name} apply")
    return matching[0]


class MetadataIndex:
    """One-time index over one or more interface-description documents.

    Every name maps to a list of architecture variants. The index is built
    once and then only read; it performs no projection.
    """

    def __init__(self) -> None:
        self.namespaces: dict[str, NamespaceMembers] = {}
        self.release_functions: dict[str, str] = {}
        self.arch_specific_names: set[str] = set()
        self._by_simple_name: dict[str, list[ApiElement]] = defaultdict(list)
        self._module_functions: dict[str, list[FunctionDef]] = defaultdict(list)

    @classmethod
    def from_xml(cls, *roots: ET.Element) -> "MetadataIndex":
        index = cls()
        for root in roots:
            index.add_root(root)
        return index

    def add_root(self, root: ET.Element) -> None:
        if root.tag != "metadata":
            raise StructuralFailure(f"Expected <metadata> root element, found <{root.tag}>")
        for ns_el in root.findall("namespace"):
            namespace = _required_attr(ns_el, "name")
            members = self.namespaces.setdefault(namespace, NamespaceMembers())
            for el in ns_el:
                if el.tag == "function":
                    func = parse_function(el, namespace)
                    members.functions.setdefault(func.name, []).append(func)
                    self._module_functions[normalize_module_name(func.module)].append(func)
                    self._register(func)
                elif el.tag in TYPE_KINDS:
                    typedef = parse_type(el, namespace)
                    members.types.setdefault(typedef.name, []).append(typedef)
                    if typedef.release_function:
                        self.release_functions[typedef.full_name] = typedef.release_function
                    self._register(typedef)
                elif el.tag == "constant":
                    constant = parse_constant(el, namespace)
                    members.constants.setdefault(constant.name, []).append(constant)
                    self._register(constant)
                else:
                    raise StructuralFailure(
                        f"Unrecognized element <{el.tag}> in namespace {namespace}"
                    )

    def _register(self, element: ApiElement) -> None:
        self._by_simple_name[element.name].append(element)
        if element.architectures:
            self.arch_specific_names.add(element.full_name)

    def has_namespace(self, namespace: str) -> bool:
        return namespace in self.namespaces

    def lookup(self, name: str) -> list[ApiElement]:
        """Return every variant named `name` (qualified or simple), or []."""
        if name in self._by_simple_name:
            return list(self._by_simple_name[name])
        namespace, _, simple = name.rpartition(".")
        members = self.namespaces.get(namespace)
        if not namespace or members is None:
            return []
        return [
            *members.functions.get(simple, []),
            *members.types.get(simple, []),
            *members.constants.get(simple, []),
        ]

    def find_functions(self, name: str) -> list[FunctionDef]:
        return [e for e in self.lookup(name) if isinstance(e, FunctionDef)]

    def find_types(self, name: str) -> list[TypeDef]:
        return [e for e in self.lookup(name) if isinstance(e, TypeDef)]

    def resolve_type(self, handle: HandleType) -> list[TypeDef]:
        """Resolve a type reference to its variants.

        Tries the reference's own namespace first, then a simple-name match
        that is unique across namespaces.
        """
        members = self.namespaces.get(handle.namespace)
        if members is not None and handle.name in members.types:
            return list(members.types[handle.name])
        candidates = [
            e for e in self._by_simple_name.get(handle.name, []) if isinstance(e, TypeDef)
        ]
        if len({c.namespace for c in candidates}) == 1:
            return candidates
        return []

    def release_function_for(self, type_full_name: str) -> str | None:
        return self.release_functions.get(type_full_name)

    def functions_in_module(self, module: str) -> list[FunctionDef]:
        return list(self._module_functions.get(normalize_module_name(module), []))

    def constants_with_prefix(self, prefix: str) -> list[ConstantDef]:
        found: list[ConstantDef] = []
        for members in self.namespaces.values():
            for name, variants in members.constants.items():
                if name.startswith(prefix):
                    found.extend(variants)
        return found

    def all_api_names(self) -> list[str]:
        return sorted(self._by_simple_name)


# ===--- Target types ---=== #


@dataclass(frozen=True)
class NamedType:
    name: str
    namespace: str = ""

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class PointerTo:
    element: "TargetType"

    def __str__(self) -> str:
        return f"{self.element}*"


@dataclass(frozen=True)
class ArrayOf:
    element: "TargetType"

    def __str__(self) -> str:
        return f"{self.element}[]"


@dataclass(frozen=True)
class SpanOf:
    element: "TargetType"
    readonly: bool = False

    def __str__(self) -> str:
        prefix = "ReadOnlySpan" if self.readonly else "Span"
        return f"{prefix}<{self.element}>"


@dataclass(frozen=True)
class NullableOf:
    element: "TargetType"

    def __str__(self) -> str:
        return f"{self.element}?"


@dataclass(frozen=True)
class FunctionPointerOf:
    params: tuple["TargetType", ...]
    returns: "TargetType"

    def __str__(self) -> str:
        parts = ", ".join(str(t) for t in (*self.params, self.returns))
        return f"delegate* unmanaged[Stdcall]<{parts}>"


TargetType = NamedType | PointerTo | ArrayOf | SpanOf | NullableOf | FunctionPointerOf

VOID_TYPE = NamedType("void")
BYTE_TYPE = NamedType("byte")
INT_TYPE = NamedType("int")
STRING_TYPE = NamedType("string")
OBJECT_TYPE = NamedType("object")
NINT_TYPE = NamedType("nint")


@dataclass(frozen=True)
class SubstitutionTables:
    """Name-level overrides consulted before metadata resolution.

    Attributes:
        types: Fully qualified native type name -> replacement target type.
        const_variants: Mutable string type -> read-only special type used
            when the usage site is const.
        status_success: Status-code type name -> its success constant, used
            by guarded-handle release checks.
        universal_base: Name of the root interface every COM interface
            derives from.
    """

    types: Mapping[str, TargetType] = field(default_factory=dict)
    const_variants: Mapping[str, str] = field(default_factory=dict)
    status_success: Mapping[str, str] = field(default_factory=dict)
    universal_base: str = "IUnknown"


DEFAULT_SUBSTITUTIONS = SubstitutionTables(
    types=MappingProxyType(
        {
            "System.Guid": NamedType("Guid", "System"),
            "Windows.Win32.Foundation.Guid": NamedType("Guid", "System"),
        }
    ),
    const_variants=MappingProxyType({"PWSTR": "PCWSTR", "PSTR": "PCSTR"}),
    status_success=MappingProxyType(
        {
            "NTSTATUS": "STATUS_SUCCESS",
            "HRESULT": "S_OK",
            "WIN32_ERROR": "ERROR_SUCCESS",
        }
    ),
)
"""Default substitutions applied to every Generator."""

WIDE_STRING_TYPES = frozenset({"PWSTR", "PCWSTR"})
NARROW_STRING_TYPES = frozenset({"PSTR", "PCSTR"})
BOOL_RETURN_TYPES = frozenset({"BOOL"})
BYTE_BOOL_RETURN_TYPES = frozenset({"BOOLEAN"})


# ===--- Projection records ---=== #


@dataclass(frozen=True)
class MarshalAs:
    kind: str
    array_sub_type: str | None = None
    size_const: int | None = None
    size_param_index: int | None = None


@dataclass(frozen=True)
class GenerationContext:
    allow_marshaling: bool
    is_field: bool = False
    prefer_in_out_ref: bool = False


@dataclass(frozen=True)
class TypeProjectionResult:
    target_type: TargetType
    marshal_as: MarshalAs | None = None
    native_array: NativeArrayInfo | None = None
    modifier: str | None = None


# ===--- Declarations ---=== #


@dataclass(frozen=True)
class ParamDecl:
    name: str
    type: TargetType
    modifier: str | None = None
    marshal_as: MarshalAs | None = None
    is_optional: bool = False

    def __str__(self) -> str:
        prefix = f"{self.modifier} " if self.modifier else ""
        return f"{prefix}{self.type} {self.name}"


@dataclass(frozen=True)
class FieldDecl:
    name: str
    type: TargetType
    marshal_as: MarshalAs | None = None
    offset: int | None = None
    native_array: NativeArrayInfo | None = None


@dataclass(frozen=True)
class ExternMethodDecl:
    """Raw entry-point declaration for one native function."""

    name: str
    namespace: str
    module: str
    params: tuple[ParamDecl, ...]
    return_type: TargetType
    return_marshal: MarshalAs | None = None
    set_last_error: bool = False
    marshaling: bool = False
    visibility: str = "internal"
    docs: str | None = None
    architectures: frozenset[str] = frozenset()

    @property
    def signature(self) -> str:
        params = ", ".join(str(p) for p in self.params)
        return f"{self.return_type} {self.name}({params})"


@dataclass(frozen=True)
class StructDecl:
    name: str
    namespace: str
    fields: tuple[FieldDecl, ...]
    native_name: str
    is_union: bool = False
    explicit_layout: bool = False
    is_typedef: bool = False
    visibility: str = "internal"
    docs: str | None = None


@dataclass(frozen=True)
class EnumDecl:
    name: str
    namespace: str
    base_type: TargetType
    members: tuple[tuple[str, int], ...]
    is_flags: bool = False
    visibility: str = "internal"
    docs: str | None = None


@dataclass(frozen=True)
class DelegateDecl:
    name: str
    namespace: str
    params: tuple[ParamDecl, ...]
    return_type: TargetType
    visibility: str = "internal"
    docs: str | None = None


@dataclass(frozen=True)
class ConstantDecl:
    name: str
    namespace: str
    type: TargetType
    value: int | float | str
    value_expression: str
    kind: str
    visibility: str = "internal"
    docs: str | None = None


@dataclass(frozen=True)
class InterfaceMethodDecl:
    name: str
    params: tuple[ParamDecl, ...]
    return_type: TargetType
    return_marshal: MarshalAs | None = None
    preserve_sig: bool = True
    is_inherited: bool = False


@dataclass(frozen=True)
class InterfaceDecl:
    """Marshaling-style interface: managed runtime dispatches the calls.

    `methods` omits the universal base's methods and redeclares every
    method inherited from other bases, flagged `is_inherited`.
    """

    name: str
    namespace: str
    guid: str | None
    bases: tuple[str, ...]
    methods: tuple[InterfaceMethodDecl, ...]
    visibility: str = "internal"
    docs: str | None = None


@dataclass(frozen=True)
class VtableSlot:
    index: int
    name: str
    owner: str
    function_type: FunctionPointerOf


@dataclass(frozen=True)
class InvokeSlot:
    slot_index: int
    function_type: FunctionPointerOf
    arguments: tuple[str, ...]


@dataclass(frozen=True)
class ForwardingMethodDecl:
    name: str
    params: tuple[ParamDecl, ...]
    return_type: TargetType
    slot_index: int
    body: tuple[InvokeSlot, ...]


@dataclass(frozen=True)
class VtableStructDecl:
    """Raw-style interface: a struct holding the vtable pointer.

    Slots are ordered bases-first, matching the native vtable layout.
    """

    name: str
    namespace: str
    interface_name: str
    guid: str | None
    fields: tuple[FieldDecl, ...]
    slots: tuple[VtableSlot, ...]
    methods: tuple[ForwardingMethodDecl, ...]
    visibility: str = "internal"
    docs: str | None = None


@dataclass(frozen=True)
class InlineArrayMember:
    name: str
    returns: TargetType
    params: tuple[ParamDecl, ...] = ()
    behavior: str | None = None


@dataclass(frozen=True)
class InlineArrayDecl:
    name: str
    namespace: str
    element_type: TargetType
    length: int
    is_char: bool
    members: tuple[InlineArrayMember, ...]
    visibility: str = "internal"


@dataclass(frozen=True)
class ReleaseSuccessCheck:
    """How a guarded handle decides its release call succeeded.

    kind is one of: "true", "zero", "nonzero", "always", "status".
    """

    kind: str
    status_type: str | None = None
    success_constant: str | None = None


@dataclass(frozen=True)
class GuardedHandleDescriptor:
    name: str
    namespace: str
    handle_type: str
    release_function: str
    release_namespace: str
    field_type: TargetType
    invalid_values: tuple[int, ...]
    success_check: ReleaseSuccessCheck


@dataclass(frozen=True)
class GuardedHandleDecl:
    descriptor: GuardedHandleDescriptor
    visibility: str = "internal"

    @property
    def name(self) -> str:
        return self.descriptor.name

    @property
    def namespace(self) -> str:
        return self.descriptor.namespace


@dataclass(frozen=True)
class TemplateDeclaration:
    name: str
    kind: str
    namespace: str
    body: str
    requires: tuple[str, ...] = ()


# ===--- Overload body statements ---=== #

ARG_PASS = "pass"
ARG_LOCAL = "local"
ARG_LENGTH_OF = "length_of"
ARG_HANDLE_VALUE = "handle_value"
ARG_ADDRESS_OF_LOCAL = "address_of_local"


@dataclass(frozen=True)
class CallArgument:
    kind: str
    source: str
    local: str | None = None
    cast: TargetType | None = None


@dataclass(frozen=True)
class LengthEqualityCheck:
    params: tuple[str, ...]


@dataclass(frozen=True)
class MinLengthCheck:
    param: str
    minimum: int


@dataclass(frozen=True)
class PinSpan:
    param: str
    local: str


@dataclass(frozen=True)
class PinReference:
    param: str
    local: str


@dataclass(frozen=True)
class NullableToPointer:
    param: str
    local: str


@dataclass(frozen=True)
class EncodeString:
    param: str
    local: str
    wide: bool


@dataclass(frozen=True)
class HandleAddRef:
    param: str
    flag: str


@dataclass(frozen=True)
class HandleRelease:
    """Runs in the finally block guarding the raw call."""

    param: str
    flag: str


@dataclass(frozen=True)
class RawCall:
    function: str
    arguments: tuple[CallArgument, ...]
    result: str | None = None


@dataclass(frozen=True)
class WrapOutHandle:
    param: str
    local: str
    wrapper: str


@dataclass(frozen=True)
class WrapReturnedHandle:
    source: str
    target: str
    wrapper: str


@dataclass(frozen=True)
class ReturnValue:
    local: str


Statement = (
    LengthEqualityCheck
    | MinLengthCheck
    | PinSpan
    | PinReference
    | NullableToPointer
    | EncodeString
    | HandleAddRef
    | HandleRelease
    | RawCall
    | WrapOutHandle
    | WrapReturnedHandle
    | ReturnValue
)

TRANSFORM_COUNTED_SPAN = "counted_span"
TRANSFORM_FIXED_SPAN = "fixed_length_span"
TRANSFORM_COUNT_REMOVED = "count_removed"
TRANSFORM_REF = "ref"
TRANSFORM_OUT = "out"
TRANSFORM_IN = "in"
TRANSFORM_NULLABLE = "nullable"
TRANSFORM_STRING = "string"
TRANSFORM_GUARDED_HANDLE = "guarded_handle"
TRANSFORM_GUARDED_HANDLE_OUT = "guarded_handle_out"


@dataclass(frozen=True)
class ParameterTransform:
    kind: str
    param_index: int
    param_name: str
    new_type: TargetType | None
    modifier: str | None = None
    detail: str | int | None = None


@dataclass(frozen=True)
class FriendlyOverloadDescriptor:
    """Convenience overload layered over a raw extern declaration."""

    name: str
    raw: ExternMethodDecl
    params: tuple[ParamDecl, ...]
    return_type: TargetType
    transforms: tuple[ParameterTransform, ...]
    body: tuple[Statement, ...]
    visibility: str = "internal"

    @property
    def namespace(self) -> str:
        return self.raw.namespace

    @property
    def module(self) -> str:
        return self.raw.module


Declaration = (
    ExternMethodDecl
    | FriendlyOverloadDescriptor
    | StructDecl
    | EnumDecl
    | DelegateDecl
    | ConstantDecl
    | InterfaceDecl
    | VtableStructDecl
    | InlineArrayDecl
    | GuardedHandleDecl
    | TemplateDeclaration
)


# ===--- Entity keys and generation ledger ---=== #

KIND_FUNCTION = "function"
KIND_TYPE = "type"
KIND_CONSTANT = "constant"
KIND_MACRO = "macro"
KIND_SPECIAL = "special"
KIND_GUARDED_HANDLE = "guarded_handle"
KIND_INLINE_ARRAY = "inline_array"

STATE_NOT_STARTED = "not_started"
STATE_IN_FLIGHT = "in_flight"
STATE_COMMITTED = "committed"
STATE_FAILED = "failed"


@dataclass(frozen=True)
class EntityKey:
    """Identity of one generated entity.

    `unmanaged` selects the raw-style variant of a type that also has a
    marshaling-style form; the two variants are independent entries.
    """

    kind: str
    namespace: str
    name: str
    unmanaged: bool = False

    @property
    def full_name(self) -> str:
        return f"{self.namespace}.{self.name}" if self.namespace else self.name

    def __str__(self) -> str:
        suffix = " (unmanaged)" if self.unmanaged else ""
        return f"{self.kind}:{self.full_name}{suffix}"


@dataclass(frozen=True)
class LedgerEntry:
    state: str
    declarations: tuple[Declaration, ...] = ()
    error: StructuralFailure | None = None


_NOT_STARTED = LedgerEntry(STATE_NOT_STARTED)


class GenerationLedger:
    """Durable record of committed declarations and memoized failures.

    Work in progress lives in a Transaction overlay and only reaches the
    durable tier on commit. Failures are recorded durably at once, so they
    survive a rollback of the operation that discovered them.
    """

    def __init__(self) -> None:
        self._committed: dict[EntityKey, tuple[Declaration, ...]] = {}
        self._failures: dict[EntityKey, StructuralFailure] = {}
        self._active: "Transaction | None" = None

    def __len__(self) -> int:
        return len(self._committed)

    def __contains__(self, key: EntityKey) -> bool:
        return key in self._committed

    def entry(self, key: EntityKey) -> LedgerEntry:
        if key in self._committed:
            return LedgerEntry(STATE_COMMITTED, self._committed[key])
        if key in self._failures:
            return LedgerEntry(STATE_FAILED, error=self._failures[key])
        return _NOT_STARTED

    @property
    def active_transaction(self) -> "Transaction | None":
        return self._active

    def begin(self) -> "Transaction":
        if self._active is not None:
            raise RuntimeError("A generation transaction is already open")
        self._active = Transaction(self)
        return self._active

    def record_failure(self, key: EntityKey, error: StructuralFailure) -> None:
        self._failures.setdefault(key, error)

    def failure_for(self, key: EntityKey) -> StructuralFailure | None:
        return self._failures.get(key)

    def committed_keys(self) -> tuple[EntityKey, ...]:
        return tuple(self._committed)

    def committed_declarations(self) -> tuple[Declaration, ...]:
        return tuple(decl for decls in self._committed.values() for decl in decls)

    def _merge(self, pending: list[tuple[EntityKey, tuple[Declaration, ...]]]) -> None:
        for key, declarations in pending:
            self._committed.setdefault(key, declarations)

    def _close(self, txn: "Transaction") -> None:
        if self._active is txn:
            self._active = None


class Transaction:
    """Overlay of entity states scoped to one top-level operation.

    A savepoint is a child transaction whose overlay folds into its parent
    on commit and disappears on rollback.
    """

    def __init__(self, ledger: GenerationLedger, parent: "Transaction | None" = None):
        self._ledger = ledger
        self._parent = parent
        self._overlay: dict[EntityKey, LedgerEntry] = {}
        self._pending: list[tuple[EntityKey, tuple[Declaration, ...]]] = []
        self.closed = False

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def pending_keys(self) -> tuple[EntityKey, ...]:
        return tuple(key for key, _ in self._pending)

    def entry(self, key: EntityKey) -> LedgerEntry:
        txn: Transaction | None = self
        while txn is not None:
            if key in txn._overlay:
                return txn._overlay[key]
            txn = txn._parent
        return self._ledger.entry(key)

    def mark_in_flight(self, key: EntityKey) -> None:
        self._ensure_open()
        self._overlay[key] = LedgerEntry(STATE_IN_FLIGHT)

    def forget(self, key: EntityKey) -> None:
        self._overlay.pop(key, None)

    def complete(self, key: EntityKey, declarations: tuple[Declaration, ...]) -> None:
        self._ensure_open()
        self._overlay[key] = LedgerEntry(STATE_COMMITTED, declarations)
        self._pending.append((key, declarations))

    def fail(self, key: EntityKey, error: StructuralFailure) -> None:
        self._overlay[key] = LedgerEntry(STATE_FAILED, error=error)
        self._ledger.record_failure(key, error)

    def savepoint(self) -> "Transaction":
        self._ensure_open()
        return Transaction(self._ledger, parent=self)

    def commit(self) -> None:
        self._ensure_open()
        if self._parent is not None:
            self._parent._overlay.update(self._overlay)
            self._parent._pending.extend(self._pending)
        else:
            self._ledger._merge(self._pending)
            self._ledger._close(self)
        self.closed = True

    def rollback(self) -> None:
        if self.closed:
            return
        self._overlay.clear()
        self._pending.clear()
        if self._parent is None:
            self._ledger._close(self)
        self.closed = True

    def _ensure_open(self) -> None:
        if self.closed:
            raise RuntimeError("Transaction is already closed")


# ===--- Collaborators ---=== #


class DocumentationProvider(Protocol):
    def try_get_docs(self, api_name: str) -> str | None: ...


class MappingDocumentationProvider:
    def __init__(self, docs: Mapping[str, str] | None = None):
        self._docs = dict(docs or {})

    def try_get_docs(self, api_name: str) -> str | None:
        return self._docs.get(api_name)


def load_documentation(path: Path) -> MappingDocumentationProvider:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as err:
        raise ConfigError(
            "INVALID_OPTIONS",
            f"Documentation file is not valid JSON: {path}: {err}",
            "Documentation files map API names to summary strings.",
        ) from err
    if not isinstance(data, dict) or not all(
        isinstance(k, str) and isinstance(v, str) for k, v in data.items()
    ):
        raise ConfigError(
            "INVALID_OPTIONS",
            f"Documentation file must map API names to strings: {path}",
        )
    return MappingDocumentationProvider(data)


class TemplateRepository(Protocol):
    def fetch(self, name: str) -> TemplateDeclaration | None: ...

    def names(self) -> list[str]: ...


class MappingTemplateRepository:
    def __init__(self, templates: Iterable[TemplateDeclaration] = ()):
        self._templates = {t.name: t for t in templates}

    def fetch(self, name: str) -> TemplateDeclaration | None:
        return self._templates.get(name)

    def names(self) -> list[str]:
        return sorted(self._templates)


TEMPLATE_KINDS = ("special", "macro")


def load_template_catalog(root: ET.Element) -> MappingTemplateRepository:
    """Read a `<templates>` catalog of pre-authored declarations."""
    if root.tag != "templates":
        raise StructuralFailure(f"Expected <templates> root element, found <{root.tag}>")
    templates: list[TemplateDeclaration] = []
    for el in root.findall("template"):
        kind = el.get("kind", "special")
        if kind not in TEMPLATE_KINDS:
            raise StructuralFailure(f"Unrecognized template kind {kind!r} for {el.get('name')!r}")
        templates.append(
            TemplateDeclaration(
                name=_required_attr(el, "name"),
                kind=kind,
                namespace=el.get("namespace", MACRO_NAMESPACE),
                body=(el.text or "").strip(),
                requires=tuple(
                    token.strip() for token in el.get("requires", "").split(",") if token.strip()
                ),
            )
        )
    return MappingTemplateRepository(templates)


BUILTIN_TEMPLATES = MappingTemplateRepository(
    (
        TemplateDeclaration(
            name="PCWSTR",
            kind="special",
            namespace="Windows.Win32.Foundation",
            body="readonly partial struct PCWSTR { internal readonly char* Value; }",
        ),
        TemplateDeclaration(
            name="PCSTR",
            kind="special",
            namespace="Windows.Win32.Foundation",
            body="readonly partial struct PCSTR { internal readonly byte* Value; }",
        ),
        TemplateDeclaration(
            name="MAKELONG",
            kind="macro",
            namespace=MACRO_NAMESPACE,
            body="static uint MAKELONG(ushort low, ushort high) => (uint)(low | (high << 16));",
        ),
        TemplateDeclaration(
            name="HRESULT_FROM_WIN32",
            kind="macro",
            namespace=MACRO_NAMESPACE,
            body=(
                "static HRESULT HRESULT_FROM_WIN32(WIN32_ERROR error) => "
                "new(error <= 0 ? (int)error : (int)(((uint)error & 0x0000FFFF) | 0x80070000));"
            ),
            requires=("HRESULT", "WIN32_ERROR"),
        ),
    )
)
"""Pre-authored special types and macros available without a catalog file."""


@dataclass(frozen=True)
class CompilationContext:
    """Names the consuming compilation already defines; never regenerated."""

    available: frozenset[str] = frozenset()

    def has(self, full_name: str) -> bool:
        return full_name in self.available


class CancellationToken:
    def __init__(self) -> None:
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise GenerationCancelled("Generation was cancelled")


@dataclass(frozen=True)
class SweepReport:
    """Outcome of one request.

    Attributes:
        candidate_count: Metadata entries the request covered.
        committed_count: Ledger entries newly committed by the request.
        skipped_platform: Candidates skipped for the active platform.
        failures: (name, message) for candidates that failed structurally.
        not_found: Names that matched nothing.
    """

    candidate_count: int
    committed_count: int
    skipped_platform: tuple[str, ...] = ()
    failures: tuple[tuple[str, str], ...] = ()
    not_found: tuple[str, ...] = ()


# ===--- Managed-type analysis ---=== #


class ManagedTypeAnalyzer:
    """Decides whether a type needs marshaling-aware projection.

    A struct is managed when any field (transitively, not through pointers)
    is a marshaled interface, a delegate, or another managed struct. A walk
    that re-enters a type still being classified gets an undecided answer
    and records the dependency; after the outermost walk finishes, a managed
    verdict is pushed back through every recorded dependent.
    """

    def __init__(self, generator: "Generator"):
        self._generator = generator
        self._memo: dict[tuple[bool, str], bool] = {}
        self._visiting: set[tuple[bool, str]] = set()
        self._provisional: set[tuple[bool, str]] = set()
        self._dependents: dict[tuple[bool, str], set[tuple[bool, str]]] = defaultdict(set)

    def is_managed(self, native: NativeType, allow_marshaling: bool) -> bool:
        if isinstance(native, ArrayType):
            return self.is_managed(native.element, allow_marshaling)
        if not isinstance(native, HandleType):
            return False
        typedef = self._generator.resolve_type(native)
        if typedef is None:
            return False
        return self.is_managed_typedef(typedef, allow_marshaling)

    def is_managed_typedef(self, typedef: TypeDef, allow_marshaling: bool) -> bool:
        key = (allow_marshaling, typedef.full_name)
        outermost = not self._visiting
        try:
            self._walk(typedef, allow_marshaling)
        finally:
            if outermost:
                self._settle()
        return self._memo.get(key, False)

    def _walk(self, typedef: TypeDef, allow_marshaling: bool) -> bool | None:
        key = (allow_marshaling, typedef.full_name)
        if key in self._memo:
            return self._memo[key]
        if key in self._visiting:
            return None

        if typedef.kind == "enum" or typedef.explicit_layout:
            # Explicit-layout structs and unions are always emitted blittable.
            verdict = False
        elif typedef.kind == "delegate":
            verdict = allow_marshaling
        elif typedef.kind == "interface":
            verdict = allow_marshaling and self._generator.interfaces.is_conforming(typedef)
        else:
            verdict = False
            self._visiting.add(key)
            try:
                for f in typedef.fields:
                    if self._field_is_managed(f.type, allow_marshaling, key):
                        verdict = True
                        break
            finally:
                self._visiting.discard(key)

        self._memo[key] = verdict
        return verdict

    def _field_is_managed(
        self, native: NativeType, allow_marshaling: bool, owner: tuple[bool, str]
    ) -> bool:
        if isinstance(native, ArrayType):
            return self._field_is_managed(native.element, allow_marshaling, owner)
        if not isinstance(native, HandleType):
            return False
        typedef = self._generator.resolve_type(native)
        if typedef is None:
            return False
        dependency = (allow_marshaling, typedef.full_name)
        verdict = self._walk(typedef, allow_marshaling)
        if verdict:
            return True
        if verdict is None or dependency in self._provisional:
            self._dependents[dependency].add(owner)
            self._provisional.add(owner)
        return False

    def _settle(self) -> None:
        worklist = [key for key in self._dependents if self._memo.get(key)]
        while worklist:
            key = worklist.pop()
            for dependent in self._dependents.get(key, ()):
                if not self._memo.get(dependent):
                    self._memo[dependent] = True
                    worklist.append(dependent)
        self._dependents.clear()
        self._provisional.clear()


# ===--- Type projection ---=== #


def variant_type_name(name: str, unmanaged: bool) -> str:
    return f"{name}{UNMANAGED_SUFFIX}" if unmanaged else name


class TypeProjector:
    """Maps native type descriptors to target types for one usage site.

    Projection has side effects: every type it names is requested from the
    Generator, so projecting a signature pulls in its dependency closure.
    """

    def __init__(self, generator: "Generator"):
        self._generator = generator
        self._expanding_delegates: set[str] = set()

    def project(
        self,
        native: NativeType,
        context: GenerationContext,
        usage: UsageSite | None = None,
    ) -> TypeProjectionResult:
        if usage is None:
            usage = UsageSite()
        if isinstance(native, PrimitiveType):
            return self._project_primitive(native)
        if isinstance(native, PointerType):
            return self._project_pointer(native, context, usage)
        if isinstance(native, ArrayType):
            return self._project_array(native, context, usage)
        if isinstance(native, HandleType):
            return self._project_handle(native, context, usage)
        if isinstance(native, FunctionSignatureType):
            raw = GenerationContext(allow_marshaling=False)
            params = tuple(self.project(p, raw).target_type for p in native.params)
            returns = self.project(native.returns, raw).target_type
            return TypeProjectionResult(FunctionPointerOf(params, returns))
        raise StructuralFailure(f"Unrecognized native type descriptor: {native!r}")

    def _project_primitive(self, native: PrimitiveType) -> TypeProjectionResult:
        name = PRIMITIVE_TARGET_NAMES.get(native.code)
        if name is None:
            raise StructuralFailure(f"Unrecognized primitive type code: {native.code}")
        return TypeProjectionResult(NamedType(name))

    def _project_pointer(
        self, native: PointerType, context: GenerationContext, usage: UsageSite
    ) -> TypeProjectionResult:
        gen = self._generator
        # Fields only marshal pointers that carry a native-array length.
        if context.allow_marshaling and context.is_field and usage.native_array is None:
            context = replace(context, allow_marshaling=False)

        element = self.project(
            native.element,
            replace(context, prefer_in_out_ref=False),
            UsageSite(is_const=native.is_const),
        )
        element_managed = context.allow_marshaling and gen.analyzer.is_managed(
            native.element, True
        )
        is_value_primitive = (
            isinstance(native.element, PrimitiveType) and native.element.code != "void"
        )

        if (
            element.marshal_as is not None
            or element_managed
            or (context.prefer_in_out_ref and not usage.is_optional and is_value_primitive)
        ):
            sub_type = element.marshal_as.kind if element.marshal_as else None
            if context.allow_marshaling and usage.native_array is not None:
                marshal = MarshalAs(
                    "LPArray",
                    array_sub_type=sub_type,
                    size_const=usage.native_array.count_const,
                    size_param_index=usage.native_array.count_param_index,
                )
                return TypeProjectionResult(
                    ArrayOf(element.target_type), marshal, usage.native_array
                )
            if usage.is_in or usage.is_out:
                if (
                    usage.is_out
                    and not usage.is_in
                    and sub_type == "Interface"
                    and gen.options.com_interop.use_raw_pointers_for_out_interfaces
                ):
                    return TypeProjectionResult(NINT_TYPE, modifier="out")
                if usage.is_in and usage.is_out:
                    modifier = "ref"
                elif usage.is_out:
                    modifier = "out"
                else:
                    modifier = "in"
                return TypeProjectionResult(
                    element.target_type, element.marshal_as, element.native_array, modifier
                )
            delegate = self._delegate_typedef(native.element)
            if delegate is not None:
                return TypeProjectionResult(self.function_pointer_for(delegate))
            if context.allow_marshaling:
                marshal = MarshalAs("LPArray", array_sub_type=sub_type)
                return TypeProjectionResult(
                    ArrayOf(element.target_type), marshal, element.native_array
                )
        elif context.allow_marshaling and usage.is_com_out_ptr:
            return TypeProjectionResult(OBJECT_TYPE, MarshalAs("IUnknown"))

        return TypeProjectionResult(PointerTo(element.target_type))

    def _project_array(
        self, native: ArrayType, context: GenerationContext, usage: UsageSite
    ) -> TypeProjectionResult:
        gen = self._generator
        length = native.length
        element_context = replace(context, prefer_in_out_ref=False)

        if context.is_field and length is not None:
            element = self.project(native.element, element_context)
            element_managed = context.allow_marshaling and gen.analyzer.is_managed(
                native.element, True
            )
            if context.allow_marshaling and (element_managed or element.marshal_as is not None):
                sub_type = element.marshal_as.kind if element.marshal_as else None
                marshal = MarshalAs("ByValArray", array_sub_type=sub_type, size_const=length)
                return TypeProjectionResult(ArrayOf(element.target_type), marshal)
            is_char = isinstance(native.element, PrimitiveType) and native.element.code == "char"
            helper = gen.inline_arrays.request(element.target_type, length, is_char)
            return TypeProjectionResult(helper)

        element = self.project(native.element, replace(element_context, is_field=False))
        if length is not None:
            return TypeProjectionResult(
                PointerTo(element.target_type), native_array=NativeArrayInfo(count_const=length)
            )
        if context.allow_marshaling and not context.is_field:
            info = usage.native_array
            marshal = MarshalAs(
                "LPArray",
                size_param_index=info.count_param_index if info else None,
                size_const=info.count_const if info else None,
            )
            return TypeProjectionResult(ArrayOf(element.target_type), marshal, info)
        return TypeProjectionResult(PointerTo(element.target_type), native_array=usage.native_array)

    def _project_handle(
        self, native: HandleType, context: GenerationContext, usage: UsageSite
    ) -> TypeProjectionResult:
        gen = self._generator
        substitute = gen.substitutions.types.get(native.full_name)
        if substitute is not None:
            return TypeProjectionResult(substitute)

        if usage.is_const and native.name in gen.substitutions.const_variants:
            special = gen.request_special(gen.substitutions.const_variants[native.name])
            return TypeProjectionResult(NamedType(special.name, special.namespace))

        typedef = gen.resolve_type(native)
        if typedef is None:
            template = gen.templates.fetch(native.name)
            if template is not None and template.kind == "special":
                gen.request_special(template.name)
                return TypeProjectionResult(NamedType(template.name, template.namespace))
            raise StructuralFailure(f"Unrecognized type reference: {native.full_name}")

        if typedef.kind == "enum":
            gen.request_type(typedef)
            return TypeProjectionResult(NamedType(typedef.name, typedef.namespace))
        if typedef.kind in ("struct", "union"):
            unmanaged = gen.needs_unmanaged_variant(typedef, context)
            gen.request_type(typedef, unmanaged)
            return TypeProjectionResult(
                NamedType(variant_type_name(typedef.name, unmanaged), typedef.namespace)
            )
        if typedef.kind == "interface":
            return self._project_interface_reference(typedef, context)
        if typedef.kind == "delegate":
            if context.allow_marshaling:
                gen.request_type(typedef)
                return TypeProjectionResult(
                    NamedType(typedef.name, typedef.namespace), MarshalAs("FunctionPtr")
                )
            return TypeProjectionResult(self.function_pointer_for(typedef))
        raise StructuralFailure(f"Unrecognized type kind {typedef.kind!r} for {typedef.full_name}")

    def _project_interface_reference(
        self, typedef: TypeDef, context: GenerationContext
    ) -> TypeProjectionResult:
        gen = self._generator
        conforming = gen.interfaces.is_conforming(typedef)
        if context.allow_marshaling and conforming:
            gen.request_type(typedef)
            return TypeProjectionResult(
                NamedType(typedef.name, typedef.namespace), MarshalAs("Interface")
            )
        # A conforming interface also has a marshaling form when marshaling is on.
        unmanaged = gen.options.allow_marshaling and conforming
        gen.request_type(typedef, unmanaged)
        return TypeProjectionResult(
            PointerTo(NamedType(variant_type_name(typedef.name, unmanaged), typedef.namespace))
        )

    def _delegate_typedef(self, native: NativeType) -> TypeDef | None:
        if not isinstance(native, HandleType):
            return None
        typedef = self._generator.resolve_type(native)
        if typedef is not None and typedef.kind == "delegate":
            return typedef
        return None

    def function_pointer_for(self, delegate: TypeDef) -> FunctionPointerOf:
        if delegate.full_name in self._expanding_delegates:
            raise StructuralFailure(f"Delegate {delegate.full_name} refers to itself")
        raw = GenerationContext(allow_marshaling=False)
        self._expanding_delegates.add(delegate.full_name)
        try:
            params = tuple(self.project(p.type, raw, p.usage).target_type for p in delegate.params)
            returns = self.project(delegate.returns or PrimitiveType("void"), raw).target_type
        finally:
            self._expanding_delegates.discard(delegate.full_name)
        return FunctionPointerOf(params, returns)


# ===--- Inline arrays ---=== #


def _innermost_named(target: TargetType) -> NamedType | None:
    while isinstance(target, (PointerTo, ArrayOf, SpanOf, NullableOf)):
        target = target.element
    return target if isinstance(target, NamedType) else None


def _qualified_text(target: TargetType) -> str:
    if isinstance(target, NamedType):
        return f"{target.namespace}.{target.name}" if target.namespace else target.name
    if isinstance(target, PointerTo):
        return f"{_qualified_text(target.element)}*"
    return str(target)


def inline_array_name(element_type: TargetType, length: int, qualified: bool = False) -> str:
    """Helper name for `length` elements of `element_type`.

    `qualified` folds the element's namespace into the name, for element
    types whose simple name exists in more than one namespace.
    """
    text = _qualified_text(element_type) if qualified else str(element_type)
    clean = re.sub(r"[^A-Za-z0-9]+", "_", text.replace("*", "_ptr")).strip("_")
    return f"__{clean}_{length}"


class FixedArraySynthesizer:
    """Builds one inline-array helper per (element type, length) pair."""

    def __init__(self, generator: "Generator"):
        self._generator = generator

    def _is_ambiguous(self, element_type: TargetType) -> bool:
        named = _innermost_named(element_type)
        if named is None or not named.namespace:
            return False
        simple = named.name.removesuffix(UNMANAGED_SUFFIX)
        namespaces = {t.namespace for t in self._generator.index.find_types(simple)}
        return len(namespaces) > 1

    def request(self, element_type: TargetType, length: int, is_char: bool) -> NamedType:
        name = inline_array_name(element_type, length, self._is_ambiguous(element_type))
        key = EntityKey(KIND_INLINE_ARRAY, INLINE_ARRAY_NAMESPACE, name)
        self._generator._produce(
            key, lambda: (self.build(name, element_type, length, is_char),)
        )
        return NamedType(name, INLINE_ARRAY_NAMESPACE)

    def build(
        self, name: str, element_type: TargetType, length: int, is_char: bool
    ) -> InlineArrayDecl:
        helper_type = NamedType(name, INLINE_ARRAY_NAMESPACE)
        read_only_span = SpanOf(element_type, readonly=True)
        members = [
            InlineArrayMember("Length", INT_TYPE, behavior=f"constant:{length}"),
            InlineArrayMember(
                "this[]",
                element_type,
                (ParamDecl("index", INT_TYPE),),
                behavior="bounds_checked_ref",
            ),
            InlineArrayMember("AsSpan", SpanOf(element_type)),
            InlineArrayMember("AsReadOnlySpan", read_only_span),
            InlineArrayMember(
                "CopyFrom",
                VOID_TYPE,
                (ParamDecl("source", read_only_span),),
                behavior="max_length",
            ),
        ]
        if is_char:
            members.extend(
                [
                    InlineArrayMember("SliceAtNull", read_only_span, behavior="truncate_at_null"),
                    InlineArrayMember("ToString", STRING_TYPE, behavior="truncate_at_null"),
                    InlineArrayMember(
                        "Equals",
                        NamedType("bool"),
                        (ParamDecl("value", STRING_TYPE),),
                        behavior="truncate_at_null",
                    ),
                    InlineArrayMember(
                        "op_Implicit",
                        helper_type,
                        (ParamDecl("value", STRING_TYPE),),
                        behavior="max_length",
                    ),
                ]
            )
        return InlineArrayDecl(
            name=name,
            namespace=INLINE_ARRAY_NAMESPACE,
            element_type=element_type,
            length=length,
            is_char=is_char,
            members=tuple(members),
            visibility=self._generator.visibility,
        )


# ===--- Guarded handles ---=== #


def _raw_target_type(native: NativeType) -> TargetType:
    """Display type for a primitive or pointer, without requesting anything."""
    if isinstance(native, PrimitiveType):
        return NamedType(PRIMITIVE_TARGET_NAMES[native.code])
    if isinstance(native, PointerType):
        return PointerTo(_raw_target_type(native.element))
    if isinstance(native, HandleType):
        return NamedType(native.name, native.namespace)
    raise StructuralFailure(f"Cannot wrap {format_type_signature(native)} in a guarded handle")


class GuardedHandleSynthesizer:
    """Decides whether a release function can back a guarded handle.

    Eligibility is computed once per release function and cached, including
    negative answers.
    """

    def __init__(self, generator: "Generator"):
        self._generator = generator
        self._cache: dict[str, GuardedHandleDescriptor | None] = {}

    def try_build_guarded_handle(self, release_name: str) -> GuardedHandleDescriptor | None:
        if release_name not in self._cache:
            self._cache[release_name] = self._build(release_name)
        return self._cache[release_name]

    def _build(self, release_name: str) -> GuardedHandleDescriptor | None:
        gen = self._generator
        variants = gen.index.find_functions(release_name)
        if not variants:
            return None
        try:
            release = select_variant(variants, gen.options.platform, release_name)
        except PlatformMismatch:
            return None

        required = [p for p in release.params if not p.usage.is_optional]
        if len(required) != 1:
            return None
        handle_param = required[0]

        handle_def: TypeDef | None = None
        underlying: NativeType | None = handle_param.type
        if isinstance(handle_param.type, HandleType):
            handle_def = gen.resolve_type(handle_param.type)
            underlying = None
            if handle_def is not None and handle_def.is_typedef and len(handle_def.fields) == 1:
                underlying = handle_def.fields[0].type
        if not self._can_wrap(underlying):
            return None

        invalid_values = DEFAULT_INVALID_HANDLE_VALUES
        if handle_def is not None and handle_def.invalid_values:
            invalid_values = handle_def.invalid_values

        return GuardedHandleDescriptor(
            name=f"{release.name}{GUARDED_HANDLE_SUFFIX}",
            namespace=release.namespace,
            handle_type=(
                handle_def.full_name
                if handle_def is not None
                else format_type_signature(handle_param.type)
            ),
            release_function=release.name,
            release_namespace=release.namespace,
            field_type=_raw_target_type(underlying),
            invalid_values=invalid_values,
            success_check=self.release_success_check(release),
        )

    @staticmethod
    def _can_wrap(native: NativeType | None) -> bool:
        if isinstance(native, PointerType):
            return True
        return isinstance(native, PrimitiveType) and native.code in GUARDED_HANDLE_FIELD_CODES

    def release_success_check(self, release: FunctionDef) -> ReleaseSuccessCheck:
        """Classify how the release function reports success.

        Raises:
            StructuralFailure: The return type has no known success rule.
        """
        returns = release.returns
        if isinstance(returns, PrimitiveType):
            if returns.code == "void":
                return ReleaseSuccessCheck("always")
            if returns.code == "bool":
                return ReleaseSuccessCheck("true")
            if returns.code in ("i4", "u4"):
                return ReleaseSuccessCheck("zero")
            if returns.code in ("i1", "u1"):
                return ReleaseSuccessCheck("nonzero")
        elif isinstance(returns, HandleType):
            if returns.name in BOOL_RETURN_TYPES:
                return ReleaseSuccessCheck("true")
            if returns.name in BYTE_BOOL_RETURN_TYPES:
                return ReleaseSuccessCheck("nonzero")
            success = self._generator.substitutions.status_success.get(returns.name)
            if success is not None:
                return ReleaseSuccessCheck("status", returns.name, success)
        raise StructuralFailure(
            f"Unrecognized return type {format_type_signature(returns)} "
            f"on release function {release.name}"
        )


# ===--- Interfaces ---=== #


class InterfaceProjector:
    """Projects interface metadata as a true interface or a vtable struct."""

    def __init__(self, generator: "Generator"):
        self._generator = generator
        self._conformance: dict[str, bool] = {}

    @property
    def universal_base(self) -> str:
        return self._generator.substitutions.universal_base

    def base_chain(self, typedef: TypeDef) -> list[TypeDef]:
        """Return the first-base ancestry of `typedef`, root first."""
        chain: list[TypeDef] = []
        seen = {typedef.full_name}
        current = typedef
        while current.bases:
            base_ref = current.bases[0]
            base = self._generator.resolve_type(base_ref)
            if base is None or base.kind != "interface":
                raise StructuralFailure(
                    f"Unrecognized base type {base_ref.full_name} for interface {current.full_name}"
                )
            if base.full_name in seen:
                raise StructuralFailure(f"Interface inheritance cycle through {base.full_name}")
            seen.add(base.full_name)
            chain.append(base)
            current = base
        chain.reverse()
        return chain

    def is_conforming(self, typedef: TypeDef) -> bool:
        """True when the first-base chain reaches the universal base."""
        if typedef.full_name not in self._conformance:
            if typedef.name == self.universal_base:
                conforming = True
            else:
                chain = self.base_chain(typedef)
                conforming = bool(chain) and chain[0].name == self.universal_base
            self._conformance[typedef.full_name] = conforming
        return self._conformance[typedef.full_name]

    def slot_methods(self, typedef: TypeDef) -> list[tuple[TypeDef, MethodDef]]:
        ordered: list[tuple[TypeDef, MethodDef]] = []
        for owner in [*self.base_chain(typedef), typedef]:
            for method in owner.methods:
                ordered.append((owner, method))
        return ordered

    def preserves_return_code(self, owner: TypeDef, method: MethodDef) -> bool:
        names = self._generator.options.com_interop.preserve_return_code_methods
        return f"{owner.name}.{method.name}" in names or method.name in names

    def project_interface(
        self, typedef: TypeDef, context: GenerationContext, name: str
    ) -> tuple[Declaration, ...]:
        if context.allow_marshaling and self.is_conforming(typedef):
            return (self.build_interface(typedef),)
        return (self.build_vtable_struct(typedef, name),)

    def build_interface(self, typedef: TypeDef) -> InterfaceDecl:
        gen = self._generator
        chain = self.base_chain(typedef)
        for base in chain:
            if base.name != self.universal_base:
                gen.request_type(base)

        context = GenerationContext(allow_marshaling=True, prefer_in_out_ref=True)
        methods = tuple(
            self._build_interface_method(owner, method, context, inherited=owner is not typedef)
            for owner, method in self.slot_methods(typedef)
            if owner.name != self.universal_base
        )
        return InterfaceDecl(
            name=typedef.name,
            namespace=typedef.namespace,
            guid=typedef.guid,
            bases=tuple(b.full_name for b in chain if b.name != self.universal_base),
            methods=methods,
            visibility=gen.visibility,
            docs=gen.docs_for(typedef.name),
        )

    def _build_interface_method(
        self,
        owner: TypeDef,
        method: MethodDef,
        context: GenerationContext,
        inherited: bool,
    ) -> InterfaceMethodDecl:
        gen = self._generator
        params = list(method.params)
        returns_status = (
            isinstance(method.returns, HandleType) and method.returns.name == "HRESULT"
        )

        if returns_status and not self.preserves_return_code(owner, method):
            retval = params[-1] if params and self._is_retval(params[-1]) else None
            if retval is not None:
                params = params[:-1]
                result = gen.projector.project(retval.type.element, context)
            else:
                result = TypeProjectionResult(VOID_TYPE)
            preserve_sig = False
        else:
            result = gen.projector.project(method.returns, context, RETURN_USAGE)
            preserve_sig = True

        return InterfaceMethodDecl(
            name=method.name,
            params=tuple(gen.param_decl(p, context) for p in params),
            return_type=result.target_type,
            return_marshal=result.marshal_as,
            preserve_sig=preserve_sig,
            is_inherited=inherited,
        )

    @staticmethod
    def _is_retval(param: ParamDef) -> bool:
        if not isinstance(param.type, PointerType):
            return False
        usage = param.usage
        return usage.is_retval or (usage.is_out and not usage.is_in and not usage.is_optional)

    def build_vtable_struct(self, typedef: TypeDef, name: str) -> VtableStructDecl:
        gen = self._generator
        raw = GenerationContext(allow_marshaling=False)
        this_type = PointerTo(NamedType(name, typedef.namespace))

        slots: list[VtableSlot] = []
        methods: list[ForwardingMethodDecl] = []
        for index, (owner, method) in enumerate(self.slot_methods(typedef)):
            params = tuple(gen.param_decl(p, raw) for p in method.params)
            returns = gen.projector.project(method.returns, raw, RETURN_USAGE).target_type
            function_type = FunctionPointerOf((this_type, *(p.type for p in params)), returns)
            slots.append(VtableSlot(index, method.name, owner.full_name, function_type))
            methods.append(
                ForwardingMethodDecl(
                    name=method.name,
                    params=params,
                    return_type=returns,
                    slot_index=index,
                    body=(
                        InvokeSlot(index, function_type, ("this", *(p.name for p in params))),
                    ),
                )
            )

        return VtableStructDecl(
            name=name,
            namespace=typedef.namespace,
            interface_name=typedef.name,
            guid=typedef.guid,
            fields=(FieldDecl("lpVtbl", PointerTo(PointerTo(VOID_TYPE))),),
            slots=tuple(slots),
            methods=tuple(methods),
            visibility=gen.visibility,
            docs=gen.docs_for(typedef.name),
        )


# ===--- Friendly overloads ---=== #

INTEGER_CODES = frozenset({"i1", "u1", "i2", "u2", "i4", "u4", "i8", "u8", "isize", "usize"})
WIDE_CHAR_CODES = frozenset({"char", "u2"})
NARROW_CHAR_CODES = frozenset({"i1", "u1"})
RESULT_LOCAL = "__result"
WRAPPED_RESULT_LOCAL = "__handle"


@dataclass(frozen=True)
class _ParamPlan:
    surface: ParamDecl
    argument: CallArgument
    transform: ParameterTransform | None = None
    pre: tuple[Statement, ...] = ()
    post: tuple[Statement, ...] = ()


def _is_input_only(usage: UsageSite) -> bool:
    return (usage.is_in or usage.is_const) and not usage.is_out


class OverloadSynthesizer:
    """Builds a convenience overload on top of a raw extern declaration.

    Parameter rewrites are tried in a fixed precedence: counted spans,
    fixed-length spans, guarded handles (in, then out), strings, then
    by-reference forms of pointers to value types. A parameter takes the
    first rewrite that applies; parameters no rule matches pass through.
    """

    def __init__(self, generator: "Generator"):
        self._generator = generator

    def try_build_friendly_overload(
        self, raw: ExternMethodDecl, func: FunctionDef
    ) -> FriendlyOverloadDescriptor | None:
        params = func.params
        counted = self._counted_spans(func, raw)
        span_users = {i for users in counted.values() for i in users}

        transforms: list[ParameterTransform] = []
        surface: list[ParamDecl] = []
        pre: list[Statement] = []
        post: list[Statement] = []
        arguments: list[CallArgument | None] = [None] * len(params)

        for count_index, users in sorted(counted.items()):
            names = tuple(params[i].name for i in users)
            if len(users) > 1:
                pre.append(LengthEqualityCheck(names))
            transforms.append(
                ParameterTransform(
                    TRANSFORM_COUNT_REMOVED,
                    count_index,
                    params[count_index].name,
                    None,
                    detail=names[0],
                )
            )
            arguments[count_index] = CallArgument(
                ARG_LENGTH_OF, names[0], cast=raw.params[count_index].type
            )

        for index, param in enumerate(params):
            if index in counted:
                continue
            plan = self._plan_param(index, param, raw.params[index], func, index in span_users)
            surface.append(plan.surface)
            arguments[index] = plan.argument
            pre.extend(plan.pre)
            post.extend(plan.post)
            if plan.transform is not None:
                transforms.append(plan.transform)

        return_guard = self._guarded_handle_for(func.returns, func)
        if not transforms and return_guard is None:
            return None

        result_local = None if raw.return_type == VOID_TYPE else RESULT_LOCAL
        body: list[Statement] = [
            *pre,
            RawCall(raw.name, tuple(a for a in arguments if a is not None), result_local),
            *post,
        ]
        name = raw.name
        return_type = raw.return_type
        if return_guard is not None:
            return_type = NamedType(return_guard.name, return_guard.namespace)
            body.append(WrapReturnedHandle(RESULT_LOCAL, WRAPPED_RESULT_LOCAL, return_guard.name))
            body.append(ReturnValue(WRAPPED_RESULT_LOCAL))
            if not transforms:
                name = f"{raw.name}{GUARDED_RETURN_SUFFIX}"
        elif result_local is not None:
            body.append(ReturnValue(result_local))

        return FriendlyOverloadDescriptor(
            name=name,
            raw=raw,
            params=tuple(surface),
            return_type=return_type,
            transforms=tuple(sorted(transforms, key=lambda t: t.param_index)),
            body=tuple(body),
            visibility=raw.visibility,
        )

    def _counted_spans(self, func: FunctionDef, raw: ExternMethodDecl) -> dict[int, list[int]]:
        counted: dict[int, list[int]] = defaultdict(list)
        for index, param in enumerate(func.params):
            info = param.usage.native_array
            if info is None or info.count_param_index is None:
                continue
            count_index = info.count_param_index
            if count_index == index or not 0 <= count_index < len(func.params):
                continue
            if not isinstance(raw.params[index].type, PointerTo):
                continue
            count_type = func.params[count_index].type
            if not (isinstance(count_type, PrimitiveType) and count_type.code in INTEGER_CODES):
                continue
            counted[count_index].append(index)
        return dict(counted)

    def _plan_param(
        self,
        index: int,
        param: ParamDef,
        raw_param: ParamDecl,
        func: FunctionDef,
        is_span_user: bool,
    ) -> _ParamPlan:
        usage = param.usage
        native = param.type
        name = param.name
        local = f"{name}Local"
        pinned = CallArgument(ARG_LOCAL, name, local, cast=raw_param.type)

        if is_span_user:
            span = SpanOf(self._span_element(raw_param.type), readonly=_is_input_only(usage))
            return _ParamPlan(
                ParamDecl(name, span, is_optional=usage.is_optional),
                pinned,
                ParameterTransform(
                    TRANSFORM_COUNTED_SPAN,
                    index,
                    name,
                    span,
                    detail=usage.native_array.count_param_index,
                ),
                pre=(PinSpan(name, local),),
            )

        fixed_length = self._fixed_length(native, usage)
        if fixed_length is not None and isinstance(raw_param.type, PointerTo):
            span = SpanOf(self._span_element(raw_param.type), readonly=_is_input_only(usage))
            return _ParamPlan(
                ParamDecl(name, span, is_optional=usage.is_optional),
                pinned,
                ParameterTransform(TRANSFORM_FIXED_SPAN, index, name, span, detail=fixed_length),
                pre=(MinLengthCheck(name, fixed_length), PinSpan(name, local)),
            )

        if not usage.is_out:
            descriptor = self._guarded_handle_for(native, func)
            if descriptor is not None:
                wrapper = NamedType(descriptor.name, descriptor.namespace)
                flag = f"{name}AddRef"
                return _ParamPlan(
                    ParamDecl(name, wrapper, is_optional=usage.is_optional),
                    CallArgument(ARG_HANDLE_VALUE, name, cast=raw_param.type),
                    ParameterTransform(
                        TRANSFORM_GUARDED_HANDLE, index, name, wrapper, detail=descriptor.name
                    ),
                    pre=(HandleAddRef(name, flag),),
                    post=(HandleRelease(name, flag),),
                )

        if (
            isinstance(native, PointerType)
            and usage.is_out
            and not usage.is_in
            and raw_param.modifier is None
        ):
            descriptor = self._guarded_handle_for(native.element, func)
            if descriptor is not None:
                wrapper = NamedType(descriptor.name, descriptor.namespace)
                return _ParamPlan(
                    ParamDecl(name, wrapper, modifier="out"),
                    CallArgument(ARG_ADDRESS_OF_LOCAL, name, local),
                    ParameterTransform(
                        TRANSFORM_GUARDED_HANDLE_OUT,
                        index,
                        name,
                        wrapper,
                        modifier="out",
                        detail=descriptor.name,
                    ),
                    post=(WrapOutHandle(name, local, descriptor.name),),
                )

        wide = self._string_encoding(native, usage)
        if wide is not None and _is_input_only(usage):
            return _ParamPlan(
                ParamDecl(name, STRING_TYPE, is_optional=usage.is_optional),
                pinned,
                ParameterTransform(
                    TRANSFORM_STRING, index, name, STRING_TYPE, detail="utf16" if wide else "ansi"
                ),
                pre=(EncodeString(name, local, wide),),
            )

        if (
            isinstance(native, PointerType)
            and isinstance(raw_param.type, PointerTo)
            and raw_param.modifier is None
            and self._is_value_type(native.element)
        ):
            element = raw_param.type.element
            if not usage.is_optional:
                if usage.is_in and usage.is_out:
                    kind = TRANSFORM_REF
                elif usage.is_out:
                    kind = TRANSFORM_OUT
                elif usage.is_in or usage.is_const or native.is_const:
                    kind = TRANSFORM_IN
                else:
                    return _ParamPlan(raw_param, CallArgument(ARG_PASS, name))
                return _ParamPlan(
                    ParamDecl(name, element, modifier=kind),
                    pinned,
                    ParameterTransform(kind, index, name, element, modifier=kind),
                    pre=(PinReference(name, local),),
                )
            if _is_input_only(usage):
                nullable = NullableOf(element)
                return _ParamPlan(
                    ParamDecl(name, nullable, is_optional=True),
                    pinned,
                    ParameterTransform(TRANSFORM_NULLABLE, index, name, nullable),
                    pre=(NullableToPointer(name, local),),
                )

        return _ParamPlan(raw_param, CallArgument(ARG_PASS, name))

    @staticmethod
    def _span_element(raw_type: TargetType) -> TargetType:
        element = raw_type.element if isinstance(raw_type, PointerTo) else raw_type
        return BYTE_TYPE if element == VOID_TYPE else element

    @staticmethod
    def _fixed_length(native: NativeType, usage: UsageSite) -> int | None:
        if isinstance(native, ArrayType) and native.length is not None:
            return native.length
        if usage.native_array is not None and usage.native_array.count_const is not None:
            return usage.native_array.count_const
        return None

    @staticmethod
    def _string_encoding(native: NativeType, usage: UsageSite) -> bool | None:
        """True for UTF-16 strings, False for narrow strings, None otherwise."""
        if isinstance(native, HandleType):
            if native.name in WIDE_STRING_TYPES:
                return True
            if native.name in NARROW_STRING_TYPES:
                return False
            return None
        if (
            isinstance(native, PointerType)
            and isinstance(native.element, PrimitiveType)
            and (native.is_const or usage.is_null_terminated)
        ):
            if native.element.code in WIDE_CHAR_CODES:
                return True
            if native.element.code in NARROW_CHAR_CODES:
                return False
        return None

    def _is_value_type(self, native: NativeType) -> bool:
        if isinstance(native, PrimitiveType):
            return native.code != "void"
        if isinstance(native, HandleType):
            typedef = self._generator.resolve_type(native)
            return typedef is not None and typedef.kind in ("struct", "union", "enum")
        return False

    def _guarded_handle_for(
        self, native: NativeType, func: FunctionDef
    ) -> GuardedHandleDescriptor | None:
        if not isinstance(native, HandleType):
            return None
        typedef = self._generator.resolve_type(native)
        if typedef is None:
            return None
        release_name = self._generator.index.release_function_for(typedef.full_name)
        # The release function takes the raw handle it is releasing.
        if release_name is None or release_name == func.name:
            return None
        return self._generator.request_guarded_handle(release_name)


# ===--- Generator ---=== #


def _element_category(element: ApiElement) -> str:
    if isinstance(element, FunctionDef):
        return KIND_FUNCTION
    if isinstance(element, TypeDef):
        return KIND_TYPE
    return KIND_CONSTANT


def _format_constant_value(constant: ConstantDef, target: TargetType) -> tuple[int | float | str, str]:
    raw = constant.value.strip()
    try:
        if constant.kind == "int":
            value = int(raw, 0)
            return value, str(value)
        if constant.kind == "float":
            value = float(raw)
            return value, repr(value)
        if constant.kind == "struct":
            value = int(raw, 0)
            return value, f"new {target}({value})"
    except ValueError as err:
        raise StructuralFailure(
            f"Constant {constant.full_name} has malformed {constant.kind} value {raw!r}"
        ) from err
    if constant.kind == "string":
        return constant.value, json.dumps(constant.value)
    if not _GUID_RE.match(raw):
        raise StructuralFailure(f"Constant {constant.full_name} has malformed guid value {raw!r}")
    return raw.lower(), f'new Guid("{raw.lower()}")'


class Generator:
    """Demand-driven projection engine over one MetadataIndex.

    Every public request runs inside exactly one transaction: the entities
    it commits become visible together when it returns, and nothing it
    produced survives if it raises. Structural failures are remembered
    across requests.
    """

    def __init__(
        self,
        index: MetadataIndex,
        options: GeneratorOptions | None = None,
        docs: DocumentationProvider | None = None,
        templates: TemplateRepository | None = None,
        compilation: CompilationContext | None = None,
        substitutions: SubstitutionTables = DEFAULT_SUBSTITUTIONS,
    ):
        self.index = index
        self.options = options or GeneratorOptions()
        self.docs = docs
        self.templates = templates if templates is not None else BUILTIN_TEMPLATES
        self.compilation = compilation
        self.substitutions = substitutions
        self.ledger = GenerationLedger()
        self._txn: Transaction | None = None

        self.analyzer = ManagedTypeAnalyzer(self)
        self.projector = TypeProjector(self)
        self.inline_arrays = FixedArraySynthesizer(self)
        self.guarded_handles = GuardedHandleSynthesizer(self)
        self.interfaces = InterfaceProjector(self)
        self.overloads = OverloadSynthesizer(self)

    @property
    def visibility(self) -> str:
        return "public" if self.options.public else "internal"

    @property
    def default_context(self) -> GenerationContext:
        return GenerationContext(allow_marshaling=self.options.allow_marshaling)

    def docs_for(self, api_name: str) -> str | None:
        if self.docs is None:
            return None
        return self.docs.try_get_docs(api_name)

    # Transactions

    @contextmanager
    def _transaction(self) -> Iterator[Transaction]:
        if self._txn is not None:
            yield self._txn
            return
        txn = self.ledger.begin()
        self._txn = txn
        try:
            yield txn
        except BaseException:
            txn.rollback()
            raise
        else:
            txn.commit()
        finally:
            self._txn = None

    @contextmanager
    def _savepoint(self) -> Iterator[Transaction]:
        outer = self._require_transaction()
        child = outer.savepoint()
        self._txn = child
        try:
            yield child
        except BaseException:
            child.rollback()
            raise
        else:
            child.commit()
        finally:
            self._txn = outer

    def _require_transaction(self) -> Transaction:
        if self._txn is None:
            raise RuntimeError("Entity production requires an open transaction")
        return self._txn

    def _produce(
        self, key: EntityKey, producer: Callable[[], tuple[Declaration, ...]]
    ) -> None:
        txn = self._require_transaction()
        entry = txn.entry(key)
        if entry.state in (STATE_COMMITTED, STATE_IN_FLIGHT):
            return
        if entry.state == STATE_FAILED:
            raise StructuralFailure(entry.error.message, entry.error.key) from entry.error
        if self.compilation is not None and self.compilation.has(key.full_name):
            txn.complete(key, ())
            return

        txn.mark_in_flight(key)
        try:
            declarations = producer()
        except StructuralFailure as err:
            if err.key is None:
                err.key = key
            txn.fail(key, err)
            raise
        except BaseException:
            txn.forget(key)
            raise
        txn.complete(key, tuple(declarations))

    # Resolution helpers

    def resolve_type(self, handle: HandleType) -> TypeDef | None:
        variants = self.index.resolve_type(handle)
        if not variants:
            return None
        return select_variant(variants, self.options.platform, handle.full_name)

    def needs_unmanaged_variant(self, typedef: TypeDef, context: GenerationContext) -> bool:
        return (
            self.options.allow_marshaling
            and not context.allow_marshaling
            and self.analyzer.is_managed_typedef(typedef, True)
        )

    def param_decl(self, param: ParamDef, context: GenerationContext) -> ParamDecl:
        if isinstance(param.type, PrimitiveType) and param.type.code == "void":
            raise StructuralFailure(f"Parameter {param.name} is declared void")
        result = self.projector.project(param.type, context, param.usage)
        return ParamDecl(
            param.name,
            result.target_type,
            result.modifier,
            result.marshal_as,
            param.usage.is_optional,
        )

    # Entity requests (inside a transaction)

    def request_function(self, func: FunctionDef) -> None:
        key = EntityKey(KIND_FUNCTION, func.namespace, func.name)
        self._produce(key, lambda: self._generate_function(func))

    def request_type(self, typedef: TypeDef, unmanaged: bool = False) -> None:
        key = EntityKey(KIND_TYPE, typedef.namespace, typedef.name, unmanaged)
        self._produce(key, lambda: self._generate_type(typedef, unmanaged))

    def request_constant(self, constant: ConstantDef) -> None:
        key = EntityKey(KIND_CONSTANT, constant.namespace, constant.name)
        self._produce(key, lambda: self._generate_constant(constant))

    def request_special(self, name: str) -> TemplateDeclaration:
        template = self.templates.fetch(name)
        if template is None:
            raise StructuralFailure(f"Special type {name} has no template")
        self._request_template(template)
        return template

    def request_guarded_handle(self, release_name: str) -> GuardedHandleDescriptor | None:
        if not self.options.use_guarded_handles:
            return None
        descriptor = self.guarded_handles.try_build_guarded_handle(release_name)
        if descriptor is None:
            return None
        key = EntityKey(KIND_GUARDED_HANDLE, descriptor.namespace, descriptor.name)
        self._produce(key, lambda: self._generate_guarded_handle(descriptor))
        return descriptor

    def _request_template(self, template: TemplateDeclaration) -> None:
        kind = KIND_MACRO if template.kind == "macro" else KIND_SPECIAL
        key = EntityKey(kind, template.namespace, template.name)
        self._produce(key, lambda: self._generate_template(template))

    def _request_element(self, element: ApiElement) -> None:
        if isinstance(element, FunctionDef):
            self.request_function(element)
        elif isinstance(element, TypeDef):
            self.request_type(element)
        else:
            self.request_constant(element)

    # Producers

    def _generate_function(self, func: FunctionDef) -> tuple[Declaration, ...]:
        context = self.default_context
        returns = self.projector.project(func.returns, context, RETURN_USAGE)
        raw = ExternMethodDecl(
            name=func.name,
            namespace=func.namespace,
            module=func.module,
            params=tuple(self.param_decl(p, context) for p in func.params),
            return_type=returns.target_type,
            return_marshal=returns.marshal_as,
            set_last_error=func.set_last_error,
            marshaling=context.allow_marshaling,
            visibility=self.visibility,
            docs=self.docs_for(func.name),
            architectures=func.architectures,
        )
        overload = self.overloads.try_build_friendly_overload(raw, func)
        if overload is None:
            return (raw,)
        return (raw, overload)

    def _generate_type(self, typedef: TypeDef, unmanaged: bool) -> tuple[Declaration, ...]:
        name = variant_type_name(typedef.name, unmanaged)
        if typedef.kind in ("struct", "union"):
            return (self._generate_struct(typedef, name, unmanaged),)
        if typedef.kind == "enum":
            return (
                EnumDecl(
                    name=typedef.name,
                    namespace=typedef.namespace,
                    base_type=NamedType(PRIMITIVE_TARGET_NAMES[typedef.enum_base]),
                    members=typedef.members,
                    is_flags=typedef.is_flags,
                    visibility=self.visibility,
                    docs=self.docs_for(typedef.name),
                ),
            )
        if typedef.kind == "interface":
            context = GenerationContext(
                allow_marshaling=self.options.allow_marshaling and not unmanaged
            )
            return self.interfaces.project_interface(typedef, context, name)
        if typedef.kind == "delegate":
            context = GenerationContext(allow_marshaling=self.options.allow_marshaling)
            returns = self.projector.project(
                typedef.returns or PrimitiveType("void"), context, RETURN_USAGE
            )
            return (
                DelegateDecl(
                    name=typedef.name,
                    namespace=typedef.namespace,
                    params=tuple(self.param_decl(p, context) for p in typedef.params),
                    return_type=returns.target_type,
                    visibility=self.visibility,
                    docs=self.docs_for(typedef.name),
                ),
            )
        raise StructuralFailure(f"Unrecognized type kind {typedef.kind!r} for {typedef.full_name}")

    def _generate_struct(self, typedef: TypeDef, name: str, unmanaged: bool) -> StructDecl:
        is_union = typedef.kind == "union"
        marshal_fields = (
            self.options.allow_marshaling
            and not unmanaged
            and not typedef.explicit_layout
            and self.analyzer.is_managed_typedef(typedef, True)
        )
        context = GenerationContext(allow_marshaling=marshal_fields, is_field=True)
        fields = []
        for f in typedef.fields:
            result = self.projector.project(f.type, context, f.usage)
            fields.append(
                FieldDecl(
                    name=f.name,
                    type=result.target_type,
                    marshal_as=result.marshal_as,
                    offset=0 if is_union else f.offset,
                    native_array=result.native_array,
                )
            )
        return StructDecl(
            name=name,
            namespace=typedef.namespace,
            fields=tuple(fields),
            native_name=typedef.name,
            is_union=is_union,
            explicit_layout=typedef.explicit_layout,
            is_typedef=typedef.is_typedef,
            visibility=self.visibility,
            docs=self.docs_for(typedef.name),
        )

    def _generate_constant(self, constant: ConstantDef) -> tuple[Declaration, ...]:
        if constant.kind not in SUPPORTED_CONSTANT_KINDS:
            raise StructuralFailure(
                f"Unsupported constant encoding {constant.kind!r} for {constant.full_name}"
            )
        if constant.kind == "string":
            target: TargetType = STRING_TYPE
        else:
            target = self.projector.project(
                constant.type, GenerationContext(allow_marshaling=False)
            ).target_type
        value, expression = _format_constant_value(constant, target)
        return (
            ConstantDecl(
                name=constant.name,
                namespace=constant.namespace,
                type=target,
                value=value,
                value_expression=expression,
                kind=constant.kind,
                visibility=self.visibility,
                docs=self.docs_for(constant.name),
            ),
        )

    def _generate_guarded_handle(
        self, descriptor: GuardedHandleDescriptor
    ) -> tuple[Declaration, ...]:
        release = select_variant(
            self.index.find_functions(descriptor.release_function),
            self.options.platform,
            descriptor.release_function,
        )
        self.request_function(release)
        return (GuardedHandleDecl(descriptor, self.visibility),)

    def _generate_template(self, template: TemplateDeclaration) -> tuple[Declaration, ...]:
        for requirement in template.requires:
            if not self._request_name(requirement):
                raise StructuralFailure(
                    f"{template.name} requires {requirement}, which is not in the metadata"
                )
        return (template,)

    # Name resolution

    def _exact_groups(self, name: str) -> list[tuple[str, list[ApiElement]]]:
        grouped: dict[tuple[str, str, str], list[ApiElement]] = {}
        for element in self.index.lookup(name):
            key = (_element_category(element), element.namespace, element.name)
            grouped.setdefault(key, []).append(element)
        namespaces = {namespace for _, namespace, _ in grouped}
        if len(namespaces) > 1:
            candidates = tuple(sorted({f"{ns}.{n}" for _, ns, n in grouped}))
            raise UserInputError(
                f"'{name}' is ambiguous; qualify it with its namespace", candidates
            )
        return [(f"{ns}.{n}", variants) for (_, ns, n), variants in grouped.items()]

    def _lookup_groups(self, name: str) -> list[tuple[str, list[ApiElement]]]:
        groups = self._exact_groups(name)
        if groups or "." in name:
            return groups
        suffixes = ("W",) if self.options.wide_char_only else ("W", "A")
        fuzzy: list[tuple[str, list[ApiElement]]] = []
        for suffix in suffixes:
            fuzzy.extend(
                (display, variants)
                for display, variants in self._exact_groups(name + suffix)
                if any(isinstance(v, FunctionDef) for v in variants)
            )
        return fuzzy

    def _request_name(self, name: str) -> bool:
        groups = self._lookup_groups(name)
        if not groups:
            template = self.templates.fetch(name.rpartition(".")[2])
            if template is None:
                return False
            self._request_template(template)
            return True
        for display, variants in groups:
            self._request_element(select_variant(variants, self.options.platform, display))
        return True

    # Public API

    def request_by_name(self, name: str) -> bool:
        """Generate the named API element and everything it depends on.

        Accepts a qualified or simple name. A simple function name without
        its `W`/`A` suffix matches the suffixed variants (`A` only when
        narrow variants are enabled). A namespace name generates the whole
        namespace.

        Returns:
            True when something matched, False when nothing did.

        Raises:
            UserInputError: The name is malformed or ambiguous.
            PlatformMismatch: The element exists only for other platforms.
            StructuralFailure: The element cannot be projected.
        """
        validated = self._validate_name(name)
        if self.index.has_namespace(validated):
            self.request_namespace(validated)
            return True
        with self._transaction():
            return self._request_name(validated)

    def request_macro(self, name: str) -> bool:
        validated = self._validate_name(name)
        template = self.templates.fetch(validated)
        if template is None or template.kind != "macro":
            raise UserInputError(
                f"Unknown macro name: {validated}",
                tuple(n for n in self.templates.names() if validated.lower() in n.lower()),
            )
        with self._transaction():
            self._request_template(template)
        return True

    def request_namespace(
        self, namespace: str, cancel: CancellationToken | None = None
    ) -> SweepReport:
        members = self.index.namespaces.get(namespace)
        if members is None:
            raise UserInputError(
                f"Unknown namespace: {namespace}", tuple(self.suggest_similar(namespace))
            )
        return self._sweep(self._namespace_candidates(namespace, members), cancel)

    def request_module_wildcard(
        self, module: str, cancel: CancellationToken | None = None
    ) -> SweepReport:
        functions = self.index.functions_in_module(module)
        if not functions:
            raise UserInputError(f"No functions found in module {module}")
        grouped: dict[str, list[ApiElement]] = {}
        for func in functions:
            grouped.setdefault(func.full_name, []).append(func)
        names = {full_name.rpartition(".")[2] for full_name in grouped}
        candidates = [
            (full_name, variants)
            for full_name, variants in sorted(grouped.items())
            if not self._is_suppressed_narrow(full_name.rpartition(".")[2], names)
        ]
        return self._sweep(candidates, cancel)

    def request_constant_prefix(
        self, prefix: str, cancel: CancellationToken | None = None
    ) -> SweepReport:
        stem = prefix.rstrip("*")
        constants = self.index.constants_with_prefix(stem)
        if not stem or not constants:
            raise UserInputError(f"No constants found with prefix {stem or prefix!r}")
        grouped: dict[str, list[ApiElement]] = {}
        for constant in constants:
            grouped.setdefault(constant.full_name, []).append(constant)
        return self._sweep(sorted(grouped.items()), cancel)

    def request_all(self, cancel: CancellationToken | None = None) -> SweepReport:
        candidates: list[tuple[str, list[ApiElement]]] = []
        for namespace in sorted(self.index.namespaces):
            candidates.extend(
                self._namespace_candidates(namespace, self.index.namespaces[namespace])
            )
        return self._sweep(candidates, cancel)

    def request(self, line: str, cancel: CancellationToken | None = None) -> SweepReport:
        """Dispatch one request line.

        `NAME.*` selects every function exported by module NAME, `PREFIX*`
        every constant starting with PREFIX, a namespace name the whole
        namespace, and anything else a single name.
        """
        text = line.strip()
        if text.endswith(".*"):
            return self.request_module_wildcard(text[:-2], cancel)
        if text.endswith("*"):
            return self.request_constant_prefix(text, cancel)
        validated = self._validate_name(text)
        if self.index.has_namespace(validated):
            return self.request_namespace(validated, cancel)
        with self._transaction() as txn:
            before = txn.pending_count
            found = self._request_name(validated)
            committed = txn.pending_count - before
        return SweepReport(
            candidate_count=1 if found else 0,
            committed_count=committed,
            not_found=() if found else (validated,),
        )

    def suggest_similar(self, name: str, limit: int = 10) -> list[str]:
        """Suggest API names resembling `name` for not-found diagnostics."""
        pool = [*self.index.all_api_names(), *self.index.namespaces, *self.templates.names()]
        needle = name.rpartition(".")[2].lower()
        suggestions: list[str] = []
        if needle:
            suggestions.extend(n for n in sorted(set(pool)) if needle in n.lower())
        for close in difflib.get_close_matches(name, pool, n=limit, cutoff=0.75):
            if close not in suggestions:
                suggestions.append(close)
        return suggestions[:limit]

    def committed_units(
        self, grouper: Callable[[Iterable[Declaration], bool], list["OutputUnit"]] | None = None
    ) -> list["OutputUnit"]:
        group = grouper or group_declarations
        return group(self.ledger.committed_declarations(), self.options.emit_single_unit)

    # Sweeps

    def _sweep(
        self,
        candidates: list[tuple[str, list[ApiElement]]],
        cancel: CancellationToken | None,
    ) -> SweepReport:
        skipped: list[str] = []
        failures: list[tuple[str, str]] = []
        with self._transaction() as txn:
            before = txn.pending_count
            for display, variants in candidates:
                if cancel is not None:
                    cancel.raise_if_cancelled()
                try:
                    with self._savepoint():
                        element = select_variant(variants, self.options.platform, display)
                        self._request_element(element)
                except PlatformMismatch:
                    skipped.append(display)
                except StructuralFailure as err:
                    failures.append((display, err.message))
            committed = txn.pending_count - before
        return SweepReport(
            candidate_count=len(candidates),
            committed_count=committed,
            skipped_platform=tuple(skipped),
            failures=tuple(failures),
        )

    def _namespace_candidates(
        self, namespace: str, members: NamespaceMembers
    ) -> list[tuple[str, list[ApiElement]]]:
        function_names = set(members.functions)
        candidates: list[tuple[str, list[ApiElement]]] = []
        for name in sorted(members.functions):
            if not self._is_suppressed_narrow(name, function_names):
                candidates.append((f"{namespace}.{name}", list(members.functions[name])))
        for name in sorted(members.types):
            candidates.append((f"{namespace}.{name}", list(members.types[name])))
        for name in sorted(members.constants):
            candidates.append((f"{namespace}.{name}", list(members.constants[name])))
        return candidates

    def _is_suppressed_narrow(self, name: str, names: set[str]) -> bool:
        return (
            self.options.wide_char_only
            and name.endswith("A")
            and f"{name[:-1]}W" in names
        )

    def _validate_name(self, name: str) -> str:
        text = name.strip() if isinstance(name, str) else ""
        if not _API_NAME_RE.match(text):
            raise UserInputError(f"Invalid API name: {name!r}")
        return text


# ===--- Output units ---=== #

SINGLE_UNIT_NAME = "NativeMethods"
CONSTANTS_UNIT_NAME = "PInvoke.Constants"
MACROS_UNIT_NAME = "PInvoke.Macros"
INLINE_ARRAYS_UNIT_NAME = "InlineArrays"


@dataclass(frozen=True)
class OutputUnit:
    name: str
    declarations: tuple[Declaration, ...]


def unit_name_for(declaration: Declaration) -> str:
    if isinstance(declaration, (ExternMethodDecl, FriendlyOverloadDescriptor)):
        return f"PInvoke.{normalize_module_name(declaration.module).upper()}"
    if isinstance(declaration, ConstantDecl):
        return CONSTANTS_UNIT_NAME
    if isinstance(declaration, TemplateDeclaration) and declaration.kind == "macro":
        return MACROS_UNIT_NAME
    if isinstance(declaration, InlineArrayDecl):
        return INLINE_ARRAYS_UNIT_NAME
    return f"{declaration.namespace}.{declaration.name}"


def group_declarations(
    declarations: Iterable[Declaration], emit_single_unit: bool = False
) -> list[OutputUnit]:
    """Group committed declarations into output units.

    Units are sorted by name; inside a unit declarations keep commit order.
    """
    ordered = tuple(declarations)
    if not ordered:
        return []
    if emit_single_unit:
        return [OutputUnit(SINGLE_UNIT_NAME, ordered)]
    grouped: dict[str, list[Declaration]] = defaultdict(list)
    for declaration in ordered:
        grouped[unit_name_for(declaration)].append(declaration)
    return [OutputUnit(name, tuple(grouped[name])) for name in sorted(grouped)]


def build_manifest(units: list[OutputUnit]) -> dict[str, list[str]]:
    manifest: dict[str, list[str]] = {}
    for unit in units:
        manifest[unit.name] = [
            f"{type(declaration).__name__}:{declaration.name}" for declaration in unit.declarations
        ]
    return manifest


def write_manifest(path: Path, units: list[OutputUnit]) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(build_manifest(units), indent=2) + "\n", encoding="utf-8")
    return path


# ===--- Summary report ---=== #


@dataclass(frozen=True)
class RequestOutcome:
    """Result of one request line as shown in the summary.

    Exactly one of `report` and `error` is set.
    """

    request: str
    report: SweepReport | None = None
    error: str | None = None
    suggestions: tuple[str, ...] = ()


@dataclass(frozen=True)
class GenerationSummary:
    metadata_label: str
    platform_label: str
    style_label: str
    outcomes: tuple[RequestOutcome, ...]
    units: tuple[tuple[str, int], ...]

    @property
    def declaration_count(self) -> int:
        return sum(count for _, count in self.units)

    @property
    def has_errors(self) -> bool:
        return any(outcome.error is not None for outcome in self.outcomes)


def build_generation_summary(
    config: GenerateConfig,
    outcomes: tuple[RequestOutcome, ...],
    units: list[OutputUnit],
) -> GenerationSummary:
    options = config.options
    style = "marshaling" if options.allow_marshaling else "raw"
    if options.emit_single_unit:
        style += ", single unit"
    return GenerationSummary(
        metadata_label=", ".join(path.name for path in config.metadata),
        platform_label=options.platform or "anycpu",
        style_label=style,
        outcomes=outcomes,
        units=tuple((unit.name, len(unit.declarations)) for unit in units),
    )


def _describe_outcome(outcome: RequestOutcome) -> str:
    if outcome.error is not None:
        text = f"error: {outcome.error}"
    elif outcome.report is not None and outcome.report.not_found:
        text = "not found"
    else:
        report = outcome.report
        text = f"+{report.committed_count} entities"
        notes = []
        if report.skipped_platform:
            notes.append(f"{len(report.skipped_platform)} skipped for platform")
        if report.failures:
            notes.append(f"{len(report.failures)} failed")
        if notes:
            text += f" ({', '.join(notes)})"
    if outcome.suggestions:
        text += f" (did you mean: {', '.join(outcome.suggestions[:3])}?)"
    return text


def format_generation_summary(summary: GenerationSummary) -> str:
    """Render a GenerationSummary as console text with one trailing newline."""
    lines: list[str] = []
    lines.append("Projection generated:")
    lines.append("")
    lines.append(f"  Metadata:   {summary.metadata_label}")
    lines.append(f"  Platform:   {summary.platform_label}")
    lines.append(f"  Style:      {summary.style_label}")
    lines.append("")
    lines.append("  Requests:")
    width = max((len(o.request) for o in summary.outcomes), default=0)
    for outcome in summary.outcomes:
        lines.append(f"    {outcome.request:<{width}}  {_describe_outcome(outcome)}")

    lines.append("")
    lines.append("  Units:")
    unit_width = max((len(name) for name, _ in summary.units), default=0)
    for name, count in summary.units:
        lines.append(f"    {name:<{unit_width}}  {count:>5} declarations")

    lines.append("")
    lines.append(
        f"  Total: {summary.declaration_count} declarations across {len(summary.units)} units"
    )
    lines.append("")

    return "\n".join(lines)


def print_generation_summary(summary: GenerationSummary) -> None:
    print(format_generation_summary(summary), end="")


# ===--- Discovery ---=== #


def format_namespace_table(index: MetadataIndex) -> str:
    lines = [f"{len(index.namespaces)} namespaces:", ""]
    width = max((len(ns) for ns in index.namespaces), default=0)
    for namespace in sorted(index.namespaces):
        members = index.namespaces[namespace]
        lines.append(
            f"  {namespace:<{width}}  {len(members.functions):>5} functions"
            f"  {len(members.types):>5} types  {len(members.constants):>5} constants"
        )
    lines.append("")
    return "\n".join(lines)


def run_discovery(config: DiscoveryConfig) -> None:
    """Execute a discovery command and print its result.

    Raises:
        SystemExit(1): `--suggest` found no similar names.
    """
    import sys

    index = load_metadata_index(config.metadata)

    if config.command == "list-namespaces":
        print(format_namespace_table(index), end="")

    elif config.command == "suggest":
        assert config.suggest_name is not None
        suggestions = Generator(index).suggest_similar(config.suggest_name)
        if not suggestions:
            print(f"Error: nothing resembles '{config.suggest_name}'", file=sys.stderr)
            raise SystemExit(1)
        for name in suggestions:
            print(name)


# ===--- Main generation ---=== #


def load_metadata_index(paths: Iterable[Path]) -> MetadataIndex:
    roots = [ET.parse(path).getroot() for path in paths]
    return MetadataIndex.from_xml(*roots)


def load_templates(path: Path | None) -> MappingTemplateRepository:
    builtin = [BUILTIN_TEMPLATES.fetch(name) for name in BUILTIN_TEMPLATES.names()]
    if path is None:
        return MappingTemplateRepository(builtin)
    catalog = load_template_catalog(ET.parse(path).getroot())
    custom = [catalog.fetch(name) for name in catalog.names()]
    return MappingTemplateRepository([*builtin, *custom])


def run_requests(generator: Generator, requests: Iterable[str]) -> tuple[RequestOutcome, ...]:
    """Run each request line; a failed request does not stop the others."""
    outcomes: list[RequestOutcome] = []
    for line in requests:
        try:
            report = generator.request(line)
        except UserInputError as err:
            hints = err.candidates or tuple(generator.suggest_similar(line.rstrip(".*"), 5))
            outcomes.append(RequestOutcome(line, error=err.message, suggestions=hints))
            continue
        except (PlatformMismatch, StructuralFailure) as err:
            outcomes.append(RequestOutcome(line, error=str(err)))
            continue
        suggestions: tuple[str, ...] = ()
        if report.not_found:
            suggestions = tuple(generator.suggest_similar(report.not_found[0], 5))
        outcomes.append(RequestOutcome(line, report, suggestions=suggestions))
    return tuple(outcomes)


def run_generate(config: GenerateConfig) -> GenerationSummary:
    """Execute the complete generation pipeline for a GenerateConfig.

    Args:
        config: Validated GenerateConfig from build_config.

    Returns:
        The summary that was printed.

    Raises:
        OSError: Metadata, documentation or manifest file not accessible.
        ET.ParseError: Malformed metadata or template catalog.
        StructuralFailure: Metadata document with an unrecognized shape.
    """
    print(f"Parsing: {', '.join(str(path) for path in config.metadata)}")
    index = load_metadata_index(config.metadata)
    function_count = sum(len(m.functions) for m in index.namespaces.values())
    type_count = sum(len(m.types) for m in index.namespaces.values())
    constant_count = sum(len(m.constants) for m in index.namespaces.values())
    print(
        f"  Index: {len(index.namespaces)} namespaces, {function_count} functions, "
        f"{type_count} types, {constant_count} constants"
    )

    docs = load_documentation(config.docs) if config.docs is not None else None
    generator = Generator(
        index,
        options=config.options,
        docs=docs,
        templates=load_templates(config.templates),
    )

    outcomes = run_requests(generator, config.requests)
    print(f"  Requested: {len(outcomes)} requests, {len(generator.ledger)} entities committed")

    units = generator.committed_units()
    if config.manifest is not None:
        written = write_manifest(config.manifest, units)
        print(f"  Manifest: {written}")

    summary = build_generation_summary(config, outcomes, units)
    print_generation_summary(summary)
    return summary


def main():
    try:
        config = build_config()
    except ConfigError as err:
        print(f"Config error [{err.code}]: {err.message}")
        if err.suggestion:
            print(f"Hint: {err.suggestion}")
        raise SystemExit(1) from err

    try:
        if isinstance(config, DiscoveryConfig):
            run_discovery(config)
            return
        summary = run_generate(config)
    except ConfigError as err:
        print(f"Config error [{err.code}]: {err.message}")
        if err.suggestion:
            print(f"Hint: {err.suggestion}")
        raise SystemExit(1) from err
    except (OSError, ET.ParseError, StructuralFailure) as err:
        print(f"Error: {err}")
        raise SystemExit(1) from err
    except (RuntimeError, ValueError) as err:
        print(f"Internal error: {err}")
        raise SystemExit(1) from err

    if summary.has_errors:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
