"""
Attribute value expressions shared by the .tf and YAML/JSON loaders.

Supported inside ``${...}``:
  kind.name.attribute   reference to another resource's output
  kind.name             reference to a resource (its id)
  var.NAME              variable value
  path.module           directory of the declaring file
  file("path")          external file content
  jsonencode(<json>)    literal JSON document
Anything else is kept as literal text.
"""
import json
import os
import re
from typing import Any, Dict, List, Optional, Tuple, Union

from rich.console import Console

from iamgraph.errors import ConfigurationError
from iamgraph.models.resource import AttributeRef, FileContent, Template
from iamgraph.parsers.files import FileLoader

console = Console(stderr=True)

_REF_RE = re.compile(r"^([a-z][a-z0-9_]*)\.([A-Za-z_][A-Za-z0-9_-]*)(?:\.([A-Za-z_][A-Za-z0-9_]*))?$")
_FILE_RE = re.compile(r"^file\((.+)\)$", re.DOTALL)
_JSONENCODE_RE = re.compile(r"^jsonencode\((.+)\)$", re.DOTALL)
_VAR_RE = re.compile(r"^var\.([A-Za-z_][A-Za-z0-9_-]*)$")
_HEREDOC_RE = re.compile(r"^<<-?(\w+)\n(.*?)\n?\s*\1\s*$", re.DOTALL)

# First segments that look like references but are not resources.
_NON_RESOURCE_ROOTS = {"var", "local", "path", "data", "each", "count", "self", "module", "terraform"}


class ExpressionContext:
    def __init__(self, source_file: str = "", variables: Optional[Dict[str, Any]] = None,
                 loader: Optional[FileLoader] = None):
        self.source_file = source_file
        self.module_dir = os.path.dirname(os.path.abspath(source_file)) if source_file else os.getcwd()
        self.variables = variables or {}
        self.loader = loader or FileLoader(self.module_dir)


def strip_quotes(text: str) -> str:
    """Newer python-hcl2 releases keep the surrounding quotes of string literals."""
    if len(text) >= 2 and text[0] == '"' and text[-1] == '"':
        return text[1:-1]
    return text


def _strip_heredoc(text: str) -> str:
    m = _HEREDOC_RE.match(text)
    return m.group(2) if m else text


def split_template(text: str) -> List[Tuple[bool, str]]:
    """
    Split a string into (is_expression, text) chunks on ``${...}`` markers,
    honouring nested braces and quoted strings inside the expression.
    """
    chunks: List[Tuple[bool, str]] = []
    i = 0
    literal_start = 0
    while i < len(text):
        if text.startswith("$${", i):
            i += 3
            continue
        if not text.startswith("${", i):
            i += 1
            continue
        depth, j, quoted = 1, i + 2, False
        while j < len(text) and depth:
            ch = text[j]
            if ch == '"' and text[j - 1] != "\\":
                quoted = not quoted
            elif not quoted and ch == "{":
                depth += 1
            elif not quoted and ch == "}":
                depth -= 1
            j += 1
        if depth:
            break
        if i > literal_start:
            chunks.append((False, text[literal_start:i]))
        chunks.append((True, text[i + 2:j - 1].strip()))
        i = literal_start = j
    if literal_start < len(text):
        chunks.append((False, text[literal_start:]))
    return chunks


def _interpolate_path(text: str, ctx: ExpressionContext) -> str:
    return text.replace("${path.module}", ctx.module_dir)


def parse_expression(expr: str, ctx: ExpressionContext) -> Any:
    m = _FILE_RE.match(expr)
    if m:
        path = _interpolate_path(strip_quotes(m.group(1).strip()), ctx)
        return ctx.loader.load(path)

    m = _JSONENCODE_RE.match(expr)
    if m:
        try:
            return json.dumps(json.loads(m.group(1)), separators=(",", ":"), sort_keys=True)
        except ValueError:
            console.print(f"[yellow]Warning:[/yellow] {ctx.source_file}: jsonencode() argument "
                          "is not plain JSON; kept as text", highlight=False)
            return "${" + expr + "}"

    m = _VAR_RE.match(expr)
    if m:
        name = m.group(1)
        if name not in ctx.variables:
            raise ConfigurationError(f"{ctx.source_file}: undefined variable 'var.{name}'")
        return ctx.variables[name]

    if expr == "path.module":
        return ctx.module_dir

    m = _REF_RE.match(expr)
    if m and m.group(1) not in _NON_RESOURCE_ROOTS:
        return AttributeRef(m.group(1), m.group(2), m.group(3))

    console.print(f"[yellow]Warning:[/yellow] {ctx.source_file}: unsupported expression "
                  f"'{expr}' kept as text", highlight=False)
    return "${" + expr + "}"


def parse_string(text: str, ctx: ExpressionContext) -> Any:
    text = _strip_heredoc(strip_quotes(text))
    if "${" not in text:
        return text

    chunks = split_template(text)
    if len(chunks) == 1 and chunks[0][0]:
        return parse_expression(chunks[0][1], ctx)

    parts: List[Union[str, AttributeRef]] = []
    for is_expr, chunk in chunks:
        value = parse_expression(chunk, ctx) if is_expr else chunk
        if isinstance(value, FileContent):
            value = value.text()
        if not isinstance(value, AttributeRef):
            value = value if isinstance(value, str) else json.dumps(value)
        if parts and isinstance(value, str) and isinstance(parts[-1], str):
            parts[-1] += value
        else:
            parts.append(value)
    if len(parts) == 1 and isinstance(parts[0], str):
        return parts[0]
    return Template(tuple(parts))


def parse_value(value: Any, ctx: ExpressionContext) -> Any:
    if isinstance(value, str):
        return parse_string(value, ctx)
    if isinstance(value, dict):
        return {strip_quotes(k): parse_value(v, ctx) for k, v in value.items()
                if not k.startswith("__")}
    if isinstance(value, list):
        return [parse_value(v, ctx) for v in value]
    return value


def parse_depends_on(value: Any, ctx: ExpressionContext) -> List[AttributeRef]:
    refs: List[AttributeRef] = []
    for item in value if isinstance(value, list) else [value]:
        parsed = parse_value(item, ctx) if isinstance(item, str) else item
        if isinstance(parsed, str):
            # YAML documents may list bare addresses without ${}
            m = _REF_RE.match(parsed)
            parsed = AttributeRef(m.group(1), m.group(2)) if m and not m.group(3) else parsed
        if not isinstance(parsed, AttributeRef):
            raise ConfigurationError(f"{ctx.source_file}: depends_on entry {item!r} is not a resource")
        refs.append(AttributeRef(parsed.kind, parsed.name))
    return refs
