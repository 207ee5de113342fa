from typing import Any, Dict, Iterator, Optional, Tuple

import hcl2
from rich.console import Console

from iamgraph.errors import ConfigurationError
from iamgraph.models.resource import Configuration, OutputDeclaration, ResourceDeclaration
from iamgraph.parsers.expressions import (
    ExpressionContext,
    parse_depends_on,
    parse_value,
    strip_quotes,
)
from iamgraph.parsers.files import FileLoader

console = Console(stderr=True)

# Meta-arguments handled by the loader rather than passed to the provider.
_META_ARGS = {"depends_on", "lifecycle", "provider", "count", "for_each"}


def _unwrap(val: Any) -> Any:
    """
    python-hcl2 wraps single-element blocks in a list.
    Recursively unwrap single-element lists that contain dicts.
    """
    if isinstance(val, list):
        if len(val) == 1 and isinstance(val[0], dict):
            return _unwrap(val[0])
        return [_unwrap(v) for v in val]
    if isinstance(val, dict):
        return {k: _unwrap(v) for k, v in val.items()}
    return val


def _load(filepath: str) -> Dict[str, Any]:
    try:
        with open(filepath, encoding="utf-8") as fh:
            return hcl2.load(fh)
    except OSError as exc:
        raise ConfigurationError(f"cannot read {filepath}: {exc.strerror}") from exc
    except Exception as exc:
        raise ConfigurationError(f"failed to parse {filepath}: {exc}") from exc


def _labelled_blocks(data: Dict[str, Any], block_type: str) -> Iterator[Tuple[str, Dict[str, Any]]]:
    """Yield (label, body) for single-label blocks such as variable and output."""
    for block in data.get(block_type, []):
        if not isinstance(block, dict):
            continue
        for label, body in block.items():
            body = _unwrap(body)
            yield strip_quotes(label), body if isinstance(body, dict) else {}


def _resource_blocks(data: Dict[str, Any]) -> Iterator[Tuple[str, str, Dict[str, Any]]]:
    """Yield (resource_type, name, body) for every resource block."""
    for resource_block in data.get("resource", []):
        for resource_type, instances in resource_block.items():
            # hcl2 wraps the block in a list in older releases
            instance_maps = instances if isinstance(instances, list) else [instances]
            for instance_map in instance_maps:
                if not isinstance(instance_map, dict):
                    continue
                for name, raw_props in instance_map.items():
                    props = _unwrap(raw_props) if isinstance(raw_props, dict) else {}
                    if not isinstance(props, dict):
                        props = {}
                    yield strip_quotes(resource_type), strip_quotes(name), props


def _defaults(data: Dict[str, Any]) -> Dict[str, Any]:
    defaults = {}
    for name, body in _labelled_blocks(data, "variable"):
        if "default" in body:
            default = body["default"]
            defaults[name] = strip_quotes(default) if isinstance(default, str) else default
    return defaults


def variable_defaults(filepath: str) -> Dict[str, Any]:
    return _defaults(_load(filepath))


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return strip_quotes(value).lower() == "true"
    return bool(value)


def parse_file(
    filepath: str,
    variables: Optional[Dict[str, Any]] = None,
    loader: Optional[FileLoader] = None,
) -> Configuration:
    """
    Parse one .tf file. ``variables`` overrides the defaults declared in the
    file's own variable blocks.
    """
    data = _load(filepath)
    scope = _defaults(data)
    scope.update(variables or {})
    ctx = ExpressionContext(filepath, scope, loader)

    config = Configuration()
    for resource_type, name, props in _resource_blocks(data):
        if set(props) & {"count", "for_each"}:
            console.print(f"[yellow]Warning:[/yellow] {filepath}: {resource_type}.{name} uses "
                          "count/for_each, which is not supported; declared once", highlight=False)
        depends_on = parse_depends_on(props["depends_on"], ctx) if "depends_on" in props else []
        attributes = {
            k: parse_value(v, ctx)
            for k, v in props.items()
            if k not in _META_ARGS and not k.startswith("__")
        }
        config.resources.append(ResourceDeclaration(
            kind=resource_type,
            name=name,
            attributes=attributes,
            depends_on=depends_on,
            source_file=filepath,
        ))

    for name, body in _labelled_blocks(data, "output"):
        if "value" not in body:
            raise ConfigurationError(f"{filepath}: output '{name}' has no value")
        config.outputs.append(OutputDeclaration(
            name=name,
            value=parse_value(body["value"], ctx),
            sensitive=_truthy(body.get("sensitive", False)),
            description=strip_quotes(str(body.get("description", ""))),
            source_file=filepath,
        ))

    return config

