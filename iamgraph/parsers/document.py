"""
YAML / JSON declaration documents.

    variables:
      user_name: ci-deployer
    resources:
      - kind: aws_iam_user
        name: deployer
        attributes:
          name: ${var.user_name}
      - kind: aws_iam_access_key
        name: deployer
        attributes:
          user: ${aws_iam_user.deployer.name}
    outputs:
      secret:
        value: ${aws_iam_access_key.deployer.secret}
        sensitive: true
"""
import json
import os
from typing import Any, Dict, Optional

import yaml

from iamgraph.errors import ConfigurationError
from iamgraph.models.resource import Configuration, OutputDeclaration, ResourceDeclaration
from iamgraph.parsers.expressions import ExpressionContext, parse_depends_on, parse_value
from iamgraph.parsers.files import FileLoader


def _load(filepath: str) -> Any:
    _, ext = os.path.splitext(filepath.lower())
    try:
        with open(filepath, encoding="utf-8") as fh:
            if ext == ".json":
                return json.load(fh)
            return yaml.safe_load(fh)
    except OSError as exc:
        raise ConfigurationError(f"cannot read {filepath}: {exc.strerror}") from exc
    except (ValueError, yaml.YAMLError) as exc:
        raise ConfigurationError(f"failed to parse {filepath}: {exc}") from exc


def variable_defaults(filepath: str) -> Dict[str, Any]:
    data = _load(filepath)
    variables = data.get("variables") if isinstance(data, dict) else None
    return dict(variables or {})


def parse_file(
    filepath: str,
    variables: Optional[Dict[str, Any]] = None,
    loader: Optional[FileLoader] = None,
) -> Configuration:
    data = _load(filepath)
    if not isinstance(data, dict) or not isinstance(data.get("resources", []), list):
        raise ConfigurationError(f"{filepath}: expected a mapping with a 'resources' list")

    scope = dict(data.get("variables") or {})
    scope.update(variables or {})
    ctx = ExpressionContext(filepath, scope, loader)

    config = Configuration()
    for i, item in enumerate(data.get("resources") or []):
        if not isinstance(item, dict) or "kind" not in item or "name" not in item:
            raise ConfigurationError(f"{filepath}: resource #{i + 1} needs 'kind' and 'name'")
        attributes = item.get("attributes") or {}
        if not isinstance(attributes, dict):
            raise ConfigurationError(f"{filepath}: attributes of {item['kind']}.{item['name']} must be a mapping")
        config.resources.append(ResourceDeclaration(
            kind=str(item["kind"]),
            name=str(item["name"]),
            attributes={k: parse_value(v, ctx) for k, v in attributes.items()},
            depends_on=parse_depends_on(item["depends_on"], ctx) if item.get("depends_on") else [],
            source_file=filepath,
        ))

    for name, body in (data.get("outputs") or {}).items():
        if not isinstance(body, dict):
            body = {"value": body}
        if "value" not in body:
            raise ConfigurationError(f"{filepath}: output '{name}' has no value")
        config.outputs.append(OutputDeclaration(
            name=str(name),
            value=parse_value(body["value"], ctx),
            sensitive=bool(body.get("sensitive", False)),
            description=str(body.get("description", "")),
            source_file=filepath,
        ))

    return config
