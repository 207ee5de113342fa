"""
Tool settings, read from an optional ``iamgraph.yaml`` in the working directory.

    parallelism: 4
    state_path: .iamgraph/state.json
    remote_path: .iamgraph/remote.json
    report_format: text
    variables:
      user_name: ci-deployer
"""
import os
from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, Optional

import yaml

from iamgraph.errors import ConfigurationError

SETTINGS_FILE = "iamgraph.yaml"
REPORT_FORMATS = ("text", "markdown", "json")


@dataclass
class Settings:
    parallelism: int = 4
    state_path: str = os.path.join(".iamgraph", "state.json")
    remote_path: str = os.path.join(".iamgraph", "remote.json")
    report_format: str = "text"
    variables: Dict[str, Any] = field(default_factory=dict)

    def merged(self, **overrides: Any) -> "Settings":
        """Copy with every non-None override applied; variables are merged."""
        changes = {k: v for k, v in overrides.items() if v is not None and k != "variables"}
        merged = replace(self, **changes)
        merged.variables = {**self.variables, **(overrides.get("variables") or {})}
        merged.validate()
        return merged

    def validate(self) -> None:
        if not isinstance(self.parallelism, int) or self.parallelism < 1:
            raise ConfigurationError(f"parallelism must be a positive integer, got {self.parallelism!r}")
        if self.report_format not in REPORT_FORMATS:
            raise ConfigurationError(
                f"report_format must be one of {', '.join(REPORT_FORMATS)}, got {self.report_format!r}"
            )
        if not isinstance(self.variables, dict):
            raise ConfigurationError("variables must be a mapping")


def load_settings(path: Optional[str] = None) -> Settings:
    """
    Load settings from ``path``, or from ``iamgraph.yaml`` in the working
    directory when it exists. Missing file means defaults.
    """
    explicit = path is not None
    path = path or SETTINGS_FILE
    if not os.path.exists(path):
        if explicit:
            raise ConfigurationError(f"settings file {path} does not exist")
        return Settings()

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigurationError(f"cannot read settings file {path}: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigurationError(f"settings file {path} must contain a mapping")
    known = {f.name for f in fields(Settings)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigurationError(f"unknown setting(s) in {path}: {', '.join(unknown)}")

    settings = Settings(**data)
    settings.validate()
    return settings
