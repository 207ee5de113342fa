import json
import os

import yaml


def _is_document(data) -> bool:
    # State files also carry a resources list; they are told apart by "serial".
    return isinstance(data, dict) and isinstance(data.get("resources"), list) and "serial" not in data


def detect_format(filepath: str) -> str:
    """
    Return 'terraform', 'document' (YAML/JSON declaration document), or 'unknown'.
    """
    _, ext = os.path.splitext(filepath.lower())

    if ext == ".tf":
        return "terraform"

    if ext == ".json":
        try:
            with open(filepath, encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, ValueError):
            return "unknown"
        return "document" if _is_document(data) else "unknown"

    if ext in (".yaml", ".yml"):
        try:
            with open(filepath, encoding="utf-8") as fh:
                data = yaml.safe_load(fh)
        except (OSError, yaml.YAMLError):
            return "unknown"
        return "document" if _is_document(data) else "unknown"

    return "unknown"
