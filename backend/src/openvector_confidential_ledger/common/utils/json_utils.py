from __future__ import annotations

import json
from typing import Any, Dict

from jsonschema import validate

def read_json_file(file_path: str) -> Any:
    with open(file_path, "r", encoding="utf-8") as file:
        return json.load(file)

def read_json_config(file_path: str, schema: Dict[str, Any]) -> Dict[str, Any]:
    """Reads a json config file and validates it against the given json schema.

    Raises:
        FileNotFoundError: If the config file does not exist.
        jsonschema.ValidationError: If the config does not match the schema.
    """
    config = read_json_file(file_path)
    validate(config, schema)
    return config

def dumps_compact(data: Any) -> str:
    return json.dumps(data, separators=(",", ":"), sort_keys=True)
