"""Global app configuration (story API connection, compile defaults).

Stored in {data}/config.json. get_config() returns defaults merged with the
stored values; environment variables STORY_API_URL and STORY_API_KEY fill in
the connection when config.json leaves it unset.
"""

import json
import os
from pathlib import Path
from typing import Any

from backend.services import data_dir

_CONFIG_DEFAULTS: dict[str, Any] = {
    "story_api": {
        "url": "http://localhost:9002",
        "api_key": "",
        "timeout": 120,
        "endpoints": {},
    },
    "default_output_type_id": None,
}


def _config_path() -> Path:
    return data_dir() / "config.json"


def get_config() -> dict[str, Any]:
    """Read config, returning defaults merged with stored values."""
    config: dict[str, Any] = json.loads(json.dumps(_CONFIG_DEFAULTS))
    config["story_api"]["url"] = os.getenv("STORY_API_URL", config["story_api"]["url"])
    config["story_api"]["api_key"] = os.getenv("STORY_API_KEY", config["story_api"]["api_key"])

    path = _config_path()
    if path.is_file():
        stored = json.loads(path.read_text())
        if isinstance(stored.get("story_api"), dict):
            for key, value in stored["story_api"].items():
                # blank stored values fall back to the environment
                if key in config["story_api"] and value not in ("", None):
                    config["story_api"][key] = value
        if "default_output_type_id" in stored:
            config["default_output_type_id"] = stored["default_output_type_id"]
    return config


def update_config(fields: dict[str, Any]) -> dict[str, Any]:
    """Merge fields into config and persist. Returns full config."""
    config = get_config()
    if isinstance(fields.get("story_api"), dict):
        for key, value in fields["story_api"].items():
            if key in config["story_api"]:
                config["story_api"][key] = value
    if "default_output_type_id" in fields:
        config["default_output_type_id"] = fields["default_output_type_id"] or None
    _config_path().write_text(json.dumps(config, indent=2))
    return config
