"""Process-wide service wiring: storage, feed, engine, auto-compile.

init_services() must run before any route touches the accessors below; the
app factory and the test fixtures call it.
"""

import logging
from pathlib import Path

from storyguide.api import HttpStoryApi, StoryApi
from storyguide.feed import SessionFeed
from storyguide.pipeline import AutoCompileTrigger, SessionEngine
from storyguide.storage import Storage

logger = logging.getLogger(__name__)

_data_dir: Path | None = None
_storage: Storage | None = None
_engine: SessionEngine | None = None


def init_services(data_dir: Path, api: StoryApi | None = None) -> None:
    """Open storage under data_dir and build the session engine.

    Without an explicit api, an HttpStoryApi is built from the stored config.
    """
    global _data_dir, _storage, _engine
    from backend.config import get_config

    _data_dir = Path(data_dir)
    _data_dir.mkdir(parents=True, exist_ok=True)
    _storage = Storage(_data_dir)

    config = get_config()
    if api is None:
        conn = config["story_api"]
        api = HttpStoryApi(
            conn["url"],
            api_key=conn["api_key"],
            timeout=float(conn["timeout"]),
            endpoints=conn["endpoints"],
        )
        logger.info("Story API at %s", conn["url"])

    feed = SessionFeed(_storage)
    autocompile = AutoCompileTrigger(_storage, api, config["default_output_type_id"])
    autocompile.attach(feed)
    _engine = SessionEngine(_storage, api, feed=feed, autocompile=autocompile)


def apply_config(config: dict) -> None:
    """Push settings that can change without a restart into the live engine."""
    if _engine is not None and _engine.autocompile is not None:
        _engine.autocompile.default_output_type_id = config["default_output_type_id"]


def data_dir() -> Path:
    assert _data_dir is not None, "Call init_services() before using services"
    return _data_dir


def storage() -> Storage:
    assert _storage is not None, "Call init_services() before using services"
    return _storage


def engine() -> SessionEngine:
    assert _engine is not None, "Call init_services() before using services"
    return _engine
