"""Load imibot configuration from ~/.imibot/config.json."""

from __future__ import annotations

import json
from pathlib import Path

from imibot.config.schema import Config
from imibot.logging import get_logger

logger = get_logger(__name__)


def get_config_path() -> Path:
    return Path.home() / ".imibot" / "config.json"


def load_config(config_path: Path | None = None) -> Config:
    """Load configuration from *config_path*, falling back to defaults.

    Generation toggles always come from the environment unless the file sets them.
    """
    path = config_path or get_config_path()
    if not path.exists():
        return Config()
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("config_load_failed", path=str(path), error=str(e))
        return Config()
    return Config.model_validate(data)


def save_config(config: Config, config_path: Path | None = None) -> None:
    path = config_path or get_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    data = config.model_dump(by_alias=True)
    path.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
