import os
from pathlib import Path

import yaml


def _project_root() -> Path:
    # .../<root>/rag_agent/utils/config_loader.py -> <root>
    return Path(__file__).resolve().parents[2]


def load_config(config_path: str | None = None) -> dict:
    """
    Load the YAML config.

    Resolution order: explicit argument, CONFIG_PATH env var, then
    rag_agent/config/config.yaml. Relative paths are resolved against the
    project root.
    """
    env_path = os.getenv("CONFIG_PATH", None)

    if config_path is None:
        config_path = env_path or str(_project_root() / "rag_agent" / "config" / "config.yaml")

    path = Path(config_path)

    if not path.is_absolute():
        path = _project_root() / path
    if not path.exists():
        raise FileNotFoundError(f"Config file not found at {path}")
    with open(path, "r", encoding="utf-8") as file:
        return yaml.safe_load(file) or {}


def resolve_path(relative: str) -> Path:
    """Resolve a storage path from the config against the project root."""
    path = Path(relative)
    return path if path.is_absolute() else _project_root() / path
