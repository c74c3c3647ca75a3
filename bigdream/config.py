"""Settings loading, layered resolution and persistence for bigdream.

Reads JSON settings from ~/.config/bigdream/settings.json (user) and
<base_dir>/.bigdream/settings.json (project). Each of api_key, base_url and
model resolves independently with precedence:
CLI override > environment > project > user > built-in defaults.
"""

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from . import fmt
from .report import ConfigError, SettingsLoadError  # noqa: F401 - re-export

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "grok-4-latest"
DEFAULT_BASE_URL = "https://api.x.ai/v1"

DEFAULT_MODELS = [
    "grok-4-latest",
    "grok-3-latest",
    "grok-3-fast",
    "grok-3-mini-fast",
]

_MODEL_DESCRIPTIONS = {
    "grok-4-latest": "Latest grok-4 model (most capable)",
    "grok-3-latest": "Latest grok-3 model",
    "grok-3-fast": "Fast grok-3 variant",
    "grok-3-mini-fast": "Fastest grok-3 variant",
}

# Environment variables, in lookup order
ENV_API_KEY = ("BIGDREAM_API_KEY", "GROK_API_KEY")
ENV_BASE_URL = ("BIGDREAM_BASE_URL", "GROK_BASE_URL")
ENV_MODEL = ("BIGDREAM_MODEL",)

PROJECT_DIR_NAME = ".bigdream"
SETTINGS_FILE = "settings.json"


# --- Schema ---

USER_KEYS: dict[str, type] = {
    "api_key": str,
    "base_url": str,
    "default_model": str,
    "models": list,
}

PROJECT_KEYS: dict[str, type] = {
    "api_key": str,
    "base_url": str,
    "current_model": str,
}


@dataclass(frozen=True)
class SettingsOverride:
    """Call-site values (CLI flags) that beat every other layer."""

    api_key: str | None = None
    base_url: str | None = None
    model: str | None = None


@dataclass(frozen=True)
class EffectiveSettings:
    api_key: str | None
    base_url: str
    model: str


# --- Paths ---


def global_config_dir() -> Path:
    """Return the user config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "bigdream"
    return Path.home() / ".config" / "bigdream"


def user_settings_path() -> Path:
    return global_config_dir() / SETTINGS_FILE


def project_settings_path(base_dir: str | Path = ".") -> Path:
    return Path(base_dir).resolve() / PROJECT_DIR_NAME / SETTINGS_FILE


# --- Loading ---


def _validate_settings(settings: dict, schema: dict[str, type], source: str) -> dict:
    """Keep known keys with the right type; raise SettingsLoadError otherwise."""
    known = {}
    for key, value in settings.items():
        expected = schema.get(key)
        if expected is None:
            logger.debug("%s: ignoring unknown settings key %r", source, key)
            continue
        if not isinstance(value, expected) or isinstance(value, bool):
            raise SettingsLoadError(
                f"{source}: {key!r} expected {expected.__name__}, "
                f"got {type(value).__name__}"
            )
        known[key] = value
    return known


def _read_raw(path: Path) -> dict:
    """Load one settings file as-is. Returns {} if the file is missing."""
    if not path.is_file():
        return {}
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise SettingsLoadError(f"{path}: cannot read file: {e}") from e
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise SettingsLoadError(f"{path}: invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise SettingsLoadError(f"{path}: expected a JSON object at top level")
    return data


def _read_settings(path: Path, schema: dict[str, type]) -> dict:
    """Load and validate one settings file. Returns {} if the file is missing.

    Raises SettingsLoadError for unreadable or malformed files.
    """
    return _validate_settings(_read_raw(path), schema, str(path))


def _load_layer(path: Path, schema: dict[str, type]) -> dict:
    """Like _read_settings, but a broken file degrades to an empty layer."""
    try:
        return _read_settings(path, schema)
    except SettingsLoadError as e:
        logger.debug("falling back past broken settings layer: %s", e)
        return {}


def load_user_settings() -> dict:
    return _load_layer(user_settings_path(), USER_KEYS)


def load_project_settings(base_dir: str | Path = ".") -> dict:
    return _load_layer(project_settings_path(base_dir), PROJECT_KEYS)


# --- Resolution ---


def _from_env(env: Mapping[str, str], names: tuple[str, ...]) -> str | None:
    for name in names:
        value = env.get(name)
        if value:
            return value
    return None


def _first(*candidates):
    for value in candidates:
        if value:
            return value
    return None


def resolve_settings(
    override: SettingsOverride | None = None,
    *,
    base_dir: str | Path = ".",
    env: Mapping[str, str] | None = None,
) -> EffectiveSettings:
    """Resolve the effective credential, endpoint and model.

    Always returns a model and base URL: with nothing configured the
    built-in defaults apply. Broken settings files are skipped.
    """
    override = override or SettingsOverride()
    env = os.environ if env is None else env
    project = load_project_settings(base_dir)
    user = load_user_settings()

    api_key = _first(
        override.api_key,
        _from_env(env, ENV_API_KEY),
        project.get("api_key"),
        user.get("api_key"),
    )
    base_url = _first(
        override.base_url,
        _from_env(env, ENV_BASE_URL),
        project.get("base_url"),
        user.get("base_url"),
        DEFAULT_BASE_URL,
    )
    model = _first(
        override.model,
        _from_env(env, ENV_MODEL),
        project.get("current_model"),
        user.get("default_model"),
        DEFAULT_MODEL,
    )
    return EffectiveSettings(api_key=api_key, base_url=base_url, model=model)


def describe_model(model: str) -> str:
    return _MODEL_DESCRIPTIONS.get(model, f"{model} model")


def load_models() -> list[str]:
    """Model names offered by /models: user list if valid, else the built-ins."""
    models = load_user_settings().get("models")
    if models:
        valid = [m.strip() for m in models if isinstance(m, str) and m.strip()]
        if valid:
            return valid
        logger.debug("no valid models in user settings, using defaults")
    return list(DEFAULT_MODELS)


# --- Persistence ---


def _update_settings(path: Path, **updates) -> bool:
    """Read-modify-write one settings file. Last write wins; never raises.

    Only the updated keys change. Keys this program does not know, or
    holds with the wrong type, are written back untouched.
    """
    try:
        current = _read_raw(path)
    except SettingsLoadError as e:
        logger.debug("rewriting unreadable settings file: %s", e)
        current = {}
    current.update({k: v for k, v in updates.items() if v is not None})
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(current, indent=2) + "\n", encoding="utf-8")
    except OSError as e:
        fmt.warning(f"failed to save settings to {path}: {e}")
        return False
    logger.debug("updated %s: %s", path, sorted(updates))
    return True


def update_current_model(model: str, base_dir: str | Path = ".") -> bool:
    """Persist the model for this project."""
    return _update_settings(project_settings_path(base_dir), current_model=model)


def update_default_model(model: str) -> bool:
    """Persist the model used when no project setting exists."""
    return _update_settings(user_settings_path(), default_model=model)


def save_user_settings(api_key: str | None = None, base_url: str | None = None) -> bool:
    if api_key is None and base_url is None:
        return False
    return _update_settings(user_settings_path(), api_key=api_key, base_url=base_url)


def generate_config() -> str:
    """Return a template for the user settings file."""
    return (
        json.dumps(
            {
                "base_url": DEFAULT_BASE_URL,
                "default_model": DEFAULT_MODEL,
                "models": DEFAULT_MODELS,
            },
            indent=2,
        )
        + "\n"
    )


def init_user_config() -> Path | None:
    """Write the settings template unless a settings file already exists.

    Returns the path written, or None if one was already there.
    """
    path = user_settings_path()
    if path.exists():
        return None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(generate_config(), encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"cannot write {path}: {e}") from e
    return path
