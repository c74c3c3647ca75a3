"""Tests for bigdream.config: layered settings resolution and persistence."""

import json

import pytest

from bigdream import config
from bigdream.config import (
    DEFAULT_BASE_URL,
    DEFAULT_MODEL,
    DEFAULT_MODELS,
    ConfigError,
    SettingsLoadError,
    SettingsOverride,
    _read_settings,
    generate_config,
    init_user_config,
    load_models,
    resolve_settings,
    save_user_settings,
    update_current_model,
    update_default_model,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@pytest.fixture
def user_dir(tmp_path, monkeypatch):
    """Point the user config directory into tmp_path."""
    xdg = tmp_path / "xdg"
    monkeypatch.setenv("XDG_CONFIG_HOME", str(xdg))
    return xdg / "bigdream"


@pytest.fixture
def project(tmp_path):
    path = tmp_path / "project"
    path.mkdir()
    return path


def _write_json(path, data):
    path.parent.mkdir(parents=True, exist_ok=True)
    text = data if isinstance(data, str) else json.dumps(data)
    path.write_text(text, encoding="utf-8")


def _user_file(user_dir):
    return user_dir / "settings.json"


def _project_file(project):
    return project / ".bigdream" / "settings.json"


# ---------------------------------------------------------------------------
# Precedence
# ---------------------------------------------------------------------------


def test_defaults_when_nothing_configured(user_dir, project):
    s = resolve_settings(base_dir=project, env={})
    assert s.api_key is None
    assert s.base_url == DEFAULT_BASE_URL
    assert s.model == DEFAULT_MODEL


def test_override_beats_everything(user_dir, project):
    _write_json(_user_file(user_dir), {"api_key": "user", "default_model": "u-model"})
    _write_json(_project_file(project), {"api_key": "proj", "current_model": "p-model"})
    env = {"BIGDREAM_API_KEY": "env", "BIGDREAM_MODEL": "e-model"}

    s = resolve_settings(
        SettingsOverride(api_key="cli", model="c-model"), base_dir=project, env=env
    )

    assert s.api_key == "cli"
    assert s.model == "c-model"


def test_env_beats_project_and_user(user_dir, project):
    _write_json(_user_file(user_dir), {"base_url": "https://user"})
    _write_json(_project_file(project), {"base_url": "https://proj"})

    s = resolve_settings(
        base_dir=project, env={"BIGDREAM_BASE_URL": "https://env"}
    )

    assert s.base_url == "https://env"


def test_legacy_env_names(user_dir, project):
    s = resolve_settings(
        base_dir=project,
        env={"GROK_API_KEY": "legacy-key", "GROK_BASE_URL": "https://legacy"},
    )
    assert s.api_key == "legacy-key"
    assert s.base_url == "https://legacy"

    s = resolve_settings(
        base_dir=project,
        env={"GROK_API_KEY": "legacy-key", "BIGDREAM_API_KEY": "new-key"},
    )
    assert s.api_key == "new-key"


def test_project_beats_user(user_dir, project):
    _write_json(_user_file(user_dir), {"default_model": "grok-3-latest"})
    _write_json(_project_file(project), {"current_model": "grok-3-fast"})

    assert resolve_settings(base_dir=project, env={}).model == "grok-3-fast"


def test_fields_resolve_independently(user_dir, project):
    _write_json(_user_file(user_dir), {"api_key": "user-key", "base_url": "https://user"})
    _write_json(_project_file(project), {"current_model": "grok-3-fast"})

    s = resolve_settings(
        SettingsOverride(base_url="https://cli"), base_dir=project, env={}
    )

    assert s.api_key == "user-key"
    assert s.base_url == "https://cli"
    assert s.model == "grok-3-fast"


def test_empty_values_fall_through(user_dir, project):
    _write_json(_user_file(user_dir), {"default_model": "grok-3-latest"})
    _write_json(_project_file(project), {"current_model": ""})

    s = resolve_settings(
        SettingsOverride(model=""), base_dir=project, env={"BIGDREAM_MODEL": ""}
    )

    assert s.model == "grok-3-latest"


@pytest.mark.parametrize(
    "content",
    [
        "{not json",
        "[1, 2, 3]",
        json.dumps({"current_model": 42}),
        json.dumps({"api_key": True}),
    ],
)
def test_broken_project_file_falls_through(user_dir, project, content):
    _write_json(_user_file(user_dir), {"default_model": "grok-3-latest", "api_key": "k"})
    _write_json(_project_file(project), content)

    s = resolve_settings(base_dir=project, env={})

    assert s.model == "grok-3-latest"
    assert s.api_key == "k"


def test_broken_user_file_falls_back_to_defaults(user_dir, project):
    _write_json(_user_file(user_dir), "{{{")
    s = resolve_settings(base_dir=project, env={})
    assert s.model == DEFAULT_MODEL


def test_unknown_keys_ignored(tmp_path):
    path = tmp_path / "settings.json"
    _write_json(path, {"current_model": "m", "theme": "dark"})
    assert _read_settings(path, config.PROJECT_KEYS) == {"current_model": "m"}


def test_read_settings_raises_on_bad_type(tmp_path):
    path = tmp_path / "settings.json"
    _write_json(path, {"models": "grok-4"})
    with pytest.raises(SettingsLoadError, match="models"):
        _read_settings(path, config.USER_KEYS)


def test_read_settings_missing_file(tmp_path):
    assert _read_settings(tmp_path / "nope.json", config.USER_KEYS) == {}


def test_uses_os_environ_by_default(user_dir, project, monkeypatch):
    monkeypatch.setenv("BIGDREAM_MODEL", "from-env")
    assert resolve_settings(base_dir=project).model == "from-env"


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


def test_load_models_default(user_dir):
    assert load_models() == DEFAULT_MODELS


def test_load_models_from_user_settings(user_dir):
    _write_json(_user_file(user_dir), {"models": ["a", " b ", ""]})
    assert load_models() == ["a", "b"]


def test_load_models_all_invalid(user_dir):
    _write_json(_user_file(user_dir), {"models": ["", 3]})
    assert load_models() == DEFAULT_MODELS


def test_describe_model():
    assert "grok-4" in config.describe_model("grok-4-latest")
    assert config.describe_model("custom") == "custom model"


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


def test_update_current_model_writes_project_scope(user_dir, project):
    _write_json(_project_file(project), {"api_key": "keep-me"})

    assert update_current_model("grok-3-fast", project)

    data = json.loads(_project_file(project).read_text())
    assert data == {"api_key": "keep-me", "current_model": "grok-3-fast"}
    assert not _user_file(user_dir).exists()
    assert resolve_settings(base_dir=project, env={}).model == "grok-3-fast"


def test_update_default_model_writes_user_scope(user_dir, project):
    assert update_default_model("grok-3-mini-fast")

    data = json.loads(_user_file(user_dir).read_text())
    assert data == {"default_model": "grok-3-mini-fast"}
    assert not _project_file(project).exists()
    assert resolve_settings(base_dir=project, env={}).model == "grok-3-mini-fast"


def test_update_replaces_broken_file(user_dir):
    _write_json(_user_file(user_dir), "garbage")
    assert update_default_model("grok-3-fast")
    assert json.loads(_user_file(user_dir).read_text()) == {"default_model": "grok-3-fast"}


def test_update_keeps_mistyped_and_unknown_keys(user_dir):
    _write_json(
        _user_file(user_dir),
        {"api_key": "sk-secret", "models": "grok-3", "_comment": "mine"},
    )

    assert update_default_model("grok-3-fast")

    data = json.loads(_user_file(user_dir).read_text())
    assert data == {
        "api_key": "sk-secret",
        "models": "grok-3",
        "_comment": "mine",
        "default_model": "grok-3-fast",
    }


def test_update_replaces_non_object_file(user_dir):
    _write_json(_user_file(user_dir), ["not", "an", "object"])
    assert save_user_settings(api_key="k1")
    assert json.loads(_user_file(user_dir).read_text()) == {"api_key": "k1"}


def test_save_user_settings(user_dir):
    _write_json(_user_file(user_dir), {"models": ["x"]})

    assert save_user_settings(api_key="k1")
    assert save_user_settings(base_url="https://b")

    data = json.loads(_user_file(user_dir).read_text())
    assert data == {"models": ["x"], "api_key": "k1", "base_url": "https://b"}


def test_save_user_settings_nothing_to_save(user_dir):
    assert save_user_settings() is False
    assert not _user_file(user_dir).exists()


def test_write_failure_is_a_warning(tmp_path, monkeypatch):
    blocker = tmp_path / "file"
    blocker.write_text("not a dir")
    monkeypatch.setenv("XDG_CONFIG_HOME", str(blocker))
    warnings = []
    monkeypatch.setattr(config.fmt, "warning", warnings.append)

    assert update_default_model("grok-3-fast") is False
    assert len(warnings) == 1
    assert "failed to save settings" in warnings[0]


# ---------------------------------------------------------------------------
# Template
# ---------------------------------------------------------------------------


def test_generate_config_is_valid_json():
    data = json.loads(generate_config())
    assert data["default_model"] == DEFAULT_MODEL
    assert data["models"] == DEFAULT_MODELS
    assert "api_key" not in data


def test_init_user_config(user_dir):
    path = init_user_config()
    assert path == _user_file(user_dir)
    assert json.loads(path.read_text())["base_url"] == DEFAULT_BASE_URL
    # Second call leaves the file alone
    assert init_user_config() is None


def test_init_user_config_write_failure(tmp_path, monkeypatch):
    blocker = tmp_path / "file"
    blocker.write_text("not a dir")
    monkeypatch.setenv("XDG_CONFIG_HOME", str(blocker))
    with pytest.raises(ConfigError):
        init_user_config()


def test_xdg_fallback(monkeypatch, tmp_path):
    monkeypatch.delenv("XDG_CONFIG_HOME", raising=False)
    monkeypatch.setenv("HOME", str(tmp_path))
    assert config.user_settings_path() == tmp_path / ".config" / "bigdream" / "settings.json"
