from __future__ import annotations

import pytest

from src.config import load_config

SETTINGS = """
poll:
  interval_seconds: 120
  startup_delay_seconds: 5
  max_concurrency: 2
  notify_timeout_seconds: 10
providers:
  order: [spx_page, tracking_api]
  timeout_seconds: 15
  failure_threshold: 3
  cooldown_seconds: 60
  user_agent: "test-agent"
  tracking_api:
    base_url: "${TEST_API_URL:-https://api.example/track}"
  spx_page:
    url: "https://spx.example/track"
    min_interval_seconds: 1
  rendered_page:
    url: "${TEST_RENDER_URL:-}"
tracking:
  min_code_length: 8
  max_code_length: 30
  status_keywords:
    delivered: ["recebido"]
telegram:
  enabled: "${TEST_TELEGRAM_ENABLED:-true}"
  bot_token: "${TEST_BOT_TOKEN:-}"
http:
  enabled: true
  host: 127.0.0.1
  port: "${TEST_PORT:-3000}"
storage:
  backend: sqlite
  path: data/test.db
logging:
  level: debug
"""


@pytest.fixture
def settings_file(tmp_path, monkeypatch):
    for var in ("TEST_API_URL", "TEST_RENDER_URL", "TEST_TELEGRAM_ENABLED", "TEST_BOT_TOKEN", "TEST_PORT"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("TEST_BOT_TOKEN", "123:abc")
    path = tmp_path / "settings.yaml"
    path.write_text(SETTINGS, encoding="utf-8")
    return path


def _load(path, tmp_path):
    return load_config(settings_path=path, env_path=tmp_path / "missing.env")


def test_loads_typed_sections(settings_file, tmp_path) -> None:
    config = _load(settings_file, tmp_path)

    assert config.poll.interval_seconds == 120
    assert config.poll.max_concurrency == 2
    assert config.providers.order == ["spx_page", "tracking_api"]
    assert config.providers.tracking_api_url == "https://api.example/track"
    assert config.providers.render_url == ""
    assert config.telegram.bot_token == "123:abc"
    assert config.telegram.enabled is True
    assert config.http.port == 3000
    assert config.storage.backend == "sqlite"
    assert config.log_level == "DEBUG"
    assert config.min_code_length == 8
    assert config.status_keywords == {"delivered": ["recebido"]}


def test_environment_overrides_defaults(settings_file, tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("TEST_PORT", "8080")
    monkeypatch.setenv("TEST_RENDER_URL", "https://render.example")
    config = _load(settings_file, tmp_path)
    assert config.http.port == 8080
    assert config.providers.render_url == "https://render.example"


def test_empty_token_rejected_when_telegram_enabled(settings_file, tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("TEST_BOT_TOKEN", "")
    with pytest.raises(ValueError, match="bot_token"):
        _load(settings_file, tmp_path)


def test_telegram_can_be_disabled_without_token(settings_file, tmp_path, monkeypatch) -> None:
    monkeypatch.delenv("TEST_BOT_TOKEN")
    monkeypatch.setenv("TEST_TELEGRAM_ENABLED", "false")
    assert _load(settings_file, tmp_path).telegram.enabled is False


def test_missing_section_names_it(tmp_path) -> None:
    path = tmp_path / "settings.yaml"
    path.write_text("poll: {}\n", encoding="utf-8")
    with pytest.raises(ValueError, match="providers"):
        _load(path, tmp_path)


def test_unknown_provider_rejected(settings_file, tmp_path) -> None:
    settings_file.write_text(
        settings_file.read_text(encoding="utf-8").replace("[spx_page, tracking_api]", "[carrier_pigeon]"),
        encoding="utf-8",
    )
    with pytest.raises(ValueError, match="carrier_pigeon"):
        _load(settings_file, tmp_path)


def test_missing_settings_file(tmp_path) -> None:
    with pytest.raises(FileNotFoundError):
        _load(tmp_path / "nope.yaml", tmp_path)
