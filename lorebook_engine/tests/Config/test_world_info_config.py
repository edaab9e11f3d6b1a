import pytest
from pydantic import ValidationError

from lorebook_engine.app.core.config import (
    WorldInfoSettings,
    clear_config_cache,
    load_world_info_config,
)

pytestmark = pytest.mark.unit

_ENV_NAMES = (
    "WORLD_INFO_SCAN_DEPTH",
    "WORLD_INFO_RECURSION_LIMIT",
    "WORLD_INFO_TOKEN_BUDGET",
    "WORLD_INFO_CASE_SENSITIVE",
    "WORLD_INFO_MATCH_WHOLE_WORDS",
    "WORLD_INFO_BOOK_ORDER",
    "TOKEN_ESTIMATOR_MODE",
    "TOKEN_CHAR_APPROX_DIVISOR",
)


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    for name in _ENV_NAMES:
        monkeypatch.delenv(name, raising=False)
    path = tmp_path / "config.txt"
    path.write_text(
        "[World-Info]\n"
        "scan_depth = 6\n"
        "recursion_limit = 1\n"
        "token_budget = 250\n"
        "case_sensitive = true\n"
        "match_whole_words = false\n"
        "book_order = character_first\n"
        "\n"
        "[Tokenizer]\n"
        "token_estimator_mode = char_approx\n"
        "token_char_approx_divisor = 3\n"
    )
    monkeypatch.setenv("WORLD_INFO_CONFIG_PATH", str(path))
    clear_config_cache()
    return path


def test_values_read_from_file(config_file):
    settings = load_world_info_config()
    assert settings.scan_depth == 6
    assert settings.recursion_limit == 1
    assert settings.token_budget == 250
    assert settings.case_sensitive is True
    assert settings.match_whole_words is False
    assert settings.book_order == "character_first"
    assert settings.token_estimator_mode == "char_approx"
    assert settings.token_char_approx_divisor == 3


def test_environment_overrides_file(config_file, monkeypatch):
    monkeypatch.setenv("WORLD_INFO_SCAN_DEPTH", "2")
    monkeypatch.setenv("WORLD_INFO_TOKEN_BUDGET", "unlimited")
    clear_config_cache()
    settings = load_world_info_config()
    assert settings.scan_depth == 2
    assert settings.token_budget is None
    assert settings.recursion_limit == 1


def test_result_is_cached_until_cleared(config_file, monkeypatch):
    first = load_world_info_config()
    monkeypatch.setenv("WORLD_INFO_RECURSION_LIMIT", "9")
    assert load_world_info_config() is first
    clear_config_cache()
    assert load_world_info_config().recursion_limit == 9


def test_missing_file_uses_defaults(tmp_path, monkeypatch):
    for name in _ENV_NAMES:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("WORLD_INFO_CONFIG_PATH", str(tmp_path / "absent.txt"))
    clear_config_cache()
    assert load_world_info_config() == WorldInfoSettings()


def test_invalid_value_raises(config_file, monkeypatch):
    monkeypatch.setenv("WORLD_INFO_BOOK_ORDER", "sideways")
    clear_config_cache()
    with pytest.raises(ValidationError):
        load_world_info_config()


def test_defaults():
    settings = WorldInfoSettings()
    assert settings.scan_depth == 3
    assert settings.recursion_limit == 3
    assert settings.token_budget == 500
    assert settings.match_whole_words is True
    assert settings.book_order == "global_first"
