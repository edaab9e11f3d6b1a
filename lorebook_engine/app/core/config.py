# config.py
# Description: Configuration settings for the world-info activation engine.
#
# Imports
import configparser
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Literal, Optional
from dotenv import load_dotenv
#
# 3rd-party Libraries
from loguru import logger
from pydantic import BaseModel, Field, ValidationError, field_validator
#
########################################################################################################################
#
# Functions:

# Section/key in config.txt -> environment variable that overrides it
_CONFIG_KEYS: Dict[str, tuple] = {
    "scan_depth": ("World-Info", "WORLD_INFO_SCAN_DEPTH"),
    "recursion_limit": ("World-Info", "WORLD_INFO_RECURSION_LIMIT"),
    "token_budget": ("World-Info", "WORLD_INFO_TOKEN_BUDGET"),
    "case_sensitive": ("World-Info", "WORLD_INFO_CASE_SENSITIVE"),
    "match_whole_words": ("World-Info", "WORLD_INFO_MATCH_WHOLE_WORDS"),
    "book_order": ("World-Info", "WORLD_INFO_BOOK_ORDER"),
    "token_estimator_mode": ("Tokenizer", "TOKEN_ESTIMATOR_MODE"),
    "token_char_approx_divisor": ("Tokenizer", "TOKEN_CHAR_APPROX_DIVISOR"),
}

_UNLIMITED_MARKERS = {"", "none", "null", "unlimited", "off"}


class WorldInfoSettings(BaseModel):
    """Engine-wide defaults. Per-call arguments and per-entry overrides win over these."""
    scan_depth: int = Field(default=3, ge=0, description="Most-recent turns scanned for keys")
    recursion_limit: int = Field(default=3, ge=0, description="Recursive scanning rounds after the primary scan")
    token_budget: Optional[int] = Field(default=500, ge=0, description="Injected size cap; None disables trimming")
    case_sensitive: bool = False
    match_whole_words: bool = True
    book_order: Literal["global_first", "character_first"] = "global_first"
    token_estimator_mode: Literal["whitespace", "char_approx", "chars"] = "whitespace"
    token_char_approx_divisor: int = Field(default=4, ge=1)

    @field_validator("token_budget", mode="before")
    @classmethod
    def parse_unlimited_budget(cls, v):
        if isinstance(v, str) and v.strip().lower() in _UNLIMITED_MARKERS:
            return None
        return v

    @field_validator("book_order", "token_estimator_mode", mode="before")
    @classmethod
    def lower_choice(cls, v):
        if isinstance(v, str):
            return v.strip().lower()
        return v


def _project_root() -> Path:
    # __file__ is .../lorebook_engine/app/core/config.py
    return Path(__file__).resolve().parent.parent.parent


def _load_env_files() -> None:
    """Load .env files if present. Explicit environment variables are never replaced."""
    project_root = _project_root()
    candidate_env_paths = [
        project_root / '.env',
        project_root / '.ENV',
        project_root / 'Config_Files' / '.env',
        project_root / 'Config_Files' / '.ENV',
    ]
    for p in candidate_env_paths:
        if p.exists():
            logger.debug(f"Loading environment variables from: {p}")
            load_dotenv(dotenv_path=str(p), override=False)


def _config_path() -> Path:
    override = os.getenv("WORLD_INFO_CONFIG_PATH")
    if override:
        return Path(override)
    return _project_root() / 'Config_Files' / 'config.txt'


def _read_config_file(path: Path) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    if not path.exists():
        logger.warning(f"World-info config not found at {path}; using built-in defaults")
        return values

    parser = configparser.ConfigParser()
    try:
        parser.read(path)
    except configparser.Error as e:
        logger.error(f"Error parsing config file {path}: {e}")
        raise

    for key, (section, _env_name) in _CONFIG_KEYS.items():
        if parser.has_option(section, key):
            values[key] = parser.get(section, key)
    return values


@lru_cache(maxsize=1)
def load_world_info_config() -> WorldInfoSettings:
    """
    Load engine settings.

    Priority order: environment variables > config.txt > defaults.
    The result is cached; call clear_config_cache() after changing the environment.
    """
    _load_env_files()
    path = _config_path()
    values = _read_config_file(path)

    for key, (_section, env_name) in _CONFIG_KEYS.items():
        env_value = os.getenv(env_name)
        if env_value is not None:
            values[key] = env_value

    try:
        settings = WorldInfoSettings(**values)
    except ValidationError as e:
        logger.error(f"Invalid world-info configuration ({path}): {e}")
        raise

    logger.debug(f"World-info settings loaded: {settings.model_dump()}")
    return settings


def clear_config_cache() -> None:
    """Clear cached configuration loaders (for tests or dynamic reloads)."""
    load_world_info_config.cache_clear()

#
# End of config.py
#######################################################################################################################
