"""
Meet voice bridge configuration.

Centralizes configuration for the bridge:
- Audio provider selection (OpenAI or Groq) and TTS voice/model
- Chrome executable and profile locations
- Takeover retry policy

Resolution order (first match wins): environment variables,
``~/.gmeet-mcp/config.yaml`` (or ``config.json``; YAML is a superset),
built-in defaults.
"""

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml

from tool_modules.common import PROJECT_ROOT, get_gmeet_home

__project_root__ = PROJECT_ROOT

logger = logging.getLogger(__name__)

PROVIDER_DEFAULTS: dict[str, dict[str, str]] = {
    "openai": {
        "base_url": "https://api.openai.com/v1",
        "tts_voice": "alloy",
        "tts_model": "gpt-4o-mini-tts",
    },
    "groq": {
        "base_url": "https://api.groq.com/openai/v1",
        "tts_voice": "austin",
        "tts_model": "canopylabs/orpheus-v1-english",
    },
}

LOG_LEVELS = ("debug", "info", "warning", "error")


def config_file_path() -> Path:
    home = get_gmeet_home()
    for name in ("config.yaml", "config.yml"):
        if (home / name).exists():
            return home / name
    return home / "config.json"


def load_config_file(path: Optional[Path] = None) -> dict[str, Any]:
    """Load the YAML/JSON config file; a missing or unreadable file yields {}."""
    path = path or config_file_path()
    if not path.exists():
        return {}
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except (yaml.YAMLError, OSError) as e:
        logger.warning(f"Ignoring unreadable config file {path}: {e}")
        return {}
    if not isinstance(data, dict):
        logger.warning(f"Ignoring config file {path}: top level is not an object")
        return {}
    return data


def _env_bool(env: Mapping[str, str], name: str) -> Optional[bool]:
    val = env.get(name)
    if val is None:
        return None
    return val.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class GmeetConfig:
    """Main configuration for the Meet voice bridge."""

    # Audio (TTS) provider
    audio_provider: str = "openai"  # openai, groq
    audio_api_key: str = ""
    audio_base_url: str = PROVIDER_DEFAULTS["openai"]["base_url"]
    tts_voice: str = PROVIDER_DEFAULTS["openai"]["tts_voice"]
    tts_model: str = PROVIDER_DEFAULTS["openai"]["tts_model"]
    tts_timeout: float = 60.0

    # Browser
    chrome_executable_path: Optional[str] = None
    chrome_user_data_dir: Path = field(
        default_factory=lambda: get_gmeet_home() / "chrome-profile"
    )
    headless: bool = True

    # Audio takeover
    sample_rate: int = 48000
    takeover_attempts: int = 3
    takeover_retry_delay_ms: int = 3000

    # Teardown
    browser_close_timeout: float = 10.0

    log_level: str = "info"

    def ensure_directories(self) -> None:
        """Create all required directories."""
        Path(self.chrome_user_data_dir).expanduser().mkdir(parents=True, exist_ok=True)

    @property
    def speech_configured(self) -> bool:
        return bool(self.audio_api_key)

    @classmethod
    def from_sources(
        cls,
        file_data: Optional[dict[str, Any]] = None,
        environ: Optional[dict[str, str]] = None,
    ) -> "GmeetConfig":
        """Build a config from the config file contents and the environment."""
        file_data = file_data if file_data is not None else load_config_file()
        env = environ if environ is not None else os.environ

        # Prefer Groq when its key is present or explicitly requested
        groq_key = env.get("GROQ_API_KEY", "")
        provider = (env.get("AUDIO_PROVIDER") or file_data.get("audio_provider") or "").lower()
        if groq_key and not provider:
            provider = "groq"
        if provider not in PROVIDER_DEFAULTS:
            provider = "openai"
        defaults = PROVIDER_DEFAULTS[provider]

        if provider == "groq":
            api_key = groq_key or file_data.get("audio_api_key", "")
        else:
            api_key = env.get("OPENAI_API_KEY") or file_data.get("audio_api_key", "")

        known = {f.name for f in fields(cls)}
        extra = {
            k: v
            for k, v in file_data.items()
            if k in known and k not in ("audio_provider", "audio_api_key")
        }

        config = cls(**extra)
        config.audio_provider = provider
        config.audio_api_key = api_key
        config.audio_base_url = (
            env.get("AUDIO_BASE_URL") or file_data.get("audio_base_url") or defaults["base_url"]
        )
        config.tts_voice = env.get("TTS_VOICE") or file_data.get("tts_voice") or defaults["tts_voice"]
        config.tts_model = env.get("TTS_MODEL") or file_data.get("tts_model") or defaults["tts_model"]
        config.chrome_executable_path = (
            env.get("CHROME_EXECUTABLE_PATH") or file_data.get("chrome_executable_path") or None
        )
        user_data_dir = env.get("CHROME_USER_DATA_DIR") or file_data.get("chrome_user_data_dir")
        if user_data_dir:
            config.chrome_user_data_dir = Path(os.path.expanduser(user_data_dir))
        headless = _env_bool(env, "GMEET_HEADLESS")
        if headless is not None:
            config.headless = headless

        level = (env.get("LOG_LEVEL") or file_data.get("log_level") or "info").lower()
        if level == "warn":
            level = "warning"
        config.log_level = level if level in LOG_LEVELS else "info"
        return config


# Global config instance
_config: Optional[GmeetConfig] = None


def get_config() -> GmeetConfig:
    """Get the global config instance."""
    global _config
    if _config is None:
        _config = GmeetConfig.from_sources()
        _config.ensure_directories()
    return _config


def update_config(**kwargs) -> GmeetConfig:
    """Update config with new values."""
    config = get_config()
    for key, value in kwargs.items():
        if hasattr(config, key):
            setattr(config, key, value)
        else:
            logger.warning(f"Unknown config key ignored: {key}")
    return config


def reset_config() -> None:
    """Drop the cached config so the next get_config() reloads it."""
    global _config
    _config = None
