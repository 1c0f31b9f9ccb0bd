"""Pytest configuration and shared fixtures."""

import os
import sys
from pathlib import Path

import pytest

# Add project paths
PROJECT_ROOT = Path(__file__).parent.parent
TESTS_DIR = PROJECT_ROOT / "tests"
sys.path.insert(0, str(PROJECT_ROOT))
sys.path.insert(0, str(TESTS_DIR))

from gmeet_fakes import FakeLauncher, FakePage, FakeSynthesizer  # noqa: E402

from tool_modules.aa_gmeet.src import config as gmeet_config  # noqa: E402
from tool_modules.aa_gmeet.src.config import GmeetConfig  # noqa: E402


@pytest.fixture
def project_root():
    """Return the project root directory."""
    return PROJECT_ROOT


@pytest.fixture(autouse=True)
def setup_env(tmp_path):
    """Isolate every test from the user's environment and ~/.gmeet-mcp."""
    original_env = dict(os.environ)

    os.environ.setdefault("TESTING", "1")
    os.environ["GMEET_HOME"] = str(tmp_path / "gmeet-home")
    for key in (
        "AUDIO_PROVIDER",
        "OPENAI_API_KEY",
        "GROQ_API_KEY",
        "AUDIO_BASE_URL",
        "TTS_VOICE",
        "TTS_MODEL",
        "CHROME_EXECUTABLE_PATH",
        "CHROME_USER_DATA_DIR",
        "GMEET_HEADLESS",
        "LOG_LEVEL",
    ):
        os.environ.pop(key, None)
    gmeet_config.reset_config()

    yield

    gmeet_config.reset_config()
    os.environ.clear()
    os.environ.update(original_env)


@pytest.fixture
def gmeet_config_fast(tmp_path):
    """Config with a short takeover retry delay."""
    return GmeetConfig(
        audio_api_key="test-key",
        chrome_user_data_dir=tmp_path / "chrome-profile",
        takeover_attempts=3,
        takeover_retry_delay_ms=10,
        browser_close_timeout=1.0,
    )


@pytest.fixture
def fake_page():
    """Simulated Meet page."""
    return FakePage()


@pytest.fixture
def fake_launcher():
    return FakeLauncher()


@pytest.fixture
def fake_synthesizer():
    return FakeSynthesizer()
