"""Configuration for practice calls.

Settings live in a JSON file merged over defaults; the Gemini API key comes
from the environment or a key file, never from the JSON config.
"""

import json
import logging
import os
from pathlib import Path

logger = logging.getLogger(__name__)

CONFIG_DIR = Path.home() / ".config" / "practice-call"
CONFIG_FILE = CONFIG_DIR / "config.json"
GEMINI_KEY_FILE = Path.home() / ".config" / "gemini" / "api_key"

API_KEY_ENV_VARS = ("GEMINI_API_KEY", "API_KEY")

DEFAULT_CONFIG = {
    "model": "gemini-2.5-flash-native-audio-preview-09-2025",
    "voice": "Zephyr",
    "feedback_model": "gemini-2.5-flash",
    "recording_enabled": True,
    "recordings_dir": "~/Audio/practice-call/recordings",
    "log_dir": "~/Audio/practice-call/sessions",
    "audio_device": None,
    "aec_source": "echo-cancel-source",
    "mic_sample_rate": 16000,
    "connect_timeout": 15.0,
}


def load_config(path: Path | None = None) -> dict:
    """Load configuration, falling back to defaults for missing keys."""
    path = path or CONFIG_FILE
    try:
        if path.exists():
            with open(path) as f:
                return {**DEFAULT_CONFIG, **json.load(f)}
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("Ignoring unreadable config %s: %s", path, e)
    return dict(DEFAULT_CONFIG)


def save_config(config: dict, path: Path | None = None):
    """Save configuration."""
    path = path or CONFIG_FILE
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'w') as f:
        json.dump(config, f, indent=2)


def get_api_key(key_file: Path | None = None) -> str | None:
    """Get the Gemini API key from the environment or the key file."""
    for var in API_KEY_ENV_VARS:
        key = os.environ.get(var)
        if key:
            return key
    key_file = key_file or GEMINI_KEY_FILE
    if key_file.exists():
        key = key_file.read_text().strip()
        return key or None
    return None


def save_api_key(key: str, key_file: Path | None = None):
    """Store the Gemini API key with owner-only permissions."""
    key_file = key_file or GEMINI_KEY_FILE
    key_file.parent.mkdir(parents=True, exist_ok=True)
    key_file.write_text(key)
    key_file.chmod(0o600)
