import json
import os
from typing import Any, Dict

CONFIG_PATH = "config.json"

# Default configuration values
DEFAULT_CONFIG = {
    # Spotify OAuth client (PKCE, no client secret)
    "spotify_client_id": "",
    "spotify_accounts_base_url": "https://accounts.spotify.com",
    "spotify_api_base_url": "https://api.spotify.com/v1",

    # Where the session triple (access_token, refresh_token, expires_at) lives
    "session_store": "file",
    "session_store_path": "data/spotify_session.json",

    # Transport
    "request_timeout": 30,
    "expiry_skew_seconds": 0,

    # Backoff for transient API failures (transport errors, 429, 5xx)
    "retry_max_attempts": 3,
    "retry_base_delay": 1.0,
    "retry_max_delay": 30.0,
    "retry_jitter": 0.25,

    "profile": "light",
}

# Profile definitions
CONFIG_PROFILES = {
    "light": {
        "retry_max_attempts": 3,
        "retry_base_delay": 1.0,
        "retry_max_delay": 30.0,
    },
    "advanced": {
        "retry_max_attempts": 6,
        "retry_base_delay": 2.0,
        "retry_max_delay": 60.0,
    },
    "minimal": {
        "retry_max_attempts": 1,
        "retry_base_delay": 0.5,
        "retry_max_delay": 1.0,
    },
}

# Validation rules for config fields
CONFIG_SCHEMA = {
    "spotify_client_id": {"type": str, "required": False},
    "spotify_accounts_base_url": {"type": str, "required": False},
    "spotify_api_base_url": {"type": str, "required": False},

    "session_store": {"type": str, "required": False, "choices": ["file", "memory"]},
    "session_store_path": {"type": str, "required": False},

    "request_timeout": {"type": (int, float), "required": False, "min": 1, "max": 300},
    "expiry_skew_seconds": {"type": (int, float), "required": False, "min": 0, "max": 600},

    "retry_max_attempts": {"type": int, "required": False, "min": 1, "max": 10},
    "retry_base_delay": {"type": (int, float), "required": False, "min": 0, "max": 60},
    "retry_max_delay": {"type": (int, float), "required": False, "min": 0, "max": 300},
    "retry_jitter": {"type": (int, float), "required": False, "min": 0, "max": 5},

    "profile": {"type": str, "required": False, "choices": ["light", "advanced", "minimal"]},
}


def load_config() -> Dict[str, Any]:
    """Load configuration from file, applying defaults for missing fields."""
    if not os.path.exists(CONFIG_PATH):
        raise FileNotFoundError(f"Config file {CONFIG_PATH} not found.")

    with open(CONFIG_PATH, "r", encoding="utf-8") as f:
        config = json.load(f)

    # Apply defaults for missing fields
    for key, value in DEFAULT_CONFIG.items():
        if key not in config:
            config[key] = value

    return config


def save_config(config: Dict[str, Any]) -> bool:
    """Save configuration to file."""
    try:
        with open(CONFIG_PATH, "w", encoding="utf-8") as f:
            json.dump(config, f, indent=2)
        return True
    except OSError as e:
        raise IOError(f"Failed to save config: {e}") from e


def validate_config(config: Dict[str, Any]) -> tuple[bool, list[str]]:
    """
    Validate configuration against schema.
    Returns (is_valid, list_of_errors).
    """
    errors = []

    for key, rules in CONFIG_SCHEMA.items():
        if rules.get("required", False) and key not in config:
            errors.append(f"Missing required field: {key}")
            continue

        if key not in config:
            continue

        value = config[key]

        # bool is an int subclass; never accept it for numeric fields
        expected_type = rules.get("type")
        if expected_type and (not isinstance(value, expected_type) or (isinstance(value, bool) and expected_type is not bool)):
            type_names = expected_type.__name__ if not isinstance(expected_type, tuple) else "/".join(t.__name__ for t in expected_type)
            errors.append(f"Field '{key}' must be {type_names}, got {type(value).__name__}")
            continue

        if "choices" in rules and value not in rules["choices"]:
            errors.append(f"Field '{key}' must be one of {rules['choices']}, got '{value}'")

        if isinstance(value, (int, float)):
            if "min" in rules and value < rules["min"]:
                errors.append(f"Field '{key}' must be >= {rules['min']}, got {value}")
            if "max" in rules and value > rules["max"]:
                errors.append(f"Field '{key}' must be <= {rules['max']}, got {value}")

    if not errors and config.get("retry_base_delay", 0) > config.get("retry_max_delay", float("inf")):
        errors.append("Field 'retry_base_delay' must not exceed 'retry_max_delay'")

    return len(errors) == 0, errors


def update_config(key: str, value: Any) -> tuple[bool, str]:
    """
    Update a single config field with validation.
    Returns (success, message).
    """
    config = load_config()

    if key not in CONFIG_SCHEMA:
        return False, f"Unknown config key: {key}"

    test_config = config.copy()
    test_config[key] = value

    is_valid, errors = validate_config(test_config)
    if not is_valid:
        return False, f"Validation failed: {', '.join(errors)}"

    config[key] = value
    save_config(config)

    return True, f"Updated '{key}' to '{value}'"


def apply_profile_settings(config: Dict[str, Any], profile_name: str) -> Dict[str, Any]:
    """Return a copy of config with the profile's retry settings applied."""
    if profile_name not in CONFIG_PROFILES:
        raise KeyError(f"Unknown profile: {profile_name}. Available: {list(CONFIG_PROFILES.keys())}")

    updated = dict(config)
    updated.update(CONFIG_PROFILES[profile_name])
    updated["profile"] = profile_name
    return updated


def apply_config_profile(profile_name: str) -> tuple[bool, str]:
    """
    Apply a configuration profile, updating relevant settings.
    Returns (success, message).
    """
    if profile_name not in CONFIG_PROFILES:
        return False, f"Unknown profile: {profile_name}. Available: {list(CONFIG_PROFILES.keys())}"

    config = apply_profile_settings(load_config(), profile_name)

    is_valid, errors = validate_config(config)
    if not is_valid:
        return False, f"Profile validation failed: {', '.join(errors)}"

    save_config(config)
    return True, f"Applied profile '{profile_name}' successfully"


def list_profiles() -> Dict[str, Dict[str, Any]]:
    """Return all available profiles and their settings."""
    return CONFIG_PROFILES.copy()

