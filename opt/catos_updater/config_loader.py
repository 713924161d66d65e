"""
Dynamic Configuration Loader for the CatOS update client.

This module provides runtime configuration loading from JSON files with:
- Default values if files don't exist
- Caching with ability to reload
- Path creation on save
"""

import os
import json
import logging
import tempfile
from typing import Dict, Any, Optional
from pathlib import Path

logger = logging.getLogger(__name__)

# --- Configuration Directory Paths ---
CONFIG_BASE_DIR = '/etc/catos'
CONFIG_DIR = os.path.join(CONFIG_BASE_DIR, 'config')

# --- Configuration File Paths ---
SYSTEM_CONFIG_PATH = os.path.join(CONFIG_DIR, 'system.json')
UPDATER_CONFIG_PATH = os.path.join(CONFIG_DIR, 'updater.json')
UPDATE_STATE_PATH = os.path.join(CONFIG_DIR, 'update.json')

# --- Other Static Paths ---
VERSION_FILE_PATH = '/etc/catos-version'

# --- Default Configurations ---
DEFAULT_SYSTEM_CONFIG = {
    'host': '127.0.0.1',
    'port': 5080,
    'log_level': 'INFO'
}

# Default updater configuration
DEFAULT_UPDATER_CONFIG = {
    'manifest_url': 'https://teslakitty-cdn.netlify.app/cat-os-update/update_manifest.json',
    'download_base_url': 'https://teslakitty-cdn.netlify.app/cat-os-update/',
    'version_file': VERSION_FILE_PATH,
    'download_dir': os.path.join(tempfile.gettempdir(), 'catos_updates'),
    'staging_dir': '/tmp/catos_update_temp',
    'install_script': 'scripts/install_update.sh',
    'privilege_strategy': 'auto',  # 'auto', 'direct', 'sudo' or 'pkexec'
    'manifest_timeout': 30,
    'download_timeout': 1200,
    'install_timeout': 1800,
    'chunk_size': 65536,
    'post_install_check': 'none'  # 'none' or 'version_file'
}

DEFAULT_UPDATE_STATE = {
    'last_check': None,
    'last_update': None,
    'last_result': None
}

# --- Configuration Cache ---
_config_cache: Dict[str, Any] = {}


def _load_config(path: str, default: Dict[str, Any]) -> Dict[str, Any]:
    """
    Load configuration from a JSON file merged over defaults.

    Args:
        path: The configuration file path
        default: Default configuration values

    Returns:
        dict: The loaded configuration merged with defaults
    """
    config = default.copy()

    if os.path.exists(path):
        try:
            with open(path, 'r') as f:
                loaded = json.load(f)
            if isinstance(loaded, dict):
                config.update(loaded)
            else:
                logger.warning(f"Ignoring config at {path}: top level is not an object")
        except Exception as e:
            logger.warning(f"Error loading config from {path}: {e}")

    return config


def _save_config(path: str, config: Dict[str, Any], permissions: int = 0o644) -> bool:
    """
    Save configuration to a JSON file.

    Args:
        path: Path to save the configuration
        config: Configuration dictionary to save
        permissions: File permissions (default 0o644)

    Returns:
        bool: True if saved successfully
    """
    try:
        Path(path).parent.mkdir(parents=True, exist_ok=True)

        with open(path, 'w') as f:
            json.dump(config, f, indent=2)

        os.chmod(path, permissions)
        return True
    except Exception as e:
        logger.error(f"Failed to save config to {path}: {e}")
        return False


def get_system_config(force_reload: bool = False) -> Dict[str, Any]:
    """
    Get system configuration (HTTP surface settings).

    Args:
        force_reload: If True, bypass cache and reload from disk

    Returns:
        dict: System configuration with keys:
            - host: Interface the UI-facing API binds to
            - port: Port the UI-facing API listens on
            - log_level: Root logging level name
    """
    cache_key = 'system'

    if not force_reload and cache_key in _config_cache:
        return _config_cache[cache_key]

    config = _load_config(SYSTEM_CONFIG_PATH, DEFAULT_SYSTEM_CONFIG)

    _config_cache[cache_key] = config
    return config


def get_updater_config(force_reload: bool = False) -> Dict[str, Any]:
    """
    Get updater configuration.

    Args:
        force_reload: If True, bypass cache and reload from disk

    Returns:
        dict: Updater configuration with keys:
            - manifest_url: URL of the remote update manifest
            - download_base_url: Prefix joined with the package filename
            - version_file: Local file holding the installed version
            - download_dir: Directory packages are downloaded into
            - staging_dir: Directory packages are extracted into
            - install_script: Entry point path relative to the staging dir
            - privilege_strategy: How the entry point gets elevated rights
            - manifest_timeout / download_timeout / install_timeout: Seconds
            - chunk_size: Download chunk size in bytes
            - post_install_check: 'none' or 'version_file'
    """
    cache_key = 'updater'

    if not force_reload and cache_key in _config_cache:
        return _config_cache[cache_key]

    config = _load_config(UPDATER_CONFIG_PATH, DEFAULT_UPDATER_CONFIG)

    _config_cache[cache_key] = config
    return config


def load_update_state() -> Dict[str, Any]:
    """Loads the persisted update record (last check, last update, last result)."""
    return _load_config(UPDATE_STATE_PATH, DEFAULT_UPDATE_STATE)


def save_update_state(state: Dict[str, Any]) -> bool:
    """Saves the update record."""
    full_state = DEFAULT_UPDATE_STATE.copy()
    full_state.update(state)
    return _save_config(UPDATE_STATE_PATH, full_state)


def clear_cache(config_type: Optional[str] = None):
    """
    Clear the configuration cache.

    Args:
        config_type: Specific configuration type to clear, or None to clear all
    """
    global _config_cache

    if config_type:
        _config_cache.pop(config_type, None)
    else:
        _config_cache = {}
