"""
Shared helper functions and utilities.

This module contains logging setup and configuration handling used across
the project.
"""

import copy
import json
import logging
import os

VALID_SENSORS = ("monocular", "stereo", "rgbd")


def setup_logging(level=logging.INFO):
    """Set up logging configuration.

    Args:
        level: Logging level (default: INFO)
    """
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    logger = logging.getLogger(__name__)
    logger.info("Logging initialized")


def _merge(base, override):
    """Recursively merge ``override`` into ``base`` (nested dicts merge)."""
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        else:
            base[key] = value
    return base


DEFAULT_CONFIG = {
    # Sensor modality: 'monocular', 'stereo' or 'rgbd'
    'sensor': 'monocular',

    # Map persistence
    'map_file': None,
    'only_relocalization': False,  # Load map_file at startup and freeze it

    # Pending mode requests applied on the first frame
    'activate_localization_mode': False,
    'deactivate_localization_mode': False,

    # Place-recognition vocabulary (must be readable when set)
    'vocabulary_file': None,

    # Polling (seconds)
    'mode_poll_interval': 0.001,  # Waiting for mapping to pause
    'shutdown_poll_interval': 0.005,  # Waiting for stages to finish
    'stage_poll_interval': 0.003,  # Idle sleep inside a stage
    'reconstruction_poll_interval': 0.03,  # Waiting for keyframe reload
    'stage_timeout': None,  # None = wait forever

    # Landmark depth bounds
    'mapping': {
        'scale_factor': 1.2,
        'n_levels': 8,
    },

    # Off-screen map viewer
    'use_viewer': False,
    'viewer': {
        'size': [500, 500],
        'scale': 50.0,  # Pixels per meter
        'refresh_interval': 0.1,
    },
}


def get_config(config_path=None):
    """Load configuration from file or return defaults.

    Args:
        config_path: Path to JSON configuration file (optional)

    Returns:
        dict: Configuration dictionary
    """
    config = copy.deepcopy(DEFAULT_CONFIG)

    if config_path and os.path.exists(config_path):
        try:
            with open(config_path, 'r') as f:
                loaded_config = json.load(f)
            _merge(config, loaded_config)
            logging.info(f"Configuration loaded from {config_path}")
        except (OSError, ValueError) as e:
            logging.warning(f"Failed to load config from {config_path}: {e}")
    elif config_path:
        logging.warning(f"Config file {config_path} not found, using defaults")

    return config


def save_config(config, config_path):
    """Save configuration to file.

    Args:
        config: Configuration dictionary
        config_path: Path to save configuration file

    Returns:
        bool: True if save successful, False otherwise
    """
    try:
        with open(config_path, 'w') as f:
            json.dump(config, f, indent=4)
        logging.info(f"Configuration saved to {config_path}")
        return True
    except OSError as e:
        logging.error(f"Failed to save config to {config_path}: {e}")
        return False


def validate_config(config):
    """Validate configuration parameters.

    Args:
        config: Configuration dictionary

    Returns:
        bool: True if valid, False otherwise
    """
    if config.get('sensor') not in VALID_SENSORS:
        logging.error(f"Invalid sensor '{config.get('sensor')}', expected one of {VALID_SENSORS}")
        return False

    for key in ('mode_poll_interval', 'shutdown_poll_interval',
                'stage_poll_interval', 'reconstruction_poll_interval'):
        if config.get(key, 0) <= 0:
            logging.error(f"{key} must be positive")
            return False

    timeout = config.get('stage_timeout')
    if timeout is not None and timeout <= 0:
        logging.error("stage_timeout must be positive or null")
        return False

    if config.get('only_relocalization') and not config.get('map_file'):
        logging.error("only_relocalization requires map_file")
        return False

    mapping = config.get('mapping', {})
    if mapping.get('scale_factor', 1.2) <= 1.0 or mapping.get('n_levels', 8) < 1:
        logging.error("mapping.scale_factor must be > 1 and mapping.n_levels >= 1")
        return False

    logging.info("Configuration validated successfully")
    return True
