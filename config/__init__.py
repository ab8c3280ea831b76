"""Configuration management for the round coordinator."""

from .config import (
    LedgerConfig,
    ProverConfig,
    RoundConfig,
    SystemConfig,
    config_to_dict,
    load_config,
    save_config,
)

__all__ = [
    'LedgerConfig',
    'ProverConfig',
    'RoundConfig',
    'SystemConfig',
    'config_to_dict',
    'load_config',
    'save_config',
]
