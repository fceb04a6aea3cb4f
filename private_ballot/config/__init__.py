"""Configuration management for the private-ballot protocol."""

from .config import (
    SystemConfig,
    LedgerConfig,
    ProtocolConfig,
    QuorumConfig,
    load_config,
    save_config,
)

__all__ = ['SystemConfig', 'LedgerConfig', 'ProtocolConfig', 'QuorumConfig',
           'load_config', 'save_config']
