from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Dict, Any

import yaml

from private_ballot.errors import ConfigError

LEDGER_BACKENDS = ("memory", "sqlite")


@dataclass
class LedgerConfig:
    backend: str = "memory"
    database_path: Path = field(default_factory=lambda: Path("data/ledger.db"))
    busy_timeout: float = 30.0

    def __post_init__(self):
        self.database_path = Path(self.database_path)
        if self.backend not in LEDGER_BACKENDS:
            raise ConfigError(
                f"Unknown ledger backend '{self.backend}', expected one of {LEDGER_BACKENDS}")
        if self.busy_timeout <= 0:
            raise ConfigError("busy_timeout must be positive")


@dataclass
class ProtocolConfig:
    max_options: int = 255
    nullifier_nonce: int = 0
    max_tally_value: int = 10_000

    def __post_init__(self):
        if not 1 <= self.max_options <= 255:
            raise ConfigError("max_options must be in [1, 255]")
        if not 0 <= self.nullifier_nonce < 2**64:
            raise ConfigError("nullifier_nonce must fit in a u64")
        if self.max_tally_value < 0:
            raise ConfigError("max_tally_value must be non-negative")


@dataclass
class QuorumConfig:
    num_members: int = 3
    threshold: int = 2

    def __post_init__(self):
        if self.num_members < 1:
            raise ConfigError("Quorum needs at least one member")
        if not 1 <= self.threshold <= self.num_members:
            raise ConfigError(
                f"Quorum threshold {self.threshold} must be in [1, {self.num_members}]")


@dataclass
class SystemConfig:
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    protocol: ProtocolConfig = field(default_factory=ProtocolConfig)
    quorum: QuorumConfig = field(default_factory=QuorumConfig)

    log_dir: Path = field(default_factory=lambda: Path("logs"))
    results_dir: Path = field(default_factory=lambda: Path("results"))
    log_level: str = "INFO"
    enable_performance_monitoring: bool = True

    def __post_init__(self):
        self.log_dir = Path(self.log_dir)
        self.results_dir = Path(self.results_dir)
        self.log_level = str(self.log_level).upper()

    def ensure_directories(self):
        """Create log and result directories (and the ledger's parent dir for sqlite)"""
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.results_dir.mkdir(parents=True, exist_ok=True)
        if self.ledger.backend == "sqlite":
            self.ledger.database_path.parent.mkdir(parents=True, exist_ok=True)


def _section(config_data: Dict[str, Any], name: str) -> Dict[str, Any]:
    section = config_data.get(name) or {}
    if not isinstance(section, dict):
        raise ConfigError(f"Config section '{name}' must be a mapping")
    return section


def load_config(config_path: Optional[Path] = None) -> SystemConfig:
    """Load configuration from file or return default"""
    if config_path is None:
        config_path = Path("config.yaml")
    config_path = Path(config_path)

    if not config_path.exists():
        return SystemConfig()

    try:
        with open(config_path, 'r') as f:
            config_data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Could not parse config file {config_path}: {e}") from e

    if not isinstance(config_data, dict):
        raise ConfigError(f"Config file {config_path} must contain a mapping")

    try:
        ledger_data = _section(config_data, 'ledger')
        ledger = LedgerConfig(
            backend=ledger_data.get('backend', 'memory'),
            database_path=Path(ledger_data.get('database_path', 'data/ledger.db')),
            busy_timeout=float(ledger_data.get('busy_timeout', 30.0)),
        )

        protocol_data = _section(config_data, 'protocol')
        protocol = ProtocolConfig(
            max_options=int(protocol_data.get('max_options', 255)),
            nullifier_nonce=int(protocol_data.get('nullifier_nonce', 0)),
            max_tally_value=int(protocol_data.get('max_tally_value', 10_000)),
        )

        quorum_data = _section(config_data, 'quorum')
        quorum = QuorumConfig(
            num_members=int(quorum_data.get('num_members', 3)),
            threshold=int(quorum_data.get('threshold', 2)),
        )

        return SystemConfig(
            ledger=ledger,
            protocol=protocol,
            quorum=quorum,
            log_dir=Path(config_data.get('log_dir', 'logs')),
            results_dir=Path(config_data.get('results_dir', 'results')),
            log_level=config_data.get('log_level', 'INFO'),
            enable_performance_monitoring=bool(
                config_data.get('enable_performance_monitoring', True)),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid value in config file {config_path}: {e}") from e


def save_config(config: SystemConfig, config_path: Optional[Path] = None):
    """Save configuration to YAML file"""
    if config_path is None:
        config_path = Path("config.yaml")

    config_data = {
        'ledger': {
            'backend': config.ledger.backend,
            'database_path': str(config.ledger.database_path),
            'busy_timeout': config.ledger.busy_timeout,
        },
        'protocol': {
            'max_options': config.protocol.max_options,
            'nullifier_nonce': config.protocol.nullifier_nonce,
            'max_tally_value': config.protocol.max_tally_value,
        },
        'quorum': {
            'num_members': config.quorum.num_members,
            'threshold': config.quorum.threshold,
        },
        'log_dir': str(config.log_dir),
        'results_dir': str(config.results_dir),
        'log_level': config.log_level,
        'enable_performance_monitoring': config.enable_performance_monitoring,
    }

    with open(config_path, 'w') as f:
        yaml.dump(config_data, f, default_flow_style=False)
