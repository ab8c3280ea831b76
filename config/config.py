from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from coordinator import ReactivationPolicy, RoundParameters
from zk import ZKConfig


@dataclass
class RoundConfig:
    state_tree_depth: int = 2
    int_state_tree_depth: int = 1
    vote_option_tree_depth: int = 1
    batch_size: int = 5
    max_vote_options: int = 5
    cost_model: str = "linear"
    voice_credits: int = 100

    def to_parameters(self) -> RoundParameters:
        return RoundParameters(**asdict(self))


@dataclass
class ProverConfig:
    backend: str = "digest"
    build_dir: Path = field(default_factory=lambda: Path("circuits/build"))
    snarkjs_bin: str = "snarkjs"
    proof_timeout: int = 600
    digest_key: Optional[str] = None
    max_retries: int = 3

    def __post_init__(self):
        self.build_dir = Path(self.build_dir)

    def to_zk_config(self) -> ZKConfig:
        return ZKConfig(
            backend=self.backend,
            build_dir=self.build_dir,
            snarkjs_bin=self.snarkjs_bin,
            proof_timeout=self.proof_timeout,
            digest_key=self.digest_key,
        )


@dataclass
class LedgerConfig:
    backend: str = "memory"
    url: str = "http://localhost:8545"
    round_id: str = "round-0"
    timeout: float = 30.0
    max_retries: int = 3
    retry_backoff: float = 0.5


@dataclass
class SystemConfig:
    round: RoundConfig = field(default_factory=RoundConfig)
    prover: ProverConfig = field(default_factory=ProverConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)

    reactivation_policy: str = ReactivationPolicy.FRESH_ACTIVE.value
    state_file: Optional[Path] = None

    log_dir: Path = field(default_factory=lambda: Path("logs"))
    results_dir: Path = field(default_factory=lambda: Path("results"))
    enable_benchmarking: bool = True
    enable_debug_mode: bool = False

    def __post_init__(self):
        self.log_dir = Path(self.log_dir)
        self.results_dir = Path(self.results_dir)
        if self.state_file is not None:
            self.state_file = Path(self.state_file)
        # Fail fast on an unknown policy name
        ReactivationPolicy(self.reactivation_policy)

    @property
    def policy(self) -> ReactivationPolicy:
        return ReactivationPolicy(self.reactivation_policy)

    def ensure_directories(self):
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.results_dir.mkdir(parents=True, exist_ok=True)


def config_to_dict(config: SystemConfig) -> Dict[str, Any]:
    return {
        'round': asdict(config.round),
        'prover': {**asdict(config.prover), 'build_dir': str(config.prover.build_dir)},
        'ledger': asdict(config.ledger),
        'reactivation_policy': config.reactivation_policy,
        'state_file': None if config.state_file is None else str(config.state_file),
        'log_dir': str(config.log_dir),
        'results_dir': str(config.results_dir),
        'enable_benchmarking': config.enable_benchmarking,
        'enable_debug_mode': config.enable_debug_mode,
    }


def load_config(config_path: Optional[Path] = None) -> SystemConfig:
    """Load configuration from file or return default"""
    if config_path is None:
        config_path = Path("config.yaml")
    config_path = Path(config_path)

    if config_path.exists():
        try:
            with open(config_path, 'r') as f:
                config_data = yaml.safe_load(f) or {}

            return SystemConfig(
                round=RoundConfig(**config_data.get('round', {})),
                prover=ProverConfig(**config_data.get('prover', {})),
                ledger=LedgerConfig(**config_data.get('ledger', {})),
                reactivation_policy=config_data.get(
                    'reactivation_policy', ReactivationPolicy.FRESH_ACTIVE.value),
                state_file=config_data.get('state_file'),
                log_dir=Path(config_data.get('log_dir', 'logs')),
                results_dir=Path(config_data.get('results_dir', 'results')),
                enable_benchmarking=config_data.get('enable_benchmarking', True),
                enable_debug_mode=config_data.get('enable_debug_mode', False),
            )
        except (OSError, yaml.YAMLError, TypeError, ValueError) as e:
            print(f"Warning: Could not load config file {config_path}: {e}")
            print("Using default configuration")

    return SystemConfig()


def save_config(config: SystemConfig, config_path: Optional[Path] = None):
    """Save configuration to YAML file"""
    if config_path is None:
        config_path = Path("config.yaml")

    try:
        with open(config_path, 'w') as f:
            yaml.dump(config_to_dict(config), f, default_flow_style=False)
    except OSError as e:
        print(f"Warning: Could not save config file {config_path}: {e}")
