"""
slotmail Configuration Module

Handles loading, validation, and management of configuration settings.
"""

import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

# Use tomllib for Python 3.11+, tomli for earlier versions
if sys.version_info >= (3, 11):
    import tomllib
else:
    try:
        import tomli as tomllib
    except ImportError:
        raise ImportError("Please install tomli: pip install tomli")


@dataclass
class AccountConfig:
    """Local account settings."""
    data_dir: str = "~/.slotmail"
    private_key_file: str = "account.pem"
    mailsite_key: str = ""
    rtsksk: str = ""


@dataclass
class ProtocolConfig:
    """Protocol timers. Tuned for peers that come online about once a day."""
    cts_wait_hours: float = 26
    retransmit_delay_hours: float = 26
    fail_delay_days: float = 5
    poll_ahead: int = 6
    rts_priority: int = 1


@dataclass
class DriverConfig:
    """Periodic driver settings."""
    interval_seconds: int = 300
    max_parallel_contacts: int = 4


@dataclass
class NetworkConfig:
    """Storage network settings."""
    backend: str = "spool"  # spool | loopback
    spool_path: str = "~/.slotmail/spool"


@dataclass
class LoggingConfig:
    """Logging settings."""
    level: str = "INFO"
    file: str = ""


@dataclass
class Config:
    """Main configuration container."""
    account: AccountConfig = field(default_factory=AccountConfig)
    protocol: ProtocolConfig = field(default_factory=ProtocolConfig)
    driver: DriverConfig = field(default_factory=DriverConfig)
    network: NetworkConfig = field(default_factory=NetworkConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def validate(self) -> list[str]:
        """Validate configuration and return list of errors."""
        errors = []

        # Account validation
        if not self.account.data_dir:
            errors.append("account.data_dir cannot be empty")
        if not self.account.mailsite_key:
            errors.append("account.mailsite_key must be set (run 'slotmail init')")
        elif "/" in self.account.mailsite_key:
            errors.append("account.mailsite_key must be a key body without '/'")
        if not self.account.rtsksk:
            errors.append("account.rtsksk must be set (run 'slotmail init')")

        # Protocol timers
        if self.protocol.cts_wait_hours <= 0:
            errors.append("protocol.cts_wait_hours must be positive")
        if self.protocol.retransmit_delay_hours <= 0:
            errors.append("protocol.retransmit_delay_hours must be positive")
        if self.protocol.fail_delay_days * 24 <= self.protocol.retransmit_delay_hours:
            errors.append("protocol.fail_delay_days must exceed protocol.retransmit_delay_hours")
        if self.protocol.poll_ahead < 0:
            errors.append("protocol.poll_ahead cannot be negative")
        if self.protocol.rts_priority < 1:
            errors.append("protocol.rts_priority must be at least 1")

        # Driver validation
        if self.driver.interval_seconds <= 0:
            errors.append("driver.interval_seconds must be positive")
        if self.driver.max_parallel_contacts < 1:
            errors.append("driver.max_parallel_contacts must be at least 1")

        # Network validation
        valid_backends = ["spool", "loopback"]
        if self.network.backend not in valid_backends:
            errors.append(f"network.backend must be one of: {valid_backends}")
        if self.network.backend == "spool" and not self.network.spool_path:
            errors.append("network.spool_path must be set for the spool backend")

        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR"]
        if self.logging.level.upper() not in valid_levels:
            errors.append(f"logging.level must be one of: {valid_levels}")

        return errors

    def save(self, path: Path):
        """Save configuration to TOML file."""
        import toml  # For writing

        # Convert dataclasses to dict
        data = self._to_dict()

        with open(path, "w") as f:
            toml.dump(data, f)

    def _to_dict(self) -> dict[str, Any]:
        """Convert config to dictionary for serialization."""
        from dataclasses import asdict
        return asdict(self)


def load_config(path: Path) -> Config:
    """Load configuration from TOML file."""
    config = Config()

    if not path.exists():
        return config

    with open(path, "rb") as f:
        data = tomllib.load(f)

    # Map TOML sections to config dataclasses
    if "account" in data:
        config.account = AccountConfig(**data["account"])

    if "protocol" in data:
        config.protocol = ProtocolConfig(**data["protocol"])

    if "driver" in data:
        config.driver = DriverConfig(**data["driver"])

    if "network" in data:
        config.network = NetworkConfig(**data["network"])

    if "logging" in data:
        config.logging = LoggingConfig(**data["logging"])

    return config


def create_default_config(path: Path):
    """Create a default configuration file."""
    config = Config()
    config.save(path)
