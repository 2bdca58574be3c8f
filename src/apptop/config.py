"""Configuration system for apptop."""

from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path

import tomlkit

MIN_REFRESH_INTERVAL = 0.1
LOG_LEVELS = ("debug", "info", "warning", "error")


@dataclass
class MonitorConfig:
    """Sampling configuration."""

    refresh_interval: float = 2.0  # Seconds between refresh cycles
    disks: list[str] = field(default_factory=list)  # Empty means every device in /sys/block
    include_virtual_disks: bool = False  # loop, ram and zram devices


@dataclass
class LoggingConfig:
    """Log file configuration."""

    level: str = "info"
    log_max_bytes: int = 5 * 1024 * 1024  # Max log file size (5MB)
    log_backup_count: int = 3  # Number of rotated log files to keep


def _dataclass_to_table(obj: object) -> tomlkit.items.Table:
    """Convert a dataclass instance to a tomlkit Table recursively."""
    table = tomlkit.table()
    for f in fields(obj):  # type: ignore[arg-type]
        value = getattr(obj, f.name)
        if is_dataclass(value) and not isinstance(value, type):
            table.add(f.name, _dataclass_to_table(value))
        else:
            table.add(f.name, value)
    return table


@dataclass
class Config:
    """Main configuration container."""

    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @property
    def config_dir(self) -> Path:
        """Configuration directory."""
        return Path.home() / ".config" / "apptop"

    @property
    def config_path(self) -> Path:
        """Path to config file."""
        return self.config_dir / "config.toml"

    @property
    def state_dir(self) -> Path:
        """State directory for logs."""
        return Path.home() / ".local" / "state" / "apptop"

    @property
    def log_path(self) -> Path:
        """Log file path."""
        return self.state_dir / "apptop.log"

    def save(self, path: Path | None = None) -> None:
        """Save config to TOML file."""
        path = path or self.config_path
        path.parent.mkdir(parents=True, exist_ok=True)

        doc = tomlkit.document()
        for name in ("monitor", "logging"):
            doc.add(name, _dataclass_to_table(getattr(self, name)))
            doc.add(tomlkit.nl())

        path.write_text(tomlkit.dumps(doc))

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """Load config from TOML file, returning defaults for missing values."""
        defaults = cls()
        path = path or defaults.config_path
        if not path.exists():
            return defaults

        try:
            with open(path) as f:
                data = tomlkit.load(f)
        except tomlkit.exceptions.TOMLKitError as e:
            raise ValueError(f"Failed to parse config file {path}: {e}") from e

        return cls(
            monitor=_load_monitor_config(data.get("monitor", {})),
            logging=_load_logging_config(data.get("logging", {})),
        )


def _load_monitor_config(data: dict) -> MonitorConfig:
    """Load monitor config from TOML data, using dataclass defaults for missing fields."""
    defaults = MonitorConfig()

    refresh_interval = float(data.get("refresh_interval", defaults.refresh_interval))
    if refresh_interval < MIN_REFRESH_INTERVAL:
        raise ValueError(
            f"refresh_interval must be >= {MIN_REFRESH_INTERVAL}, got {refresh_interval}"
        )

    disks = data.get("disks", defaults.disks)
    if not isinstance(disks, list) or not all(isinstance(d, str) for d in disks):
        raise ValueError(f"disks must be a list of device names, got {disks!r}")

    return MonitorConfig(
        refresh_interval=refresh_interval,
        disks=[str(d) for d in disks],
        include_virtual_disks=bool(
            data.get("include_virtual_disks", defaults.include_virtual_disks)
        ),
    )


def _load_logging_config(data: dict) -> LoggingConfig:
    """Load logging config from TOML data, using dataclass defaults for missing fields."""
    defaults = LoggingConfig()

    level = str(data.get("level", defaults.level)).lower()
    if level not in LOG_LEVELS:
        raise ValueError(f"Invalid log level: {level!r}. Must be one of {LOG_LEVELS}")

    log_max_bytes = int(data.get("log_max_bytes", defaults.log_max_bytes))
    log_backup_count = int(data.get("log_backup_count", defaults.log_backup_count))
    if log_max_bytes < 1:
        raise ValueError(f"log_max_bytes must be >= 1, got {log_max_bytes}")
    if log_backup_count < 0:
        raise ValueError(f"log_backup_count must be >= 0, got {log_backup_count}")

    return LoggingConfig(
        level=level,
        log_max_bytes=log_max_bytes,
        log_backup_count=log_backup_count,
    )
