import shutil
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

import yaml

from . import paths


def get_default_config_path() -> Path:
    return paths.package_root() / "config.yaml"


def config_file() -> Path:
    """Return config file path in the daemon home."""
    return paths.daemon_config_file()


def clear_cache():
    load_config.cache_clear()


@lru_cache(maxsize=1)
def load_config() -> dict:
    """Load the config.yaml file, returning its content or an empty dict if not found."""
    path = config_file()
    if not path.exists():
        return {}
    with open(path) as f:
        return yaml.safe_load(f) or {}


def init_config() -> None:
    """Initialize the daemon config.yaml from defaults if missing."""
    target = config_file()
    if target.exists():
        return

    target.parent.mkdir(parents=True, exist_ok=True)

    default_config_path = get_default_config_path()
    if not default_config_path.exists():
        raise FileNotFoundError(f"Default config not found at {default_config_path}")

    shutil.copy(default_config_path, target)


@dataclass(frozen=True)
class RetrySettings:
    attempts: int = 5
    base_delay: float = 0.5
    max_delay: float = 10.0


@dataclass(frozen=True)
class Settings:
    host: str = "0.0.0.0"
    port: int = 9091
    debounce_ms: int = 50
    poll_interval: float = 1.0
    queue_size: int = 256
    probe_interval: float = 0.75
    probe_enabled: bool = True
    io_attempts: int = 3
    io_backoff: float = 0.05
    retry: RetrySettings = RetrySettings()

    @property
    def debounce(self) -> float:
        return self.debounce_ms / 1000


def settings() -> Settings:
    raw = load_config()
    daemon = raw.get("daemon") or {}
    watcher = raw.get("watcher") or {}
    retry = raw.get("retry") or {}
    defaults = Settings()
    return Settings(
        host=daemon.get("host", defaults.host),
        port=int(daemon.get("port", defaults.port)),
        debounce_ms=int(watcher.get("debounce_ms", defaults.debounce_ms)),
        poll_interval=float(watcher.get("poll_interval", defaults.poll_interval)),
        queue_size=int(daemon.get("queue_size", defaults.queue_size)),
        probe_interval=float(watcher.get("probe_interval", defaults.probe_interval)),
        probe_enabled=bool(watcher.get("probe_enabled", defaults.probe_enabled)),
        io_attempts=int(watcher.get("io_attempts", defaults.io_attempts)),
        io_backoff=float(watcher.get("io_backoff", defaults.io_backoff)),
        retry=RetrySettings(
            attempts=int(retry.get("attempts", defaults.retry.attempts)),
            base_delay=float(retry.get("base_delay", defaults.retry.base_delay)),
            max_delay=float(retry.get("max_delay", defaults.retry.max_delay)),
        ),
    )
