import time

import pytest
import yaml

from grotto.core import session as coord
from grotto.lib import config, paths
from grotto.lib.config import RetrySettings, Settings


@pytest.fixture
def grotto_home(monkeypatch, tmp_path):
    """Isolated daemon home per test.

    Registry file, PID file and config.yaml live under tmp_path instead of
    ~/.grotto. Config is written with fast timings and the tmux probe off.
    """
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("GROTTO_HOME", str(home))
    monkeypatch.setattr(paths, "daemon_home", lambda: home)
    (home / "config.yaml").write_text(
        yaml.safe_dump(
            {
                "daemon": {"queue_size": 256},
                "watcher": {
                    "debounce_ms": 5,
                    "poll_interval": 0.05,
                    "probe_enabled": False,
                    "io_backoff": 0.001,
                },
                "retry": {"attempts": 2, "base_delay": 0.01, "max_delay": 0.02},
            }
        )
    )
    config.clear_cache()
    yield home
    config.clear_cache()


@pytest.fixture
def fast_settings():
    return Settings(
        debounce_ms=5,
        poll_interval=0.05,
        probe_enabled=False,
        io_backoff=0.001,
        retry=RetrySettings(attempts=2, base_delay=0.01, max_delay=0.02),
    )


@pytest.fixture
def project(tmp_path):
    project_dir = tmp_path / "project"
    project_dir.mkdir()
    return project_dir


@pytest.fixture
def gdir(project):
    return coord.init_session(project, 2, "Build the thing", session_id="test-session")


@pytest.fixture
def make_project(tmp_path):
    def _make(name: str, agents: int = 2, task: str = "Build the thing"):
        project_dir = tmp_path / name
        project_dir.mkdir()
        coord.init_session(project_dir, agents, task, session_id=name)
        return project_dir

    return _make


def _wait_until(predicate, timeout: float = 5.0, interval: float = 0.02):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    raise AssertionError("condition not met in time")


@pytest.fixture
def wait_until():
    return _wait_until
