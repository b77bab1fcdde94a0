import os
import signal
import subprocess
import sys

from grotto.lib import paths


def write_pid(pid: int | None = None) -> None:
    path = paths.pid_file()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(str(pid if pid is not None else os.getpid()))


def read_pid() -> int | None:
    try:
        return int(paths.pid_file().read_text().strip())
    except (FileNotFoundError, ValueError):
        return None


def remove_pid() -> None:
    paths.pid_file().unlink(missing_ok=True)


def is_daemon_running() -> bool:
    pid = read_pid()
    if pid is None:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def daemon_url(host: str, port: int) -> str:
    if host in ("0.0.0.0", "::", ""):
        host = "127.0.0.1"
    return f"http://{host}:{port}"


def detach_daemon(*args: str) -> None:
    """Run `grotto daemon serve` in its own session so it outlives the caller."""
    subprocess.Popen(
        [sys.executable, "-m", "grotto.cli.main", "daemon", "serve", *args],
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        start_new_session=True,
    )


def stop_daemon() -> int | None:
    """SIGTERM the recorded daemon. Returns its pid, or None when none was running."""
    pid = read_pid()
    if pid is None or not is_daemon_running():
        remove_pid()
        return None
    os.kill(pid, signal.SIGTERM)
    remove_pid()
    return pid
