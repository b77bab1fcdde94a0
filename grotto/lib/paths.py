import os
from pathlib import Path

COORD_DIRNAME = ".grotto"


def daemon_home() -> Path:
    override = os.environ.get("GROTTO_HOME")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".grotto"


def sessions_file() -> Path:
    return daemon_home() / "sessions.json"


def pid_file() -> Path:
    return daemon_home() / "daemon.pid"


def daemon_config_file() -> Path:
    return daemon_home() / "config.yaml"


def package_root() -> Path:
    return Path(__file__).resolve().parent.parent


def coord_dir(project_dir: str | Path) -> Path:
    return Path(project_dir).expanduser().resolve() / COORD_DIRNAME


def session_config(gdir: Path) -> Path:
    return gdir / "config.yaml"


def task_board(gdir: Path) -> Path:
    return gdir / "tasks.md"


def journal(gdir: Path) -> Path:
    """Worker-written NDJSON journal."""
    return gdir / "events.jsonl"


def event_log(gdir: Path) -> Path:
    """Sequenced event log owned by the session watcher."""
    return gdir / "log.jsonl"


def journal_position(gdir: Path) -> Path:
    """Byte offset of the journal already folded into the event log."""
    return gdir / ".journal_position"


def agents_dir(gdir: Path) -> Path:
    return gdir / "agents"


def agent_status(gdir: Path, agent_id: str) -> Path:
    return agents_dir(gdir) / agent_id / "status.json"


def claims_dir(gdir: Path) -> Path:
    return gdir / "claims"


def messages_dir(gdir: Path) -> Path:
    return gdir / "messages"


def validate_id(value: str, kind: str = "id") -> tuple[bool, str]:
    if not value:
        return False, f"{kind} cannot be empty"
    if "/" in value or "\\" in value or value in (".", ".."):
        return False, f"{kind} cannot contain path separators"
    if not all(ch.isalnum() or ch in "-_." for ch in value):
        return False, f"{kind} must be alphanumeric (with - _ . allowed)"
    return True, ""
