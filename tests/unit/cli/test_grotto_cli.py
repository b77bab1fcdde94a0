import json
import os
import signal
import subprocess

from typer.testing import CliRunner

from grotto.cli.main import app
from grotto.core import claims
from grotto.core.eventlog import EventLog
from grotto.daemon import process
from grotto.lib import paths
from grotto.models import Event, EventType, TaskStatus

runner = CliRunner()


def test_init_creates_coordination_dir(project):
    result = runner.invoke(app, ["init", "3", "Write docs", "--dir", str(project)])
    assert result.exit_code == 0, result.output
    assert "3 agents" in result.output
    assert paths.task_board(paths.coord_dir(project)).exists()

    again = runner.invoke(app, ["init", "3", "Write docs", "--dir", str(project)])
    assert again.exit_code == 1
    assert "Error:" in again.output


def test_status_lists_board_and_agents(gdir, project):
    result = runner.invoke(app, ["status", "--dir", str(project)])
    assert result.exit_code == 0, result.output
    assert "Build the thing" in result.output
    assert "agent-1" in result.output
    assert "agent-2" in result.output


def test_status_json(gdir, project):
    result = runner.invoke(app, ["--json", "status", "--dir", str(project)])
    assert result.exit_code == 0, result.output
    data = json.loads(result.output)
    assert [t["id"] for t in data["tasks"]] == ["main"]
    assert set(data["agents"]) == {"agent-1", "agent-2"}


def test_status_without_session(project):
    result = runner.invoke(app, ["status", "--dir", str(project)])
    assert result.exit_code == 1
    assert "No .grotto directory" in result.output


def test_claim_then_conflict(gdir, project):
    first = runner.invoke(app, ["claim", "main", "--as", "agent-1", "--dir", str(project)])
    assert first.exit_code == 0, first.output
    assert "Claimed: main by agent-1" in first.output

    second = runner.invoke(app, ["claim", "main", "--as", "agent-2", "--dir", str(project)])
    assert second.exit_code == 1
    assert "Conflict:" in second.output
    assert claims.load_board(gdir).get("main").claimed_by == "agent-1"


def test_claim_unknown_agent(gdir, project):
    result = runner.invoke(app, ["claim", "main", "--as", "agent-9", "--dir", str(project)])
    assert result.exit_code == 1
    assert "Agent not found" in result.output


def test_add_mark_complete(gdir, project):
    assert runner.invoke(app, ["add", "docs", "Write docs", "--dir", str(project)]).exit_code == 0
    assert runner.invoke(app, ["claim", "docs", "--as", "agent-2", "--dir", str(project)]).exit_code == 0

    marked = runner.invoke(app, ["-q", "mark", "docs", "in_progress", "--dir", str(project)])
    assert marked.exit_code == 0, marked.output
    assert marked.output == ""

    done = runner.invoke(app, ["--json", "complete", "docs", "--dir", str(project)])
    assert done.exit_code == 0, done.output
    assert json.loads(done.output)["status"] == "completed"
    assert claims.load_board(gdir).get("docs").status == TaskStatus.COMPLETED


def test_mark_rejects_claim_status(gdir, project):
    result = runner.invoke(app, ["mark", "main", "claimed", "--dir", str(project)])
    assert result.exit_code == 1
    assert "Invalid input:" in result.output


def test_events_prints_log(gdir, project):
    log = EventLog(paths.event_log(gdir))
    log.append(Event(type=EventType.RAW, data={"event_type": "team_spawned"}))
    log.append(Event(type=EventType.TASK_CLAIMED, agent_id="agent-1", task_id="main"))

    result = runner.invoke(app, ["events", "--dir", str(project)])
    assert result.exit_code == 0, result.output
    assert "team_spawned" in result.output
    assert "task_claimed agent-1 main" in " ".join(result.output.split())

    tail = runner.invoke(app, ["--json", "events", "--since", "1", "--dir", str(project)])
    assert tail.exit_code == 0, tail.output
    assert "team_spawned" not in tail.output
    assert json.loads(tail.output)["seq"] == 2


def test_daemon_status_when_not_running(grotto_home):
    result = runner.invoke(app, ["daemon", "status"])
    assert result.exit_code == 1
    assert "Daemon not running" in result.output


def test_daemon_start_detaches_serve(grotto_home, monkeypatch):
    launched = []
    monkeypatch.setattr(process.subprocess, "Popen", lambda args, **kwargs: launched.append((args, kwargs)))

    result = runner.invoke(app, ["daemon", "start", "--port", "9123"])

    assert result.exit_code == 0, result.output
    assert "Daemon starting" in result.output
    [(args, kwargs)] = launched
    assert args[1:] == ["-m", "grotto.cli.main", "daemon", "serve", "--port", "9123"]
    assert kwargs["start_new_session"] is True
    assert kwargs["stdout"] == subprocess.DEVNULL


def test_daemon_start_when_already_running(grotto_home, monkeypatch):
    launched = []
    monkeypatch.setattr(process.subprocess, "Popen", lambda args, **kwargs: launched.append(args))
    process.write_pid(os.getpid())

    result = runner.invoke(app, ["daemon", "start"])

    assert result.exit_code == 0
    assert f"already running (pid {os.getpid()})" in result.output
    assert launched == []


def test_daemon_stop_terminates_recorded_process(grotto_home):
    proc = subprocess.Popen(["sleep", "30"])
    try:
        process.write_pid(proc.pid)

        result = runner.invoke(app, ["daemon", "stop"])

        assert result.exit_code == 0, result.output
        assert f"Stopped daemon (pid {proc.pid})" in result.output
        assert proc.wait(timeout=5) == -signal.SIGTERM
        assert process.read_pid() is None
    finally:
        if proc.poll() is None:
            proc.kill()
            proc.wait()


def test_daemon_stop_when_not_running(grotto_home):
    process.write_pid(2**22 + 12345)

    result = runner.invoke(app, ["daemon", "stop"])

    assert result.exit_code == 1
    assert "Daemon not running" in result.output
    assert process.read_pid() is None
