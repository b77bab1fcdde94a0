"""Agent liveness from tmux pane output."""

import logging
import shutil
import subprocess
from dataclasses import dataclass, field

from grotto.models import AgentPhase, Event, EventType, now_iso

logger = logging.getLogger(__name__)

CAPTURE_LINES = 50
RECENT_LINES = 20
FINISHED_POLLS_BEFORE_COMPLETION = 5

FINISHED_LAST_LINE = ("/exit", "exited")
FINISHED_RECENT = ("Process exited", "session ended", "has been completed")
ERROR_PATTERNS = (
    "Error:",
    "error:",
    "rate limit",
    "Rate limit",
    "APIError",
    "API error",
    "panic",
    "PANIC",
    "fatal:",
    "FATAL",
    "overloaded",
)
THINKING_PATTERNS = ("Thinking", "thinking", "⏳", "◐", "◓", "◑", "◒") + tuple("⠋⠙⠹⠸⠼⠴⠦⠧⠇⠏")
EDIT_PATTERNS = (
    "Write(",
    "Edit(",
    "Created ",
    "Updated ",
    "Wrote ",
    "wrote ",
    "editing",
    "Creating ",
    "Modified ",
)
RUN_PATTERNS = ("$ ", "Running", "running", "Bash(", "bash(")
PROMPT_ENDINGS = (">", "$", "❯", "%", "claude>")


def infer_phase(content: str) -> AgentPhase:
    """Best-effort guess at what an agent is doing from its pane text."""
    recent = [line for line in reversed(content.splitlines()) if line.strip()][:RECENT_LINES]
    if not recent:
        return AgentPhase.STARTING

    last_line = recent[0]
    recent_text = "\n".join(recent)
    latest = recent[:5]

    if any(p in last_line for p in FINISHED_LAST_LINE) or any(p in recent_text for p in FINISHED_RECENT):
        return AgentPhase.FINISHED
    if any(p in line for line in latest for p in ERROR_PATTERNS):
        return AgentPhase.ERROR
    if any(p in last_line for p in THINKING_PATTERNS):
        return AgentPhase.THINKING
    if any(p in line for line in latest for p in EDIT_PATTERNS):
        return AgentPhase.EDITING
    if any(p in line for line in latest for p in RUN_PATTERNS):
        return AgentPhase.RUNNING
    if last_line.strip().endswith(PROMPT_ENDINGS):
        return AgentPhase.IDLE
    return AgentPhase.STARTING


@dataclass
class PaneSnapshot:
    agent_id: str
    pane_index: int
    raw_content: str
    phase: AgentPhase
    last_activity_line: str = ""
    timestamp: str = field(default_factory=now_iso)

    @property
    def gone(self) -> bool:
        return self.phase == AgentPhase.FINISHED and not self.raw_content


class TmuxProbe:
    """Captures the panes of one tmux session, one pane per agent."""

    def __init__(self, session_name: str, agent_ids: list[str]):
        self.session_name = session_name
        self.agent_ids = agent_ids

    @staticmethod
    def available() -> bool:
        return shutil.which("tmux") is not None

    def capture_pane(self, pane_index: int) -> str | None:
        target = f"{self.session_name}:0.{pane_index}"
        try:
            result = subprocess.run(
                ["tmux", "capture-pane", "-t", target, "-p", "-S", f"-{CAPTURE_LINES}"],
                capture_output=True,
                text=True,
                timeout=5,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.debug(f"tmux capture of {target} failed: {e}")
            return None
        if result.returncode != 0:
            return None
        return result.stdout

    def capture(self) -> list[PaneSnapshot]:
        snapshots = []
        for index, agent_id in enumerate(self.agent_ids):
            content = self.capture_pane(index)
            if content is None:
                snapshots.append(PaneSnapshot(agent_id, index, "", AgentPhase.FINISHED))
                continue
            last_line = next((line for line in reversed(content.splitlines()) if line.strip()), "")
            snapshots.append(PaneSnapshot(agent_id, index, content, infer_phase(content), last_line))
        return snapshots


class PhaseTracker:
    """Turns successive pane captures into agent_phase / session_completed events."""

    def __init__(self, finished_polls: int = FINISHED_POLLS_BEFORE_COMPLETION):
        self.finished_polls = finished_polls
        self.phases: dict[str, AgentPhase] = {}
        self.consecutive_gone = 0
        self.completed = False

    def observe(self, snapshots: list[PaneSnapshot]) -> list[Event]:
        if self.completed:
            return []
        if snapshots and all(s.gone for s in snapshots):
            self.consecutive_gone += 1
            if self.consecutive_gone > self.finished_polls:
                self.completed = True
                return [
                    Event(
                        type=EventType.SESSION_COMPLETED,
                        message="All agent panes have exited",
                        data={"reason": "tmux_session_ended"},
                    )
                ]
            return []
        self.consecutive_gone = 0

        events = []
        for snap in snapshots:
            if self.phases.get(snap.agent_id) == snap.phase:
                continue
            self.phases[snap.agent_id] = snap.phase
            events.append(
                Event(
                    type=EventType.AGENT_PHASE,
                    timestamp=snap.timestamp,
                    agent_id=snap.agent_id,
                    message=f"{snap.agent_id} is {snap.phase.value}",
                    data={"phase": snap.phase.value, "last_activity": snap.last_activity_line},
                )
            )
        return events
