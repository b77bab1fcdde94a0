class GrottoError(Exception):
    """Base exception for grotto domain errors."""

    pass


class ClaimConflict(GrottoError):
    """Raised when a claim or completion targets a task in the wrong state."""

    def __init__(self, task_id: str, status: str, action: str = "claim"):
        self.task_id = task_id
        self.status = status
        self.action = action
        super().__init__(f"Cannot {action} task '{task_id}': status is {status}")


class TaskNotFoundError(GrottoError):
    """Raised when a task id is not on the board."""

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Task not found: {task_id}")


class AgentNotFoundError(GrottoError):
    """Raised when an agent id is not part of the session."""

    def __init__(self, agent_id: str):
        self.agent_id = agent_id
        super().__init__(f"Agent not found: {agent_id}")


class SessionNotFoundError(GrottoError):
    """Raised when a session id is not registered."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session '{session_id}' not found")


class InvalidSessionError(GrottoError):
    """Raised when a project directory has no usable coordination directory."""

    pass


class TransientIOError(GrottoError):
    """Raised when a file stayed unreadable after all retries."""

    pass


class SessionLostError(GrottoError):
    """Raised when a session's coordination directory disappears."""

    pass


class ResyncRequired(GrottoError):
    """Raised when an observer can no longer continue from its cursor."""

    pass
