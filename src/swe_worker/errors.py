class WorkerError(Exception):
    """Base class for errors raised by the worker runtime."""


class ThrottlingError(WorkerError):
    """The model provider asked us to slow down (or was briefly unreachable)."""


class ThrottlingExhaustedError(WorkerError):
    def __init__(self, attempts: int, reason: str):
        super().__init__(f"Model call still throttled after {attempts} attempts: {reason}")
        self.attempts = attempts
        self.reason = reason


class OutputOverflowError(WorkerError):
    def __init__(self, attempts: int):
        super().__init__(f"Max tokens exceeded too many times ({attempts})")
        self.attempts = attempts


class ToolNotFoundError(WorkerError):
    def __init__(self, name: str):
        super().__init__(f"tool {name} is not found")
        self.name = name


class ToolInputError(WorkerError):
    def __init__(self, name: str, detail: str):
        super().__init__(f"invalid input for {name}: {detail}")
        self.name = name
        self.detail = detail


class HistoryError(WorkerError):
    """Conversation history could not be read or written."""
