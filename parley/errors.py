from typing import Optional


class EngineError(Exception):
    """Base class for every recoverable engine failure."""


class OfflineError(EngineError):
    def __init__(self, message: str = "Model server is not reachable.") -> None:
        super().__init__(message)


class EmptyPromptError(EngineError, ValueError):
    def __init__(self, message: str = "Prompt text is empty.") -> None:
        super().__init__(message)


class NoModelsAvailable(EngineError):
    def __init__(self, message: str = "No models are available.") -> None:
        super().__init__(message)


class ModelUnavailableError(EngineError):
    def __init__(self, model: str) -> None:
        super().__init__(f"Model {model!r} is not available.")
        self.model = model


class ServerConnectionError(EngineError, ConnectionError):
    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class MalformedFragment(EngineError):
    def __init__(self, raw: str, reason: str = "") -> None:
        detail = f": {reason}" if reason else ""
        super().__init__(f"Malformed stream fragment{detail}")
        self.raw = raw


class ParameterProfileNotFound(EngineError, KeyError):
    def __init__(self, name: str) -> None:
        super().__init__(name)
        self.name = name

    def __str__(self) -> str:
        return f"Parameter profile {self.name!r} not found."


class UnknownParameterError(EngineError, ValueError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Unknown parameter {name!r}.")
        self.name = name


class UnknownCommandError(EngineError, KeyError):
    def __init__(self, command_id: str) -> None:
        super().__init__(command_id)
        self.command_id = command_id

    def __str__(self) -> str:
        return f"Command {self.command_id!r} not found."


class MultishotInProgress(EngineError):
    def __init__(self, message: str = "A multishot sequence is already running.") -> None:
        super().__init__(message)
