"""Exceptions raised by the macmon engines."""


class MacmonError(Exception):
    """Base class for all macmon errors."""


class TransientSampleFailure(MacmonError):
    """A single tick's counter read failed. The next tick retries."""


class PathAccessDenied(MacmonError):
    """A path could not be read or removed for lack of permission."""

    def __init__(self, path: str, detail: str = "") -> None:
        self.path = path
        self.detail = detail
        message = f"access denied: {path}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class PathVanished(MacmonError):
    """A path disappeared between scan and execution."""

    def __init__(self, path: str) -> None:
        self.path = path
        super().__init__(f"path vanished: {path}")


class ConfirmationMissing(MacmonError):
    """An unconfirmed plan was handed to the executor."""


class OperationBusy(MacmonError):
    """An operation of the same kind is already running."""

    def __init__(self, kind: str) -> None:
        self.kind = kind
        super().__init__(f"a {kind} operation is already running")


class ProcessControlError(MacmonError):
    """A process could not be signalled."""

    def __init__(self, pid: int, detail: str) -> None:
        self.pid = pid
        self.detail = detail
        super().__init__(f"cannot signal pid {pid}: {detail}")


class StartupItemError(MacmonError):
    """A startup item could not be changed or removed."""

    def __init__(self, label: str, detail: str) -> None:
        self.label = label
        self.detail = detail
        super().__init__(f"cannot change startup item {label}: {detail}")
