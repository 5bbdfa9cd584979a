"""Custom exceptions for the inwatchd package."""


class InwatchdError(Exception):
    """Base exception for all inwatchd errors."""
    pass


class ConfigParseError(InwatchdError):
    """A configuration line could not be parsed; the line is skipped."""
    pass


class ConfigConflictError(InwatchdError):
    """A path is already claimed by a different configuration source."""

    def __init__(self, path: str, owner: str, claimant: str):
        super().__init__(
            f"{path} is already watched for {owner}; refusing claim from {claimant}"
        )
        self.path = path
        self.owner = owner
        self.claimant = claimant


class WatchCreateError(InwatchdError):
    """A watch could not be established."""
    pass


class WatchNotFoundError(WatchCreateError):
    """The path to watch does not exist."""
    pass


class RestartRequested(InwatchdError):
    """Internal state can no longer be trusted; the daemon must be replaced."""
    pass


class QueueOverflowError(RestartRequested):
    """The kernel event queue overflowed and events were lost."""
    pass


class UnknownWorkerError(RestartRequested):
    """A completed worker was never registered."""
    pass


class LockHeldError(InwatchdError):
    """Another instance holds the run-lock."""
    pass


class ForwardError(InwatchdError):
    """A companion daemon could not be reached or rejected the request."""
    pass


class DaemonAlreadyRunningError(InwatchdError):
    """The dispatch loop of this daemon instance is already running."""
    pass
