"""Error taxonomy shared by the CLI bridge."""


class PysuvError(Exception):
    """Base class for all pysuv errors."""


class BootstrapError(PysuvError):
    """Daemon unreachable and the auto-start failed inside the bootstrap window."""


class TransportError(PysuvError):
    """Could not open a connection to a daemon presumed to be running."""


class RPCError(PysuvError):
    """A remote call was rejected or could not be completed."""


class RemoteCallError(RPCError):
    """The daemon answered with an error status."""


class MalformedResponseError(RPCError):
    """The daemon answered with something that is not a valid response."""


class PluginError(PysuvError):
    """A plugin entry point is missing, not executable, or exited non-zero."""

    def __init__(self, message: str, exit_code: int = 1):
        super().__init__(message)
        self.exit_code = exit_code


class DaemonRunningError(PysuvError):
    """Another daemon already answers on the socket this one would bind."""
