"""Error taxonomy for the command relay."""


class RelayError(Exception):
    """Base class for relay errors."""


class SessionNotFound(RelayError):
    """The target transport (tmux pane, pty path) does not exist."""


class AutomationDenied(RelayError):
    """The OS refused UI/accessibility automation."""


class AutomationFailure(RelayError):
    """Any other failure of an external automation tool."""


class PersistenceError(RelayError):
    """A state file could not be written."""


class ListenerError(RelayError):
    """The inbound command listener could not be initialized."""
