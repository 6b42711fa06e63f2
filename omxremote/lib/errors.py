"""Errors surfaced synchronously to callers of the remote's boundary operations.

Process exit failures are not represented here: by the time a child exits
nobody is waiting on the result, so they are only logged.  Navigating past
the end of the playlist is not an error either; it yields ``None``.
"""


class RemoteError(Exception):
    """Base class for request-time failures."""


class InvalidLocation(RemoteError):
    """The media url does not parse as a usable locator."""

    def __init__(self, url):
        super().__init__(f"Invalid content location: {url!r}")
        self.url = url


class AlreadyActive(RemoteError):
    """Play was requested while a playback process is running."""

    def __init__(self):
        super().__init__("Player is already running")


class UnknownCommand(RemoteError):
    def __init__(self, name):
        super().__init__(f"Invalid command: {name!r}")
        self.name = name


class SpawnFailure(RemoteError):
    """The player executable could not be started."""

    def __init__(self, argv, cause: Exception):
        super().__init__(f"Could not start {argv[0]}: {cause}")
        self.argv = argv
        self.cause = cause
