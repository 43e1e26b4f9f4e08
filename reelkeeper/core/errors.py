# Copyright (c) 2025 Trae AI. All rights reserved.

from typing import Optional


class ReelkeeperError(Exception):
    """Base class for every error raised by the library engine."""


class FilesystemUnavailableError(ReelkeeperError):
    """A configured root could not be read at all. Its items are kept."""

    def __init__(self, root, message: str = "Root not available"):
        self.root = root
        super().__init__(f"{message}: {root}")


class PermissionDeniedError(ReelkeeperError):
    """A directory or file below a root could not be read. Only it is skipped."""

    def __init__(self, path, message: str = "Permission denied"):
        self.path = path
        super().__init__(f"{message}: {path}")


class ProviderError(ReelkeeperError):
    """The metadata provider could not answer a query."""


class ProviderUnavailableError(ProviderError):
    pass


class RateLimitedError(ProviderError):
    def __init__(self, message: str = "rate limited", retry_after: Optional[float] = None):
        self.retry_after = retry_after
        super().__init__(message)


class CorruptSnapshotError(ReelkeeperError):
    """The persisted library cannot be trusted; the cycle must not commit."""


class ConfigurationError(ReelkeeperError):
    pass


class CycleCancelledError(ReelkeeperError):
    pass


class UnknownItemError(ReelkeeperError):
    def __init__(self, key):
        self.key = key
        super().__init__(f"Unknown library entry: {key}")


class MissingEpisodeError(ReelkeeperError):
    """A file cannot be linked as an episode without an episode number."""

    def __init__(self, message: str = "Episode number not found in path"):
        super().__init__(message)
