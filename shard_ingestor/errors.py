"""Exception hierarchy for the shard ingestor.

Fatal errors abort startup. Everything else is caught by the component
that can skip or retry it and reported through logging.
"""


class IngestorError(Exception):
    """Base exception for all ingestor failures."""


class ConfigError(IngestorError):
    """Raised for unreadable or invalid configuration."""


class SourceError(IngestorError):
    """Raised when a source adapter misbehaves."""


class FetchError(SourceError):
    """Raised when a batch could not be fetched from the source."""


class IntervalError(SourceError):
    """Raised when the source reports an unusable polling interval."""


class UnknownSourceError(SourceError):
    """Raised when no adapter is registered under the requested name."""


class StoreError(IngestorError):
    """Raised for backing store failures."""


class PoolInitError(StoreError):
    """Raised when the connection pool cannot reach the backing store."""


class TLSConfigError(PoolInitError):
    """Raised when transport security material cannot be loaded."""


class PoolExhaustedError(StoreError):
    """Raised when no pooled connection became available in time."""


class ShardSetupError(StoreError):
    """Raised when a shard or one of its tables could not be created."""


class ChannelClosedError(IngestorError):
    """Raised on a send to, or second close of, a closed table channel."""
