"""Error taxonomy for the feed-to-Bluesky pipeline."""


class PipelineError(Exception):
    """Base class for all pipeline failures."""


class ConfigError(PipelineError):
    """Configuration is missing or invalid."""


class TransientFetchError(PipelineError):
    """Network failure fetching the feed, media, or remote store."""


class ParseError(PipelineError):
    """Feed could not be parsed."""


class CompressorError(PipelineError):
    """External image compressor failed."""

    def __init__(self, message: str, exit_code: int | None = None):
        super().__init__(message)
        self.exit_code = exit_code


class PublishError(PipelineError):
    """Publishing a post downstream failed."""


class PersistenceError(PipelineError):
    """State file could not be persisted to the remote store."""


class IntegrityError(PipelineError):
    """Attempt to record an entry that is already recorded."""
