"""Error taxonomy shared by the compressor, cache, context builder and store."""


class ProbeError(Exception):
    """Base class for all analyzer errors."""


class ValidationError(ProbeError, ValueError):
    """A required identifier or input is missing."""


class NotFoundError(ProbeError, LookupError):
    """A referenced project does not exist."""


class UpstreamError(ProbeError, RuntimeError):
    """The embedding or model service failed or timed out."""


class StoreError(ProbeError, RuntimeError):
    """The datastore could not be read or written."""
