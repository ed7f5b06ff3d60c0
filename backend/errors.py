"""
Exception taxonomy for probing and run orchestration.

Probe-level errors are caught by the test queue and recorded on the
ProbeResult; run-level errors are raised to callers of the run manager.
"""


class ProbeError(Exception):
    """Base class for all JellyProbe errors."""


class ConfigurationError(ProbeError):
    """No device profile or server configuration could be resolved."""


class UpstreamUnavailable(ProbeError):
    """Session negotiation or manifest fetch against the media server failed."""


class InvalidManifest(ProbeError):
    """The master playlist lacks the #EXTM3U header."""

    def __init__(self, message: str = "Invalid HLS master playlist"):
        super().__init__(message)


class NoVariants(ProbeError):
    """The master playlist lists no variant streams."""

    def __init__(self, message: str = "No variant streams in master playlist"):
        super().__init__(message)


class NoSegmentsDownloaded(ProbeError):
    """The variant playlist produced no downloadable bytes."""

    def __init__(self, message: str = "No HLS segments downloaded - transcoding may have failed"):
        super().__init__(message)


class ResolutionError(ProbeError):
    """Catalog pagination or item fetch failed while resolving a run scope."""


class RunNotFound(ProbeError):
    """No test run exists with the given id."""


class InvalidRunState(ProbeError):
    """The requested run transition is not allowed from its current state."""
