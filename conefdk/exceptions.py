"""Exception hierarchy for conefdk.

All errors raised on purpose by the package derive from :class:`ConeFDKError`.
Each concrete error also derives from the matching builtin so callers that
only know about ``ValueError`` or ``RuntimeError`` keep working. I/O errors
(``OSError`` and subclasses) are never wrapped.
"""


class ConeFDKError(Exception):
    """Base class for all conefdk errors."""


class MalformedGeometryError(ConeFDKError, ValueError):
    """A projection record or a geometry container is inconsistent.

    Raised for non-finite or out-of-range record fields, and when the
    per-field arrays of a geometry disagree in length.
    """


class BackendUnavailableError(ConeFDKError, RuntimeError):
    """The requested compute backend cannot run on this machine."""


class MissedProjectionError(ConeFDKError, RuntimeError):
    """The streaming consumer skipped a published projection.

    The consumer's geometry must grow by exactly one record per published
    projection. When the producer publishes faster than the consumer polls,
    the reconstruction cannot be completed correctly and is aborted.
    """

    def __init__(self, expected, received):
        self.expected = expected
        self.received = received
        super().__init__(
            f"Missed projection: geometry holds {received} projection(s) "
            f"but {expected} were published"
        )


class ConfigurationError(ConeFDKError, ValueError):
    """A configuration value is missing, out of range or inconsistent."""
