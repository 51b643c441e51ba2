"""
prefetch_loader.errors
======================
Exception hierarchy.  Every condition the loader cannot recover from
raises one of these; none is ever swallowed, and a loader that has raised
must be closed and rebuilt.

Reaching the end of a dataset is NOT an error: cursors wrap silently.
"""


class PrefetchError(RuntimeError):
    """Base class for all loader failures."""


class ConfigurationError(PrefetchError, ValueError):
    """Invalid or unsupported combination of setup options."""


class BackendError(PrefetchError):
    """The backing store could not be opened or returned inconsistent data."""


class DecodeError(PrefetchError):
    """A raw record could not be turned into a Sample."""
