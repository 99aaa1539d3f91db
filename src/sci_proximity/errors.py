"""Exceptions raised by the proximity pipeline."""


class ProximityError(Exception):
    """Base class for pipeline errors."""


class DataIntegrityError(ProximityError):
    """Input data is too damaged, or internally inconsistent, to continue."""


class PartitionMismatchError(DataIntegrityError):
    """Partitioned results disagree with the full-data control computation."""

    def __init__(self, message, n_mismatched=0, max_abs_diff=0.0):
        super().__init__(message)
        self.n_mismatched = n_mismatched
        self.max_abs_diff = max_abs_diff


class ConfigurationError(ProximityError):
    """A configuration names unknown fields or holds invalid values."""
