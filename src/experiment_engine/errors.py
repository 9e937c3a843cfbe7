"""
Error taxonomy for the experimentation engine.

Validation errors are terminal: the caller must fix its input.
Store errors are transient: the caller may retry the same request.
Statistical edge cases never raise; they surface as low-confidence results.
"""


class ExperimentError(Exception):
    """Base class for all engine errors."""

    retryable = False


class ValidationError(ExperimentError, ValueError):
    """Invalid experiment definition or parameters. Never partially applied."""


class SequentialTestingError(ValidationError):
    """Sequential testing requested for something other than one treatment vs control."""


class ExperimentStateError(ValidationError):
    """Lifecycle transition not allowed from the experiment's current status."""


class ExperimentNotFoundError(ExperimentError, KeyError):
    """No experiment with the requested id."""

    def __str__(self) -> str:
        # KeyError quotes its argument
        return str(self.args[0]) if self.args else ""


class StoreError(ExperimentError):
    """Lookup or write against an external store failed. Safe to retry."""

    retryable = True
