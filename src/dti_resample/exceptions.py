"""
Error and warning categories raised while resampling tensor fields.

Fatal conditions are exceptions and abort the operation before any output
is written. Recoverable conditions are reported through the ``warnings``
module so callers can filter them or turn them into errors.
"""


class TensorResampleError(Exception):
    """Base class for all dti_resample errors."""


class NonPositiveDefiniteInput(TensorResampleError, ValueError):
    """A tensor has an eigenvalue at or below the positivity threshold."""

    def __init__(self, count: int, epsilon: float):
        self.count = count
        self.epsilon = epsilon
        super().__init__(
            f"{count} tensor(s) have eigenvalues <= {epsilon:g}; "
            "enable clamping or fix the input"
        )


class MalformedSeriesDescriptor(TensorResampleError, ValueError):
    """The transform series descriptor or one of its payloads is invalid."""


class UnsupportedInversion(TensorResampleError):
    """A transform was asked for an inverse it cannot provide exactly."""


class ClampedEigenvalueWarning(UserWarning):
    """Non-positive eigenvalues were clamped to the positivity threshold."""


class IterativeInversionWarning(UserWarning):
    """A dense displacement field is inverted by fixed-point iteration."""


class OutOfBufferSample(UserWarning):
    """Mapped points fell outside the input field and were set to background."""


class UnconvergedInversionWarning(UserWarning):
    """Fixed-point inversion of a displacement field hit its iteration limit."""
