"""Exception hierarchy for unrecoverable control-plane failures.

Every fatal error names the step that failed and the command an operator
should run next, since failures are usually inspected long after the CI job
that hit them.
"""

from __future__ import annotations


class BunciError(RuntimeError):
    """Base class for failures that terminate an invocation.

    Parameters
    ----------
    message:
        What went wrong.
    step:
        The resource or step that failed (e.g. ``"clone"``, ``"wait_for_network"``).
    remedy:
        Concrete command or action for the operator.
    """

    def __init__(self, message: str, *, step: str = "", remedy: str = "") -> None:
        super().__init__(message)
        self.step = step
        self.remedy = remedy

    def __str__(self) -> str:
        text = super().__str__()
        if self.step:
            text = f"[{self.step}] {text}"
        if self.remedy:
            text = f"{text} (next: {self.remedy})"
        return text


class RetryExhaustedError(BunciError):
    """Raised when a bounded poll runs out of attempts."""


class RetryCancelledError(BunciError):
    """Raised when a bounded poll is cancelled from outside."""


class VmSessionError(BunciError):
    """Raised when a VM cannot be acquired, reached or controlled."""


class ImageBuildError(BunciError):
    """Raised when building a new image fails; the partial image is deleted."""


class ImageProvisionError(BunciError):
    """Raised when no usable image could be produced for the target."""
