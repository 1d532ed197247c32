"""
Exception taxonomy for the integration test matrix engine.

Failures stay inside their scope (run, topology, unit). Only ProvisionError
is fatal for the whole run. Unit failures are recorded as outcome data and
never raised.
"""

from typing import Optional


class MatrixError(Exception):
    """Base class for all engine errors."""


class ProvisionError(MatrixError):
    """Runtime environment could not be resolved to a concrete image/tag."""


class StartupError(MatrixError):
    """A topology failed to launch."""

    def __init__(self, topology: str, message: str):
        super().__init__(f"{topology}: {message}")
        self.topology = topology


class StartupTimeout(StartupError):
    """A topology did not become ready within its bounded wait."""

    def __init__(self, topology: str, timeout_seconds: float, pending: Optional[list] = None):
        pending = pending or []
        detail = f"not ready after {timeout_seconds:.0f}s"
        if pending:
            detail += f" (unreachable: {', '.join(pending)})"
        super().__init__(topology, detail)
        self.timeout_seconds = timeout_seconds
        self.pending = pending


class InvalidMatrixEntry(MatrixError, ValueError):
    """Matrix configuration error detected while planning."""


class TeardownFailure(MatrixError):
    """Topology teardown did not complete cleanly. Logged, never escalated."""

    def __init__(self, topology: str, message: str):
        super().__init__(f"{topology}: {message}")
        self.topology = topology
