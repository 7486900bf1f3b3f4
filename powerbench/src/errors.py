"""
Exception hierarchy for the test bench.

Configuration problems are raised before any outlet is energized. Safety
violations detected while a run is live are not exceptions: they are
recorded as anomalies and move the run to ABORTED.

CHANGELOG:
- 2026-10-02: Initial creation (STORY-001)

TODO:
- None
"""

from __future__ import annotations


class BenchError(Exception):
    """Base class for all test-bench errors."""


class ConfigurationError(BenchError, ValueError):
    """Fatal setup error: unknown controller type, missing address, duplicate start."""


class AdapterError(BenchError):
    """Transient controller failure (network error, timeout, bad response)."""


class SafetyPreconditionError(BenchError):
    """Raised when a station/outlet fails the pre-energize safety checks.

    Args:
        violations: Human-readable list of violated preconditions.
    """

    def __init__(self, violations: list[str]) -> None:
        self.violations = list(violations)
        super().__init__("Safety validation failed: " + "; ".join(self.violations))


class OutletInUseError(BenchError):
    """Raised when an outlet is already claimed by another non-terminal run."""


class RunNotFoundError(BenchError, LookupError):
    """Raised when a test run id does not exist in the store."""


class InvalidTransitionError(BenchError):
    """Raised when a non-terminal run is asked to move backwards."""
