"""Exception hierarchy for epecsolve.

Construction errors (bad shapes, non-convex data, inconsistent coupling) are
also ``ValueError`` subclasses so callers validating input can catch them the
usual way. Per-solve errors are recovered locally by the enumeration and the
coordinator; terminal outcomes of the equilibrium search are reported as a
status on the result, never raised.
"""
from __future__ import annotations


class EPECError(Exception):
    """Base class for every error raised by epecsolve."""


class DimensionMismatch(EPECError, ValueError):
    pass


class NonConvex(EPECError, ValueError):
    pass


class InconsistentCoupling(EPECError, ValueError):
    pass


class SolveError(EPECError):
    """A single subproblem solve did not return a usable point."""

    def __init__(self, message: str, *, model: str | None = None, status: str | None = None):
        super().__init__(message)
        self.model = model
        self.status = status


class Infeasible(SolveError):
    pass


class Unbounded(SolveError):
    pass


class SolverError(SolveError, RuntimeError):
    """The solver failed for a reason other than infeasibility or unboundedness."""
