"""Algorithm and solver configuration."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict


class EPECStatus(str, Enum):
    INITIALIZED = "initialized"
    ITERATING = "iterating"
    EQUILIBRIUM_FOUND = "equilibrium_found"
    NO_EQUILIBRIUM = "no_equilibrium"
    TIME_LIMIT_REACHED = "time_limit_reached"
    NUMERICAL_FAILURE = "numerical_failure"
    ITERATION_LIMIT_REACHED = "iteration_limit_reached"

    @property
    def terminal(self) -> bool:
        return self not in (EPECStatus.INITIALIZED, EPECStatus.ITERATING)


class AddPolicy(str, Enum):
    """Which leaders get their deviation polyhedron added after a pass."""

    MOST_VIOLATED = "most_violated"
    ROUND_ROBIN = "round_robin"
    EXHAUSTIVE = "exhaustive"


class RecoveryStrategy(str, Enum):
    ABORT = "abort"
    REVERT_LAST = "revert_last"


class Algorithm(str, Enum):
    INNER_APPROXIMATION = "inner_approximation"
    FULL_ENUMERATION = "full_enumeration"


class PolyMethod(str, Enum):
    """Order in which untried polyhedra are proposed when the approximated game has no equilibrium."""

    SEQUENTIAL = "sequential"
    REVERSE_SEQUENTIAL = "reverse_sequential"
    RANDOM = "random"


class PureRecovery(str, Enum):
    """How a pure-strategy equilibrium is sought once a mixed one was found."""

    INCREMENTAL_ENUMERATION = "incremental_enumeration"
    COMBINATORIAL = "combinatorial"


@dataclass
class SolverSettings:
    """Names and options handed to ``gamspy.Model.solve``.

    ``mip_solver`` handles MIP/MIQCP models and the fixed-pattern LP/QCPs,
    ``qp_solver`` handles the non-convex complementarity relaxation. Each
    solver gets its own options dict.

    With ``indicators`` every free complementary pair becomes an SOS1 set
    instead of a binary with big-M links, so no bound on ``w`` or ``z`` is
    assumed. Without it, an Infeasible big-M model is re-solved with SOS1
    sets before the infeasibility is reported.
    """

    mip_solver: str = "cplex"
    qp_solver: str = "conopt"
    solver_options: Dict[str, float] | None = None
    qp_solver_options: Dict[str, float] | None = None
    working_directory: str | None = None
    time_limit: float | None = None
    indicators: bool = False

    def validate(self) -> None:
        if self.working_directory and " " in str(self.working_directory):
            raise ValueError(
                f"GAMS working directory must be space-free. Got: {self.working_directory}"
            )
        if self.time_limit is not None and self.time_limit <= 0.0:
            raise ValueError("time_limit must be > 0")

    def solve_kwargs(self, solver: str) -> Dict[str, object]:
        kwargs: Dict[str, object] = {"solver": solver}
        options = self.solver_options if solver == self.mip_solver else self.qp_solver_options
        if options:
            kwargs["solver_options"] = dict(options)
        return kwargs

    def base_directory(self) -> str | None:
        if self.working_directory:
            os.makedirs(self.working_directory, exist_ok=True)
        return self.working_directory


@dataclass
class AlgorithmParams:
    """Knobs of the coordinator.

    ``add_poly_method``, ``add_poly_seed`` and ``aggressiveness`` control the
    polyhedra proposed to every leader when the approximated game has no
    equilibrium. ``pure_ne`` asks for a pure-strategy equilibrium, searched
    with ``pure_recovery`` once a mixed one turns up. ``bound_primals`` caps
    the leaders' columns of the approximated game at ``bound_big_m``.
    """

    algorithm: Algorithm = Algorithm.INNER_APPROXIMATION
    threads: int = 1
    time_limit: float | None = None
    add_policy: AddPolicy = AddPolicy.MOST_VIOLATED
    recovery: RecoveryStrategy = RecoveryStrategy.REVERT_LAST
    max_iterations: int | None = None
    max_solver_retries: int = 2
    deviation_tol: float = 1e-6
    enumerate_vertices: bool = False
    add_poly_method: PolyMethod = PolyMethod.SEQUENTIAL
    add_poly_seed: int | None = None
    aggressiveness: int = 1
    pure_ne: bool = False
    pure_recovery: PureRecovery = PureRecovery.INCREMENTAL_ENUMERATION
    bound_primals: bool = False
    bound_big_m: float = 1e5
    solver: SolverSettings = field(default_factory=SolverSettings)

    def validate(self) -> None:
        if self.threads < 1:
            raise ValueError("threads must be >= 1")
        if self.time_limit is not None and self.time_limit <= 0.0:
            raise ValueError("time_limit must be > 0")
        if self.max_iterations is not None and self.max_iterations < 1:
            raise ValueError("max_iterations must be >= 1")
        if self.max_solver_retries < 0:
            raise ValueError("max_solver_retries must be >= 0")
        if self.deviation_tol <= 0.0:
            raise ValueError("deviation_tol must be > 0")
        if self.aggressiveness < 1:
            raise ValueError("aggressiveness must be >= 1")
        if self.bound_big_m <= 0.0:
            raise ValueError("bound_big_m must be > 0")
        # Accept plain strings from CLI/config dicts.
        self.algorithm = Algorithm(self.algorithm)
        self.add_policy = AddPolicy(self.add_policy)
        self.recovery = RecoveryStrategy(self.recovery)
        self.add_poly_method = PolyMethod(self.add_poly_method)
        self.pure_recovery = PureRecovery(self.pure_recovery)
        self.solver.validate()
