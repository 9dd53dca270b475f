"""EPEC inner-approximation solver."""
from .config import (
    AddPolicy,
    Algorithm,
    AlgorithmParams,
    EPECStatus,
    PolyMethod,
    PureRecovery,
    RecoveryStrategy,
    SolverSettings,
)
from .epec import (
    ApproximateEquilibrium,
    EPECCoordinator,
    EPECResult,
    EPECStatistics,
    InnerApproximation,
    LeaderObjective,
    LeaderProblem,
    SharedConstraint,
)
from .errors import (
    DimensionMismatch,
    EPECError,
    InconsistentCoupling,
    Infeasible,
    NonConvex,
    SolveError,
    SolverError,
    Unbounded,
)
from .lcp import LCP, Enumeration, LCPSolution, LCPSolver, QuadraticObjective
from .nash_game import NashGameBuilder, Positions
from .qp_param import ParametrizedProgram

__all__ = [
    "AddPolicy",
    "Algorithm",
    "AlgorithmParams",
    "ApproximateEquilibrium",
    "DimensionMismatch",
    "EPECCoordinator",
    "EPECError",
    "EPECResult",
    "EPECStatistics",
    "EPECStatus",
    "Enumeration",
    "InconsistentCoupling",
    "Infeasible",
    "InnerApproximation",
    "LCP",
    "LCPSolution",
    "LCPSolver",
    "LeaderObjective",
    "LeaderProblem",
    "NashGameBuilder",
    "NonConvex",
    "ParametrizedProgram",
    "PolyMethod",
    "Positions",
    "PureRecovery",
    "QuadraticObjective",
    "RecoveryStrategy",
    "SharedConstraint",
    "SolveError",
    "SolverError",
    "SolverSettings",
    "Unbounded",
]
