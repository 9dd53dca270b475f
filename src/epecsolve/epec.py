"""
Inner-approximation coordinator for EPECs.

Each leader owns a Nash game among its followers, written as an LCP over
the columns ``z`` (followers' primals and duals plus the leader's own
variables). A leader minimises

    1/2 z'Qz + (c + C x_{-i})'z

over the complementary points of its LCP, where ``x_{-i}`` is the
concatenation of the other leaders' ``z`` vectors in leader order.

Instead of the full, combinatorial feasible region, every leader is
restricted to an inner approximation: the union of a few LCP polyhedra,
each named by a complementarity sign pattern. A pass of the coordinator:

  1. Replaces every leader's union by its convex hull (``hull.py``), which
     makes each leader's problem a convex QP in the others' decisions, and
     solves the Nash game among those QPs as one LCP. Its solution is the
     new profile; a leader whose hull weights are not 0/1 plays a mixed
     strategy over its polyhedra.
  2. Computes every leader's full best response (MIQCP) against that
     profile and the gain each leader would get from deviating (in
     parallel, then a barrier).
  3. Stops with EQUILIBRIUM_FOUND when no gain exceeds the tolerance;
     otherwise adds the deviation polyhedra chosen by the addition policy.
     A pass that finds deviations but cannot add any of them ends with
     NUMERICAL_FAILURE.

When the approximated game has no equilibrium, the next pass first gives
every leader ``aggressiveness`` untried polyhedra (sequential, reverse or
seeded random order).

An equilibrium found this way is an equilibrium of the full EPEC: the
certificate in step 2 uses the full feasible regions.
"""
from __future__ import annotations

import itertools
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Sequence, Tuple, TypeVar

import numpy as np

from .config import (
    AddPolicy,
    Algorithm,
    AlgorithmParams,
    EPECStatus,
    PolyMethod,
    PureRecovery,
    RecoveryStrategy,
)
from .errors import DimensionMismatch, Infeasible, SolveError, SolverError, Unbounded
from .hull import HullLayout, convex_hull
from .lcp import (
    LCP,
    LCPSolution,
    LCPSolver,
    Pattern,
    QuadraticObjective,
    number_to_pattern,
    pattern_to_number,
    resolve_pattern,
)
from .nash_game import NashGameBuilder
from .qp_param import ParametrizedProgram

logger = logging.getLogger(__name__)

T = TypeVar("T")

# hull weights above 1 - _PURE_TOL count as a pure strategy
_PURE_TOL = 1e-5


@dataclass(frozen=True)
class LeaderObjective:
    c: np.ndarray
    Q: np.ndarray | None = None
    C: np.ndarray | None = None
    constant: float = 0.0

    def fixed(self, x_other: np.ndarray) -> QuadraticObjective:
        lin = np.array(self.c, dtype=float)
        if self.C is not None and self.C.shape[1]:
            lin = lin + self.C @ x_other
        return QuadraticObjective(c=lin, Q=self.Q, constant=self.constant)

    def value(self, z: np.ndarray, x_other: np.ndarray) -> float:
        return self.fixed(x_other).value(z)


@dataclass(frozen=True)
class SharedConstraint:
    """Shifts the leader-constraint rhs to ``b - G x_{-i}``.

    ``G`` has one row per leader constraint and one column per entry of
    ``x_{-i}``; market-clearing rows are never shifted.
    """

    G: np.ndarray


class LeaderProblem:
    def __init__(
        self,
        name: str,
        game: NashGameBuilder,
        objective: LeaderObjective,
        coupling: SharedConstraint | None = None,
        **lcp_kwargs,
    ):
        self.name = name
        self.game = game
        self.objective = objective
        self.coupling = coupling
        self.lcp = game.lcp(**lcp_kwargs)
        self.n_lead_rows = game.leader_constraints.shape[0]

        n = self.lcp.n_cols
        c = np.asarray(objective.c)
        if c.shape[0] != n:
            raise DimensionMismatch(f"leader {name}: objective has {c.shape[0]} entries, LCP has {n} columns")
        if objective.Q is not None and objective.Q.shape != (n, n):
            raise DimensionMismatch(f"leader {name}: Q must be {n}x{n}, got {objective.Q.shape}")
        if coupling is not None and coupling.G.shape[0] != self.n_lead_rows:
            raise DimensionMismatch(
                f"leader {name}: coupling has {coupling.G.shape[0]} rows, "
                f"game has {self.n_lead_rows} leader constraints"
            )

    @property
    def n_cols(self) -> int:
        return self.lcp.n_cols

    @property
    def n_pairs(self) -> int:
        return len(self.lcp.pairs)

    @property
    def n_shifted(self) -> int:
        """Number of cut rows whose rhs moves with the other leaders' decisions."""
        return self.n_lead_rows if self.coupling is not None else 0

    def lcp_for(self, x_other: np.ndarray) -> LCP:
        """The leader's LCP with shared constraints evaluated at ``x_other``."""
        if not self.n_shifted:
            return self.lcp
        b = np.array(self.lcp.b, dtype=float)
        b[: self.n_lead_rows] -= self.coupling.G @ x_other
        return LCP(
            self.lcp.M,
            self.lcp.q,
            self.lcp.pairs,
            self.lcp.A,
            b,
            eps=self.lcp.eps,
            eps_int=self.lcp.eps_int,
            big_m=self.lcp.big_m,
        )

    def polyhedra(self, patterns: Sequence[Pattern]) -> List[Tuple[np.ndarray, np.ndarray]]:
        """``G z <= h`` for each pattern, leaving out nonnegativity and the shifted rows."""
        lcp = self.lcp
        k = self.n_shifted
        if k:
            lcp = LCP(
                lcp.M, lcp.q, lcp.pairs, lcp.A[k:], lcp.b[k:],
                eps=lcp.eps, eps_int=lcp.eps_int, big_m=lcp.big_m,
            )
        solver = LCPSolver(lcp, name=self.name)
        return [solver.polyhedron(p, bounds=False) for p in patterns]


class InnerApproximation:
    """Ordered, duplicate-free set of sign patterns with their generating points."""

    def __init__(self, n_pairs: int):
        self.n_pairs = n_pairs
        self.patterns: List[Pattern] = []
        self.points: List[np.ndarray | None] = []
        self._numbers: set[int] = set()

    def __len__(self) -> int:
        return len(self.patterns)

    def __contains__(self, pattern: Sequence[int]) -> bool:
        return pattern_to_number(resolve_pattern(pattern)) in self._numbers

    def has_number(self, number: int) -> bool:
        return number in self._numbers

    def add(self, pattern: Sequence[int], point: np.ndarray | None = None) -> bool:
        pattern = resolve_pattern(pattern)
        if len(pattern) != self.n_pairs:
            raise DimensionMismatch(f"pattern has {len(pattern)} entries, expected {self.n_pairs}")
        number = pattern_to_number(pattern)
        if number in self._numbers:
            return False
        self._numbers.add(number)
        self.patterns.append(pattern)
        self.points.append(None if point is None else np.array(point, dtype=float))
        return True

    def revert(self) -> Pattern | None:
        """Remove the most recent addition."""
        if not self.patterns:
            return None
        pattern = self.patterns.pop()
        self.points.pop()
        self._numbers.discard(pattern_to_number(pattern))
        return pattern

    def reset(self, patterns: Sequence[Pattern], points: Sequence[np.ndarray | None]) -> None:
        self.patterns, self.points, self._numbers = [], [], set()
        for pattern, point in zip(patterns, points):
            self.add(pattern, point)

    def numbers(self) -> List[int]:
        return [pattern_to_number(p) for p in self.patterns]


@dataclass
class ApproximateEquilibrium:
    """Equilibrium of the game where every leader plays over its hull.

    ``weights[i][k]`` is the weight leader ``i`` puts on the ``k``-th
    polyhedron of its inner approximation.
    """

    profile: List[np.ndarray]
    weights: List[np.ndarray]

    def pure_leaders(self, tol: float = _PURE_TOL) -> List[bool]:
        return [float(np.max(w, initial=0.0)) >= 1.0 - tol for w in self.weights]

    @property
    def pure(self) -> bool:
        return all(self.pure_leaders())


@dataclass
class EPECStatistics:
    status: EPECStatus = EPECStatus.INITIALIZED
    iterations: int = 0
    polyhedra_added: List[int] = field(default_factory=list)
    inner_sizes: List[int] = field(default_factory=list)
    recoveries: int = 0
    solver_retries: int = 0
    lost_equilibria: int = 0
    max_gain: float = float("inf")
    pure: bool | None = None
    wall_clock: float = 0.0
    message: str = ""


@dataclass
class EPECResult:
    status: EPECStatus
    decisions: Dict[str, np.ndarray]
    objectives: Dict[str, float]
    statistics: EPECStatistics
    iter_rows: List[Dict[str, object]]
    polyhedra: Dict[str, List[int]]
    vertices: Dict[str, List[np.ndarray]] | None = None
    weights: Dict[str, np.ndarray] | None = None

    @property
    def solved(self) -> bool:
        return self.status == EPECStatus.EQUILIBRIUM_FOUND


class _Stop(Exception):
    """Ends the pass loop with a terminal status."""

    def __init__(self, status: EPECStatus, message: str):
        super().__init__(message)
        self.status = status
        self.message = message


class EPECCoordinator:
    def __init__(self, leaders: Sequence[LeaderProblem], params: AlgorithmParams | None = None):
        if not leaders:
            raise ValueError("an EPEC needs at least one leader")
        names = [ld.name for ld in leaders]
        if len(set(names)) != len(names):
            raise ValueError(f"leader names must be unique, got {names}")
        self.leaders: List[LeaderProblem] = list(leaders)
        self.params = params or AlgorithmParams()
        self.params.validate()

        for i, ld in enumerate(self.leaders):
            n_other = self._n_other(i)
            C = ld.objective.C
            if C is not None and C.shape != (ld.n_cols, n_other):
                raise DimensionMismatch(
                    f"leader {ld.name}: C must be {ld.n_cols}x{n_other}, got {C.shape}"
                )
            if ld.coupling is not None and ld.coupling.G.shape[1] != n_other:
                raise DimensionMismatch(
                    f"leader {ld.name}: coupling must have {n_other} columns, got {ld.coupling.G.shape[1]}"
                )

        self.status = EPECStatus.INITIALIZED
        self.inner: List[InnerApproximation] = [InnerApproximation(ld.n_pairs) for ld in self.leaders]
        self.statistics = EPECStatistics(
            polyhedra_added=[0] * len(self.leaders),
            inner_sizes=[0] * len(self.leaders),
        )
        self._lock = threading.Lock()
        self._cursor = 0
        self._deadline: float | None = None
        # leader index of every revertible addition, oldest first
        self._history: List[int] = []
        self._infeasible: List[set[int]] = [set() for _ in self.leaders]
        reverse = self.params.add_poly_method == PolyMethod.REVERSE_SEQUENTIAL
        self._poly_cursor = [2 ** ld.n_pairs - 1 if reverse else 0 for ld in self.leaders]
        self._rng = np.random.default_rng(self.params.add_poly_seed)

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    def _n_other(self, i: int) -> int:
        return sum(ld.n_cols for j, ld in enumerate(self.leaders) if j != i)

    def others(self, i: int, profile: Sequence[np.ndarray]) -> np.ndarray:
        parts = [profile[j] for j in range(len(self.leaders)) if j != i]
        return np.concatenate(parts) if parts else np.zeros(0)

    def _remaining(self) -> float | None:
        if self._deadline is None:
            return None
        return max(self._deadline - time.perf_counter(), 0.0)

    def _expired(self) -> bool:
        return self._deadline is not None and time.perf_counter() >= self._deadline

    def _with_retries(self, fn: Callable[[], T]) -> T:
        attempts = 1 + self.params.max_solver_retries
        for attempt in range(1, attempts + 1):
            try:
                return fn()
            except SolverError as e:
                if attempt == attempts:
                    raise
                with self._lock:
                    self.statistics.solver_retries += 1
                logger.warning("solver error (attempt %d/%d): %s", attempt, attempts, e)
        raise AssertionError("unreachable")

    def _run_all(
        self, fn: Callable[[int], LCPSolution]
    ) -> List[Tuple[LCPSolution | None, SolveError | None]]:
        """Run ``fn`` for every leader and wait for all of them."""
        n = len(self.leaders)
        results: List[Tuple[LCPSolution | None, SolveError | None]] = [(None, None)] * n

        def _guard(i: int) -> Tuple[LCPSolution | None, SolveError | None]:
            try:
                return fn(i), None
            except SolveError as e:
                return None, e

        if self.params.threads == 1 or n == 1:
            return [_guard(i) for i in range(n)]
        with ThreadPoolExecutor(max_workers=min(self.params.threads, n)) as ex:
            futures = {ex.submit(_guard, i): i for i in range(n)}
            for fut in as_completed(futures):
                results[futures[fut]] = fut.result()
        return results

    # ------------------------------------------------------------------
    # best responses and the approximated game
    # ------------------------------------------------------------------
    def full_response(self, i: int, profile: Sequence[np.ndarray]) -> LCPSolution:
        """Leader ``i``'s best response over its whole LCP feasible region."""
        leader = self.leaders[i]
        x_other = self.others(i, profile)
        solver = LCPSolver(leader.lcp_for(x_other), self.params.solver, name=f"{leader.name}_full")
        objective = leader.objective.fixed(x_other)
        return self._with_retries(
            lambda: solver.solve_as_mip(objective=objective, time_limit=self._remaining())
        )

    def approximate_game(self) -> Tuple[NashGameBuilder, List[HullLayout]]:
        """Nash game among the leaders, each restricted to the hull of its inner approximation.

        Leader ``i`` becomes a ParametrizedProgram over its hull variables
        ``[z | z^1 .. z^K | delta]``. Its parameters are the other leaders'
        hull variables, of which only their ``z`` blocks carry coefficients.
        """
        hulls = []
        for i, leader in enumerate(self.leaders):
            if not len(self.inner[i]):
                raise ValueError(f"leader {leader.name} has an empty inner approximation")
            hulls.append(convex_hull(leader.polyhedra(self.inner[i].patterns), leader.n_cols))
        sizes = [layout.n_vars for _, _, layout in hulls]

        programs = []
        for i, leader in enumerate(self.leaders):
            B, b, layout = hulls[i]
            n = leader.n_cols
            cols: List[int] = []
            offset = 0
            for j, other in enumerate(self.leaders):
                if j == i:
                    continue
                cols.extend(range(offset, offset + other.n_cols))
                offset += sizes[j]

            C = np.zeros((layout.n_vars, offset))
            if leader.objective.C is not None:
                C[:n, cols] = leader.objective.C
            A = np.zeros((B.shape[0], offset))
            k = leader.n_shifted
            if k:
                shifted_B = np.zeros((k, layout.n_vars))
                shifted_B[:, :n] = leader.lcp.A[:k]
                shifted_A = np.zeros((k, offset))
                shifted_A[:, cols] = leader.coupling.G
                B = np.vstack([B, shifted_B])
                A = np.vstack([A, shifted_A])
                b = np.concatenate([b, leader.lcp.b[:k]])
            Q = np.zeros((layout.n_vars, layout.n_vars))
            if leader.objective.Q is not None:
                Q[:n, :n] = leader.objective.Q
            c = np.zeros(layout.n_vars)
            c[:n] = leader.objective.c
            programs.append(ParametrizedProgram(Q, C, A, B, c, b, name=f"{leader.name}_hull"))

        return NashGameBuilder(programs, name="approximation"), [layout for _, _, layout in hulls]

    def approximate_equilibrium(self, pure: bool = False) -> ApproximateEquilibrium:
        """Solve the approximated game as one LCP.

        With ``pure`` the hull weights are binary, so every leader picks a
        single polyhedron. Raises ``Infeasible`` when the game has no
        (pure) equilibrium.
        """
        game, layouts = self.approximate_game()
        lcp = game.lcp(eps=self._eps(), big_m=max(ld.lcp.big_m for ld in self.leaders))
        pos = game.positions
        if self.params.bound_primals:
            bound = np.full(pos.n_primal, self.params.bound_big_m)
            lcp = lcp.with_cuts(np.eye(lcp.n_cols)[: pos.n_primal], bound)

        binary: List[int] = []
        if pure:
            for i, layout in enumerate(layouts):
                start = pos.primal[i]
                binary.extend(range(start + layout.weights.start, start + layout.weights.stop))

        solver = LCPSolver(lcp, self.params.solver, name="approximation")
        sol = self._with_retries(
            lambda: solver.solve_as_mip(binary_cols=binary, time_limit=self._remaining())
        )
        profile, weights = [], []
        for i, (leader, layout) in enumerate(zip(self.leaders, layouts)):
            start = pos.primal[i]
            profile.append(sol.z[start:start + leader.n_cols].copy())
            weights.append(sol.z[start + layout.weights.start:start + layout.weights.stop].copy())
        return ApproximateEquilibrium(profile, weights)

    def _certify(
        self, profile: Sequence[np.ndarray]
    ) -> Tuple[np.ndarray, np.ndarray, List[int], List[Tuple[LCPSolution | None, SolveError | None]]]:
        """Full responses against ``profile``: ``(objectives, gains, violating, responses)``."""
        full = self._run_all(lambda i: self.full_response(i, profile))
        names = [ld.name for ld in self.leaders]
        for i, (_, err) in enumerate(full):
            if isinstance(err, (Infeasible, Unbounded)):
                raise _Stop(EPECStatus.NO_EQUILIBRIUM, f"leader {names[i]}: {err}")
            if err is not None:
                if self._expired():
                    raise _Stop(EPECStatus.TIME_LIMIT_REACHED, f"time limit reached: {err}")
                raise _Stop(EPECStatus.NUMERICAL_FAILURE, f"leader {names[i]}: {err}")

        n = len(self.leaders)
        objectives = np.zeros(n)
        gains = np.zeros(n)
        violating: List[int] = []
        for i, ld in enumerate(self.leaders):
            objectives[i] = ld.objective.value(profile[i], self.others(i, profile))
            gains[i] = objectives[i] - full[i][0].objective
            if gains[i] > self.params.deviation_tol * max(1.0, abs(objectives[i])):
                violating.append(i)
        return objectives, gains, violating, full

    # ------------------------------------------------------------------
    # main loop
    # ------------------------------------------------------------------
    def _select(self, violating: List[int], gains: np.ndarray) -> List[int]:
        """Order the violating leaders by the addition policy."""
        policy = self.params.add_policy
        if policy == AddPolicy.MOST_VIOLATED:
            return sorted(violating, key=lambda i: (-gains[i], i))
        if policy == AddPolicy.ROUND_ROBIN:
            n = len(self.leaders)
            return sorted(violating, key=lambda i: (i - self._cursor) % n)
        return list(violating)

    def _initialize(self, zero: List[np.ndarray], vertices: Dict[str, List[np.ndarray]] | None) -> None:
        enumerate_up_front = self.params.algorithm == Algorithm.FULL_ENUMERATION
        if enumerate_up_front or vertices is not None:
            for i, leader in enumerate(self.leaders):
                solver = LCPSolver(leader.lcp_for(self.others(i, zero)), self.params.solver, name=leader.name)
                en = solver.enumerate_all(workers=self.params.threads, deadline=self._deadline)
                if not en.complete:
                    if self._expired():
                        raise _Stop(EPECStatus.TIME_LIMIT_REACHED, "time limit reached while enumerating")
                    logger.warning("leader %s: enumeration skipped %d failing leaves", leader.name, len(en.skipped))
                if vertices is not None:
                    vertices[leader.name] = [sol.z for sol in en.solutions]
                if enumerate_up_front:
                    if not en.patterns:
                        raise _Stop(EPECStatus.NO_EQUILIBRIUM, f"leader {leader.name} has an empty feasible region")
                    for pattern, sol in zip(en.patterns, en.points):
                        if self.inner[i].add(pattern, sol.z) and len(self.inner[i]) > 1:
                            self._history.append(i)
            if enumerate_up_front:
                return

        for i, (sol, err) in enumerate(self._run_all(lambda i: self.full_response(i, zero))):
            name = self.leaders[i].name
            if isinstance(err, (Infeasible, Unbounded)):
                raise _Stop(EPECStatus.NO_EQUILIBRIUM, f"leader {name}: {err}")
            if err is not None:
                if self._expired():
                    raise _Stop(EPECStatus.TIME_LIMIT_REACHED, f"time limit reached: {err}")
                raise _Stop(EPECStatus.NUMERICAL_FAILURE, f"leader {name}: {err}")
            solver = LCPSolver(self.leaders[i].lcp_for(self.others(i, zero)), self.params.solver)
            self.inner[i].add(solver.encode(sol), sol.z)

    def solve(
        self,
        iter_callback: Callable[[int, Dict[str, object], float, List[int]], None] | None = None,
    ) -> EPECResult:
        """
        Run the inner-approximation algorithm.

        Args:
            iter_callback: Optional callback(iter, state, max_gain, inner_sizes),
                called at the end of every pass that produced a profile.

        Returns:
            EPECResult. On TIME_LIMIT_REACHED the decisions are the incumbent,
            the profile with the smallest maximal gain seen so far. When a
            pure equilibrium was asked for but only a mixed one exists, the
            status is NO_EQUILIBRIUM and the decisions are the mixed one.
        """
        params = self.params
        t0 = time.perf_counter()
        self._deadline = t0 + params.time_limit if params.time_limit is not None else None
        stats = self.statistics
        n = len(self.leaders)
        names = [ld.name for ld in self.leaders]

        profile: List[np.ndarray] = [np.zeros(ld.n_cols) for ld in self.leaders]
        objectives = np.full(n, np.nan)
        weights: List[np.ndarray] | None = None
        incumbent: Tuple[float, List[np.ndarray], np.ndarray] | None = None
        mixed: Tuple[List[np.ndarray], np.ndarray, List[np.ndarray]] | None = None
        vertices: Dict[str, List[np.ndarray]] | None = {} if params.enumerate_vertices else None
        iter_rows: List[Dict[str, object]] = []

        self.status = EPECStatus.ITERATING
        logger.info("EPEC with %d leaders: %s, policy=%s", n, params.algorithm.value, params.add_policy.value)
        try:
            self._initialize([p.copy() for p in profile], vertices)
            self._record_sizes()

            it = 0
            add_more = False
            seek_pure = False
            while True:
                if self._expired():
                    raise _Stop(EPECStatus.TIME_LIMIT_REACHED, f"time limit of {params.time_limit}s reached")
                if params.max_iterations is not None and it >= params.max_iterations:
                    raise _Stop(EPECStatus.ITERATION_LIMIT_REACHED, f"{it} passes without equilibrium")
                it += 1
                stats.iterations = it
                t_pass = time.perf_counter()

                extra = 0
                if add_more:
                    extra = self._add_to_all(profile)
                    if not extra:
                        if mixed is not None:
                            raise _Stop(
                                EPECStatus.NO_EQUILIBRIUM,
                                "no pure-strategy equilibrium; the decisions are a mixed one",
                            )
                        raise _Stop(
                            EPECStatus.NO_EQUILIBRIUM,
                            "the approximated game has no equilibrium and no polyhedron is left to add",
                        )
                    add_more = False

                try:
                    eq = self.approximate_equilibrium(pure=seek_pure)
                except (Infeasible, Unbounded) as e:
                    stats.lost_equilibria += 1
                    add_more = True
                    logger.info(
                        "pass %d: approximated game has no %sequilibrium (%s)", it, "pure " if seek_pure else "", e
                    )
                    iter_rows.append({
                        "iter": it,
                        "approx_equilibrium": 0,
                        "heuristic": extra,
                        "pass_time": time.perf_counter() - t_pass,
                    })
                    continue
                except SolveError as e:
                    if self._expired():
                        raise _Stop(EPECStatus.TIME_LIMIT_REACHED, f"time limit reached: {e}")
                    self._recover(e)
                    iter_rows.append({"iter": it, "recovered": 1, "pass_time": time.perf_counter() - t_pass})
                    continue
                t_approx = time.perf_counter() - t_pass

                moved = max(
                    float(np.max(np.abs(new - old), initial=0.0)) for new, old in zip(eq.profile, profile)
                )
                profile = eq.profile
                weights = eq.weights
                pure = seek_pure or eq.pure

                t_full0 = time.perf_counter()
                objectives, gains, violating, full = self._certify(profile)
                t_full = time.perf_counter() - t_full0

                max_gain = float(np.max(gains))
                stats.max_gain = max_gain
                if incumbent is None or max_gain < incumbent[0]:
                    incumbent = (max_gain, [p.copy() for p in profile], objectives.copy())

                added = self._add_deviations(violating, gains, full, profile) if violating else []
                self._record_sizes()

                row: Dict[str, object] = {
                    "iter": it,
                    "max_gain": max_gain,
                    "violating": len(violating),
                    "added": ",".join(names[i] for i in added),
                    "heuristic": extra,
                    "pure": int(pure),
                    "moved": moved,
                    "approx_time": t_approx,
                    "full_time": t_full,
                    "pass_time": time.perf_counter() - t_pass,
                }
                for i, name in enumerate(names):
                    row[f"obj_{name}"] = float(objectives[i])
                    row[f"gain_{name}"] = float(gains[i])
                    row[f"inner_{name}"] = len(self.inner[i])
                iter_rows.append(row)
                logger.info(
                    "pass %d: max_gain=%.3e violating=%d added=%d pure=%s sizes=%s",
                    it, max_gain, len(violating), len(added), pure, stats.inner_sizes,
                )
                if iter_callback is not None:
                    state = {
                        "profile": dict(zip(names, profile)),
                        "objectives": dict(zip(names, objectives.tolist())),
                        "gains": dict(zip(names, gains.tolist())),
                        "weights": dict(zip(names, weights)),
                    }
                    iter_callback(it, state, max_gain, list(stats.inner_sizes))

                if not violating:
                    stats.pure = pure
                    if pure or not params.pure_ne:
                        raise _Stop(EPECStatus.EQUILIBRIUM_FOUND, f"equilibrium after {it} passes")
                    if mixed is None:
                        mixed = ([p.copy() for p in profile], objectives.copy(), [w.copy() for w in weights])
                    if params.pure_recovery == PureRecovery.COMBINATORIAL:
                        found = self._combinatorial()
                        if found is None:
                            raise _Stop(
                                EPECStatus.NO_EQUILIBRIUM,
                                "no pure-strategy equilibrium; the decisions are a mixed one",
                            )
                        eq, objectives, gains = found
                        profile, weights = eq.profile, eq.weights
                        stats.pure = True
                        stats.max_gain = float(np.max(gains))
                        raise _Stop(EPECStatus.EQUILIBRIUM_FOUND, "pure equilibrium by combinatorial search")
                    logger.info("pass %d: the equilibrium is mixed, searching for a pure one", it)
                    seek_pure = True
                    continue
                if not added:
                    raise _Stop(
                        EPECStatus.NUMERICAL_FAILURE,
                        "leaders can deviate but every deviation polyhedron is already in the approximation",
                    )
        except _Stop as stop:
            self.status = stop.status
            stats.message = stop.message

        stats.status = self.status
        stats.wall_clock = time.perf_counter() - t0
        if self.status == EPECStatus.TIME_LIMIT_REACHED and incumbent is not None:
            _, profile, objectives = incumbent
            stats.max_gain = incumbent[0]
        if self.status == EPECStatus.NO_EQUILIBRIUM and mixed is not None:
            profile, objectives, weights = mixed
            stats.pure = False
        logger.info("EPEC finished: %s (%s) in %.2fs", self.status.value, stats.message, stats.wall_clock)

        return EPECResult(
            status=self.status,
            decisions=dict(zip(names, profile)),
            objectives={name: float(v) for name, v in zip(names, objectives)},
            statistics=stats,
            iter_rows=iter_rows,
            polyhedra={name: self.inner[i].numbers() for i, name in enumerate(names)},
            vertices=vertices,
            weights=None if weights is None else dict(zip(names, weights)),
        )

    def _eps(self) -> float:
        return max(ld.lcp.eps for ld in self.leaders)

    def _record_sizes(self) -> None:
        self.statistics.inner_sizes = [len(inner) for inner in self.inner]

    def _add_deviations(
        self,
        violating: List[int],
        gains: np.ndarray,
        full: List[Tuple[LCPSolution | None, SolveError | None]],
        profile: Sequence[np.ndarray],
    ) -> List[int]:
        quota = len(violating) if self.params.add_policy == AddPolicy.EXHAUSTIVE else 1
        added: List[int] = []
        for i in self._select(violating, gains):
            sol = full[i][0]
            solver = LCPSolver(self.leaders[i].lcp_for(self.others(i, profile)), self.params.solver)
            if self.inner[i].add(solver.encode(sol), sol.z):
                self.statistics.polyhedra_added[i] += 1
                self._history.append(i)
                added.append(i)
                if self.params.add_policy == AddPolicy.ROUND_ROBIN:
                    self._cursor = (i + 1) % len(self.leaders)
                if len(added) >= quota:
                    break
        return added

    # ------------------------------------------------------------------
    # polyhedra proposed when the approximated game has no equilibrium
    # ------------------------------------------------------------------
    def _next_poly(self, i: int) -> int | None:
        """Next untried polyhedron id for leader ``i``, or None when all were tried."""
        n_pairs = self.leaders[i].n_pairs
        total = 2 ** n_pairs
        inner, infeasible = self.inner[i], self._infeasible[i]
        if self.params.add_poly_method == PolyMethod.RANDOM:
            if len(inner) + len(infeasible) >= total:
                return None
            while True:
                bits = self._rng.integers(0, 2, size=n_pairs)
                number = pattern_to_number([2 * int(bit) - 1 for bit in bits])
                if number not in infeasible and not inner.has_number(number):
                    return number
        step = 1 if self.params.add_poly_method == PolyMethod.SEQUENTIAL else -1
        while 0 <= self._poly_cursor[i] < total:
            number = self._poly_cursor[i]
            self._poly_cursor[i] += step
            if number not in infeasible and not inner.has_number(number):
                return number
        return None

    def _add_polyhedra(self, i: int, count: int, profile: Sequence[np.ndarray]) -> int:
        """Add up to ``count`` feasible, untried polyhedra to leader ``i``."""
        leader = self.leaders[i]
        x_other = self.others(i, profile)
        solver = LCPSolver(leader.lcp_for(x_other), self.params.solver, name=f"{leader.name}_extra")
        added = 0
        while added < count:
            number = self._next_poly(i)
            if number is None:
                break
            pattern = number_to_pattern(number, leader.n_pairs)
            try:
                sol = self._with_retries(lambda: solver.solve_pattern(pattern, time_limit=self._remaining()))
            except Infeasible:
                self._infeasible[i].add(number)
                continue
            except SolveError as e:
                logger.warning("leader %s: polyhedron %d is unusable: %s", leader.name, number, e)
                self._infeasible[i].add(number)
                continue
            self.inner[i].add(pattern, sol.z)
            self._history.append(i)
            self.statistics.polyhedra_added[i] += 1
            added += 1
        return added

    def _add_to_all(self, profile: Sequence[np.ndarray]) -> int:
        """Give every leader up to ``aggressiveness`` new polyhedra; return how many were added."""
        total = 0
        for i, leader in enumerate(self.leaders):
            added = self._add_polyhedra(i, self.params.aggressiveness, profile)
            logger.info("leader %s: added %d untried polyhedra", leader.name, added)
            total += added
        self._record_sizes()
        return total

    def _combinatorial(self) -> Tuple[ApproximateEquilibrium, np.ndarray, np.ndarray] | None:
        """Look for a pure equilibrium over every choice of one polyhedron per leader.

        Choices made only of polyhedra already in the approximation are
        skipped. Each choice is tried on its own; the approximations are
        restored afterwards and, on success, the chosen polyhedra added.
        Returns ``(equilibrium, objectives, gains)`` or None.
        """
        zero = [np.zeros(ld.n_cols) for ld in self.leaders]
        candidates = []
        for i, leader in enumerate(self.leaders):
            solver = LCPSolver(leader.lcp_for(self.others(i, zero)), self.params.solver, name=f"{leader.name}_pure")
            en = solver.enumerate_all(workers=self.params.threads, deadline=self._deadline)
            if self._expired():
                raise _Stop(EPECStatus.TIME_LIMIT_REACHED, "time limit reached while enumerating")
            candidates.append([(p, sol.z) for p, sol in zip(en.patterns, en.points)])

        tried = [set(inner.numbers()) for inner in self.inner]
        saved = [(list(inner.patterns), list(inner.points)) for inner in self.inner]
        found = None
        try:
            for combo in itertools.product(*candidates):
                if self._expired():
                    raise _Stop(EPECStatus.TIME_LIMIT_REACHED, "time limit reached in the pure-strategy search")
                if all(pattern_to_number(p) in tried[i] for i, (p, _) in enumerate(combo)):
                    continue
                for inner, (pattern, point) in zip(self.inner, combo):
                    inner.reset([pattern], [point])
                try:
                    eq = self.approximate_equilibrium()
                except (Infeasible, Unbounded):
                    continue
                except SolveError as e:
                    numbers = [pattern_to_number(p) for p, _ in combo]
                    logger.warning("pure-strategy search: combination %s failed: %s", numbers, e)
                    continue
                objectives, gains, violating, _ = self._certify(eq.profile)
                if not violating:
                    found = (combo, eq, objectives, gains)
                    break
        finally:
            for inner, (patterns, points) in zip(self.inner, saved):
                inner.reset(patterns, points)
            self._record_sizes()

        if found is None:
            return None
        combo, eq, objectives, gains = found
        for i, (pattern, point) in enumerate(combo):
            if self.inner[i].add(pattern, point):
                self.statistics.polyhedra_added[i] += 1
                self._history.append(i)
        self._record_sizes()
        return eq, objectives, gains

    def _recover(self, err: SolveError) -> None:
        """Handle a failed solve of the approximated game."""
        if self.params.recovery == RecoveryStrategy.ABORT:
            raise _Stop(EPECStatus.NUMERICAL_FAILURE, f"approximated game failed: {err}")
        if not self._history:
            raise _Stop(
                EPECStatus.NUMERICAL_FAILURE,
                f"approximated game failed and nothing is left to revert: {err}",
            )
        i = self._history.pop()
        removed = self.inner[i].revert()
        self.statistics.recoveries += 1
        self._record_sizes()
        logger.warning(
            "leader %s: reverted polyhedron %d after %s",
            self.leaders[i].name, pattern_to_number(removed), err,
        )
