"""
Linear complementarity problems and their solution through GAMSPy.

An LCP here is the system

    w = M z + q,   w >= 0,   z >= 0,   w_r * z_c = 0 for every pair (r, c)

where ``M`` may carry extra, non-complementary columns (leader variables) on
top of its square complementary block, plus optional linear cuts
``A z <= b``.

Three ways of solving are offered:

* ``solve_as_mip``: exact, one binary per unfixed pair with big-M links, or
  one SOS1 set per pair when ``SolverSettings.indicators`` is on. With an
  objective this is how an MPEC best response is computed.
* ``solve_as_relaxed_qp``: drop integrality and minimise the complementarity
  products. Only used to prune the enumeration.
* ``enumerate_all``: depth-first branch-and-bound over complementarity sign
  patterns, returning every complementary vertex.

Sign patterns follow one convention throughout the package: for each pair
``+1`` means the row slack ``w`` is zero, ``-1`` means the column variable
``z`` is zero and ``0`` means both are zero (or, inside the enumeration, that
the pair is still undecided).
"""
from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Iterable, List, Sequence, Tuple

import numpy as np
from gamspy import Alias, Equation, Model, Problem, Sense, Sum, Variable, VariableType

from .config import SolverSettings
from .errors import DimensionMismatch, Infeasible, SolveError, SolverError
from .solver_session import SolverSession

logger = logging.getLogger(__name__)

Pattern = Tuple[int, ...]


def _readonly(arr: np.ndarray) -> np.ndarray:
    arr.setflags(write=False)
    return arr


@dataclass(frozen=True)
class QuadraticObjective:
    """Minimise ``1/2 z'Qz + c'z + constant`` over the LCP columns."""

    c: np.ndarray
    Q: np.ndarray | None = None
    constant: float = 0.0

    def value(self, z: np.ndarray) -> float:
        z = np.asarray(z, dtype=float)
        val = float(self.c @ z) + self.constant
        if self.Q is not None:
            val += 0.5 * float(z @ self.Q @ z)
        return val

    @property
    def quadratic(self) -> bool:
        return self.Q is not None and bool(np.any(self.Q != 0.0))


@dataclass(frozen=True)
class LCPSolution:
    z: np.ndarray
    w: np.ndarray
    objective: float = 0.0


@dataclass
class Enumeration:
    """Outcome of ``LCPSolver.enumerate_all``.

    ``patterns`` lists every feasible polyhedron and ``points`` the point
    found in each; ``solutions`` keeps the distinct vertices only, so two
    polyhedra meeting in one point show up twice in ``patterns`` but once in
    ``solutions``. ``skipped`` holds leaves whose solves kept failing.
    """

    solutions: List[LCPSolution] = field(default_factory=list)
    patterns: List[Pattern] = field(default_factory=list)
    points: List[LCPSolution] = field(default_factory=list)
    skipped: List[Pattern] = field(default_factory=list)
    complete: bool = True
    nodes: int = 0


_LEAF_ATTEMPTS = 2


class _LeafSkipped(Exception):
    pass


class LCP:
    """Immutable LCP instance; arrays are copied and frozen on construction."""

    def __init__(
        self,
        M,
        q,
        pairs: Sequence[Tuple[int, int]] | None = None,
        A=None,
        b=None,
        *,
        eps: float = 1e-6,
        eps_int: float = 1e-8,
        big_m: float = 1e5,
    ):
        M = np.atleast_2d(np.array(M, dtype=float))
        q = np.array(q, dtype=float).ravel()
        n_rows, n_cols = M.shape
        if q.shape[0] != n_rows:
            raise DimensionMismatch(f"q has {q.shape[0]} entries, M has {n_rows} rows")
        if n_cols < n_rows:
            raise DimensionMismatch(f"M must have at least as many columns as rows, got {M.shape}")

        if pairs is None:
            pairs = [(i, i) for i in range(n_rows)]
        pairs = [(int(r), int(c)) for r, c in pairs]
        rows = sorted(r for r, _ in pairs)
        cols = [c for _, c in pairs]
        if rows != list(range(n_rows)):
            raise DimensionMismatch("every row must appear in exactly one complementarity pair")
        if len(set(cols)) != len(cols) or any(c < 0 or c >= n_cols for c in cols):
            raise DimensionMismatch(f"pair columns must be distinct and in [0, {n_cols})")

        if (A is None) != (b is None):
            raise DimensionMismatch("A and b must be given together")
        if A is not None:
            A = np.atleast_2d(np.array(A, dtype=float))
            b = np.array(b, dtype=float).ravel()
            if A.shape[1] != n_cols or A.shape[0] != b.shape[0]:
                raise DimensionMismatch(
                    f"cut matrix {A.shape} does not match {n_cols} columns and {b.shape[0]} rhs"
                )
            if A.shape[0] == 0:
                A, b = None, None

        if eps <= 0.0 or eps_int <= 0.0 or big_m <= 0.0:
            raise ValueError("eps, eps_int and big_m must be > 0")

        self.M = _readonly(M)
        self.q = _readonly(q)
        self.pairs: Tuple[Tuple[int, int], ...] = tuple(sorted(pairs))
        self.A = _readonly(A) if A is not None else None
        self.b = _readonly(b) if b is not None else None
        self.eps = float(eps)
        self.eps_int = float(eps_int)
        self.big_m = float(big_m)

    @property
    def n_rows(self) -> int:
        return self.M.shape[0]

    @property
    def n_cols(self) -> int:
        return self.M.shape[1]

    @property
    def leader_columns(self) -> List[int]:
        paired = {c for _, c in self.pairs}
        return [j for j in range(self.n_cols) if j not in paired]

    def residual(self, z) -> np.ndarray:
        return self.M @ np.asarray(z, dtype=float) + self.q

    def pair_matrix(self) -> np.ndarray:
        P = np.zeros(self.M.shape)
        for r, c in self.pairs:
            P[r, c] = 1.0
        return P

    def with_cuts(self, A, b) -> "LCP":
        """Return a copy with the rows ``A z <= b`` appended to the cuts."""
        A = np.atleast_2d(np.array(A, dtype=float))
        b = np.array(b, dtype=float).ravel()
        if self.A is not None:
            A = np.vstack([self.A, A])
            b = np.concatenate([self.b, b])
        return LCP(self.M, self.q, self.pairs, A, b, eps=self.eps, eps_int=self.eps_int, big_m=self.big_m)

    def save(self, path: str) -> None:
        np.savez(
            path,
            M=self.M,
            q=self.q,
            pairs=np.array(self.pairs, dtype=int).reshape(-1, 2),
            A=self.A if self.A is not None else np.zeros((0, self.n_cols)),
            b=self.b if self.b is not None else np.zeros(0),
            tolerances=np.array([self.eps, self.eps_int, self.big_m]),
        )

    @classmethod
    def load(cls, path: str) -> "LCP":
        with np.load(path) as f:
            eps, eps_int, big_m = (float(v) for v in f["tolerances"])
            A = f["A"] if f["A"].shape[0] else None
            b = f["b"] if A is not None else None
            return cls(
                f["M"],
                f["q"],
                [tuple(p) for p in f["pairs"]],
                A,
                b,
                eps=eps,
                eps_int=eps_int,
                big_m=big_m,
            )

    def __repr__(self) -> str:
        n_cuts = 0 if self.A is None else self.A.shape[0]
        return f"LCP(rows={self.n_rows}, cols={self.n_cols}, cuts={n_cuts})"


# ---------------------------------------------------------------------------
# pattern helpers
# ---------------------------------------------------------------------------
def pattern_to_number(pattern: Sequence[int]) -> int:
    """Decimal id of a fully decided pattern, most significant pair first."""
    number = 0
    for s in pattern:
        if s not in (1, -1):
            raise ValueError(f"pattern must be fully decided, got {tuple(pattern)}")
        number = 2 * number + (s + 1) // 2
    return number


def number_to_pattern(number: int, n_pairs: int) -> Pattern:
    if number < 0 or number >= 2 ** n_pairs:
        raise ValueError(f"polyhedron id {number} out of range for {n_pairs} pairs")
    bits = [(number >> k) & 1 for k in range(n_pairs)]
    return tuple(1 if bit else -1 for bit in reversed(bits))


def resolve_pattern(pattern: Sequence[int]) -> Pattern:
    """Turn degenerate (0) entries into +1 so the pattern names one polyhedron."""
    return tuple(1 if s == 0 else int(s) for s in pattern)


def covers(partial: Sequence[int], full: Sequence[int]) -> bool:
    return all(p == 0 or p == f for p, f in zip(partial, full))


class LCPSolver:
    """Solves one LCP through GAMSPy; each solve opens its own session."""

    def __init__(self, lcp: LCP, settings: SolverSettings | None = None, *, name: str = "lcp"):
        self.lcp = lcp
        self.settings = settings or SolverSettings()
        self.name = name
        self.known_infeasible: set[int] = set()
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # checks and encodings
    # ------------------------------------------------------------------
    def error_check(self, solution: LCPSolution) -> Tuple[bool, float]:
        """Return ``(feasible, max_violation)`` for a candidate solution."""
        lcp = self.lcp
        z = np.asarray(solution.z, dtype=float)
        if z.shape[0] != lcp.n_cols:
            raise DimensionMismatch(f"solution has {z.shape[0]} columns, LCP has {lcp.n_cols}")
        w_true = lcp.residual(z)
        w = np.asarray(solution.w, dtype=float)

        viol = float(np.max(np.abs(w - w_true), initial=0.0))
        viol = max(viol, float(np.max(-z, initial=0.0)), float(np.max(-w_true, initial=0.0)))
        for r, c in lcp.pairs:
            viol = max(viol, min(max(w_true[r], 0.0), max(z[c], 0.0)))
        if lcp.A is not None:
            viol = max(viol, float(np.max(lcp.A @ z - lcp.b, initial=0.0)))

        tol = lcp.eps * max(1.0, float(np.max(np.abs(z), initial=0.0)))
        return viol <= tol, viol

    def encode(self, solution: LCPSolution) -> Pattern:
        lcp = self.lcp
        w = lcp.residual(solution.z)
        out = []
        for r, c in lcp.pairs:
            w_zero = abs(w[r]) <= lcp.eps
            z_zero = abs(solution.z[c]) <= lcp.eps
            if not (w_zero or z_zero):
                logger.warning(
                    "%s: pair (%d, %d) is not complementary (w=%g, z=%g)",
                    self.name, r, c, w[r], solution.z[c],
                )
            out.append(int(w_zero) - int(z_zero))
        return tuple(out)

    def fixings(self, pattern: Sequence[int]) -> Tuple[List[int], List[int]]:
        if len(pattern) != len(self.lcp.pairs):
            raise DimensionMismatch(
                f"pattern has {len(pattern)} entries, LCP has {len(self.lcp.pairs)} pairs"
            )
        rows, cols = [], []
        for (r, c), s in zip(self.lcp.pairs, pattern):
            if s > 0:
                rows.append(r)
            elif s < 0:
                cols.append(c)
        return rows, cols

    def polyhedron(self, pattern: Sequence[int], bounds: bool = True) -> Tuple[np.ndarray, np.ndarray]:
        """Inequality description ``G z <= h`` of the polyhedron named by ``pattern``.

        With ``bounds=False`` the rows ``-z <= 0`` are left out, for callers
        that already keep ``z`` nonnegative.
        """
        lcp = self.lcp
        rows, cols = self.fixings(resolve_pattern(pattern))
        n = lcp.n_cols
        blocks_G = [-lcp.M]
        blocks_h = [lcp.q]
        if bounds:
            blocks_G.insert(0, -np.eye(n))
            blocks_h.insert(0, np.zeros(n))
        if rows:
            blocks_G.append(lcp.M[rows, :])
            blocks_h.append(-lcp.q[rows])
        if cols:
            blocks_G.append(np.eye(n)[cols, :])
            blocks_h.append(np.zeros(len(cols)))
        if lcp.A is not None:
            blocks_G.append(lcp.A)
            blocks_h.append(lcp.b)
        return np.vstack(blocks_G), np.concatenate(blocks_h)

    def _free_rows(self, fixed_rows: Iterable[int], fixed_cols: Iterable[int]) -> List[int]:
        row_fixed = set(fixed_rows)
        col_fixed = set(fixed_cols)
        return [r for r, c in self.lcp.pairs if r not in row_fixed and c not in col_fixed]

    def _check_big_m(self, solution: LCPSolution) -> None:
        lcp = self.lcp
        limit = lcp.big_m * (1.0 - lcp.eps)
        for r, c in lcp.pairs:
            if solution.w[r] >= limit or solution.z[c] >= limit:
                logger.warning(
                    "%s: pair (%d, %d) sits on the big-M bound %g; the MIP may have cut off solutions",
                    self.name, r, c, lcp.big_m,
                )
                return

    # ------------------------------------------------------------------
    # solves
    # ------------------------------------------------------------------
    def solve_as_mip(
        self,
        fixed_rows: Iterable[int] = (),
        fixed_cols: Iterable[int] = (),
        objective: QuadraticObjective | None = None,
        *,
        time_limit: float | None = None,
        binary_cols: Iterable[int] = (),
    ) -> LCPSolution:
        """Solve the LCP exactly with one disjunction on every pair left free.

        Without an objective, ``sum(z) + sum(w)`` is minimised, which only
        selects among feasible complementary points. Columns listed in
        ``binary_cols`` are restricted to 0 or 1.
        """
        fixed_rows, fixed_cols = list(fixed_rows), list(fixed_cols)
        binary_cols = list(binary_cols)
        sos = self.settings.indicators
        try:
            solution = self._solve(fixed_rows, fixed_cols, "mip", objective, time_limit, binary_cols, sos)
        except Infeasible:
            if sos or not self._free_rows(fixed_rows, fixed_cols):
                raise
            logger.info("%s: big-M model is infeasible, confirming with SOS1 sets", self.name)
            solution = self._solve(fixed_rows, fixed_cols, "mip", objective, time_limit, binary_cols, True)
            sos = True
        if not sos:
            self._check_big_m(solution)
        ok, viol = self.error_check(solution)
        if not ok:
            raise SolveError(
                f"{self.name}: solver point violates the LCP by {viol:.3e}", model=self.name
            )
        return solution

    def solve_pattern(
        self,
        pattern: Sequence[int],
        objective: QuadraticObjective | None = None,
        *,
        time_limit: float | None = None,
    ) -> LCPSolution:
        rows, cols = self.fixings(resolve_pattern(pattern))
        return self.solve_as_mip(rows, cols, objective, time_limit=time_limit)

    def solve_as_relaxed_qp(
        self,
        fixed_rows: Iterable[int] = (),
        fixed_cols: Iterable[int] = (),
        *,
        time_limit: float | None = None,
    ) -> Tuple[LCPSolution, float]:
        """Minimise the complementarity products without integrality.

        Returns the candidate and its complementarity violation; raises
        ``Infeasible`` when the linear part admits no point.
        """
        solution = self._solve(list(fixed_rows), list(fixed_cols), "relaxed", None, time_limit)
        _, viol = self.error_check(solution)
        return solution, viol

    def _solve(
        self,
        fixed_rows: List[int],
        fixed_cols: List[int],
        mode: str,
        objective: QuadraticObjective | None,
        time_limit: float | None,
        binary_cols: Sequence[int] = (),
        sos: bool = False,
    ) -> LCPSolution:
        lcp = self.lcp
        for r in fixed_rows:
            if not 0 <= r < lcp.n_rows:
                raise DimensionMismatch(f"fixed row {r} out of range [0, {lcp.n_rows})")
        for col in list(fixed_cols) + list(binary_cols):
            if not 0 <= col < lcp.n_cols:
                raise DimensionMismatch(f"column {col} out of range [0, {lcp.n_cols})")
        if objective is not None and np.asarray(objective.c).shape[0] != lcp.n_cols:
            raise DimensionMismatch(
                f"objective has {np.asarray(objective.c).shape[0]} entries, LCP has {lcp.n_cols} columns"
            )

        free = self._free_rows(fixed_rows, fixed_cols)

        with SolverSession(self.settings, name=self.name) as s:
            m = s.container
            rl = s.labels("r", lcp.n_rows)
            cl = s.labels("c", lcp.n_cols)
            r = s.index_set("r", rl)
            c = s.index_set("c", cl)

            M = s.matrix("M", [r, c], rl, cl, lcp.M)
            q = s.vector("q", r, rl, lcp.q)
            P = s.matrix("P", [r, c], rl, cl, lcp.pair_matrix())

            z = Variable(m, "z", domain=[c], type=VariableType.POSITIVE)
            w = Variable(m, "w", domain=[r], type=VariableType.POSITIVE)
            for row in fixed_rows:
                w.up[rl[row]] = 0.0
            for col in fixed_cols:
                z.up[cl[col]] = 0.0

            equations = []
            wdef = Equation(m, "wdef", domain=[r])
            wdef[r] = w[r] == Sum(c, M[r, c] * z[c]) + q[r]
            equations.append(wdef)

            if lcp.A is not None:
                kl = s.labels("k", lcp.A.shape[0])
                k = s.index_set("k", kl)
                A = s.matrix("Acut", [k, c], kl, cl, lcp.A)
                b = s.vector("bcut", k, kl, lcp.b)
                cuts = Equation(m, "cuts", domain=[k])
                cuts[k] = Sum(c, A[k, c] * z[c]) <= b[k]
                equations.append(cuts)

            disjunctive = mode == "mip" and bool(free)
            if disjunctive:
                fr = s.index_set("fr", [rl[i] for i in free], domain=[r])
                if sos:
                    # at most one member of each (w_r, z_c) set is nonzero
                    side = s.index_set("side", ["w", "z"])
                    pair = Variable(m, "pair", domain=[fr, side], type=VariableType.SOS1)
                    sos_w = Equation(m, "sos_w", domain=[fr])
                    sos_w[fr] = pair[fr, "w"] == w[fr]
                    sos_z = Equation(m, "sos_z", domain=[fr])
                    sos_z[fr] = pair[fr, "z"] == Sum(c, P[fr, c] * z[c])
                    equations.extend([sos_w, sos_z])
                else:
                    u = Variable(m, "u", domain=[fr], type=VariableType.BINARY)
                    link_w = Equation(m, "link_w", domain=[fr])
                    link_w[fr] = w[fr] <= lcp.big_m * u[fr]
                    link_z = Equation(m, "link_z", domain=[fr])
                    link_z[fr] = Sum(c, P[fr, c] * z[c]) <= lcp.big_m * (1 - u[fr])
                    equations.extend([link_w, link_z])

            if mode == "mip" and binary_cols:
                bc = s.index_set("bc", [cl[j] for j in binary_cols], domain=[c])
                v = Variable(m, "v", domain=[bc], type=VariableType.BINARY)
                integral = Equation(m, "integral", domain=[bc])
                integral[bc] = z[bc] == v[bc]
                equations.append(integral)
                disjunctive = True

            if mode == "relaxed":
                obj = Sum([r, c], P[r, c] * w[r] * z[c])
                problem = Problem.QCP
                solver = self.settings.qp_solver
            elif objective is None:
                obj = Sum(c, z[c]) + Sum(r, w[r])
                problem = Problem.MIP if disjunctive else Problem.LP
                solver = self.settings.mip_solver
            else:
                lin = s.vector("lin", c, cl, np.asarray(objective.c, dtype=float))
                obj = Sum(c, lin[c] * z[c])
                if objective.quadratic:
                    c2 = Alias(m, "c2", c)
                    Qo = s.matrix("Qo", [c, c], cl, cl, np.asarray(objective.Q, dtype=float))
                    obj = 0.5 * Sum([c, c2], Qo[c, c2] * z[c] * z[c2]) + obj
                    problem = Problem.MIQCP if disjunctive else Problem.QCP
                else:
                    problem = Problem.MIP if disjunctive else Problem.LP
                solver = self.settings.mip_solver

            model = Model(
                m,
                f"{self.name}_{mode}",
                equations=equations,
                problem=problem,
                sense=Sense.MIN,
                objective=obj,
            )
            value = s.solve(model, solver=solver, time_limit=time_limit)

            z_val = s.values(z, cl)
            z_val[np.abs(z_val) <= lcp.eps_int] = 0.0
            w_val = lcp.residual(z_val)

        if objective is not None:
            value += objective.constant
        return LCPSolution(z=z_val, w=w_val, objective=value)

    # ------------------------------------------------------------------
    # enumeration
    # ------------------------------------------------------------------
    def _solve_leaf(self, node: Pattern, rows: List[int], cols: List[int]) -> LCPSolution | None:
        """Solve a fully fixed node; ``None`` when it is infeasible or keeps failing."""
        for attempt in range(1, _LEAF_ATTEMPTS + 1):
            try:
                return self.solve_as_mip(rows, cols)
            except Infeasible:
                with self._lock:
                    self.known_infeasible.add(pattern_to_number(node))
                return None
            except SolverError as e:
                logger.warning(
                    "%s: leaf %s failed (attempt %d/%d): %s", self.name, node, attempt, _LEAF_ATTEMPTS, e
                )
            except SolveError as e:
                logger.warning("%s: leaf %s failed: %s", self.name, node, e)
                break
        raise _LeafSkipped(node)

    def enumerate_all(self, workers: int = 1, deadline: float | None = None) -> Enumeration:
        """Enumerate every complementary vertex by depth-first branch-and-bound.

        Nodes are partial sign patterns kept on an explicit stack. An interior
        node is pruned when its relaxation is infeasible; when the relaxation
        itself fails the node is branched on anyway. A leaf fixes every pair
        and is accepted only after ``error_check``; a leaf that keeps failing
        is skipped and the result marked incomplete. ``deadline`` is a
        ``time.perf_counter()`` timestamp checked between nodes.
        """
        if workers < 1:
            raise ValueError("workers must be >= 1")

        n_pairs = len(self.lcp.pairs)
        stack: List[Pattern] = [tuple([0] * n_pairs)]
        found: List[Tuple[Pattern, LCPSolution]] = []
        result = Enumeration()

        def _visit(node: Pattern) -> List[Pattern]:
            depth = next((k for k, s in enumerate(node) if s == 0), n_pairs)
            rows, cols = self.fixings(node)
            if depth == n_pairs:
                if pattern_to_number(node) in self.known_infeasible:
                    return []
                try:
                    sol = self._solve_leaf(node, rows, cols)
                except _LeafSkipped:
                    with self._lock:
                        result.skipped.append(node)
                    return []
                if sol is not None:
                    with self._lock:
                        found.append((node, sol))
                return []
            try:
                self.solve_as_relaxed_qp(rows, cols)
            except Infeasible:
                logger.debug("%s: pruned node %s", self.name, node)
                return []
            except SolveError as e:
                logger.warning("%s: relaxation failed at node %s, branching anyway: %s", self.name, node, e)
            children = []
            for sign in (-1, 1):
                child = list(node)
                child[depth] = sign
                children.append(tuple(child))
            return children

        executor = ThreadPoolExecutor(max_workers=workers) if workers > 1 else None
        try:
            while stack:
                if deadline is not None and time.perf_counter() >= deadline:
                    result.complete = False
                    logger.info("%s: enumeration stopped by time limit after %d nodes", self.name, result.nodes)
                    break
                batch = [stack.pop() for _ in range(min(workers, len(stack)))]
                result.nodes += len(batch)
                if executor is None:
                    expansions = [_visit(node) for node in batch]
                else:
                    expansions = list(executor.map(_visit, batch))
                for children in reversed(expansions):
                    stack.extend(children)
        finally:
            if executor is not None:
                executor.shutdown(wait=True)

        if result.skipped:
            result.complete = False
            result.skipped.sort(key=pattern_to_number, reverse=True)
        found.sort(key=lambda item: pattern_to_number(item[0]), reverse=True)
        for pattern, sol in found:
            result.patterns.append(pattern)
            result.points.append(sol)
            duplicate = any(
                np.max(np.abs(sol.z - kept.z), initial=0.0) <= self.lcp.eps for kept in result.solutions
            )
            if not duplicate:
                result.solutions.append(sol)
        logger.info(
            "%s: %d feasible polyhedra, %d distinct vertices in %d nodes%s",
            self.name, len(result.patterns), len(result.solutions), result.nodes,
            "" if result.complete else " (partial)",
        )
        return result
