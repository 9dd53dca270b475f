"""
Parametrized convex quadratic programs.

A follower solves

    min_y  1/2 y'Qy + (C x + c)'y
    s.t.   A x + B y <= b,   y >= 0

for a parameter vector ``x`` holding the decisions of everybody else. Its
KKT conditions are the LCP

    0 <= (y, lam)  _|_  M (y, lam) + N x + q >= 0

with ``M = [[Q, B'], [-B, 0]]``, ``N = [[C], [-A]]`` and ``q = [c; b]``.
"""
from __future__ import annotations

import logging
from typing import Tuple

import numpy as np
from gamspy import Alias, Equation, Model, Problem, Sense, Sum, Variable, VariableType

from .config import SolverSettings
from .errors import DimensionMismatch, NonConvex
from .lcp import LCP
from .solver_session import SolverSession

logger = logging.getLogger(__name__)


def _as_matrix(value, rows: int, cols: int, name: str) -> np.ndarray:
    arr = np.array(value, dtype=float)
    if arr.size == 0:
        arr = arr.reshape(rows, cols) if rows * cols == 0 else arr
    elif arr.ndim == 1 and rows == 1:
        arr = arr.reshape(1, -1)
    if arr.ndim != 2 or arr.shape != (rows, cols):
        raise DimensionMismatch(f"{name} must be {rows}x{cols}, got {arr.shape}")
    return arr


def _check_psd(Q: np.ndarray, name: str) -> None:
    if Q.shape[0] == 0:
        return
    sym = 0.5 * (Q + Q.T)
    shift = 1e-9 * max(1.0, float(np.max(np.abs(sym))))
    try:
        np.linalg.cholesky(sym + shift * np.eye(sym.shape[0]))
    except np.linalg.LinAlgError as e:
        raise NonConvex(f"{name}: quadratic term is not positive semi-definite") from e


class ParametrizedProgram:
    def __init__(self, Q, C, A, B, c, b, *, name: str = "follower"):
        self.name = name
        self._data: Tuple[np.ndarray, ...] | None = None
        self.set(Q, C, A, B, c, b)

    def set(self, Q, C, A, B, c, b) -> "ParametrizedProgram":
        """Replace all data at once.

        Everything is validated before anything is assigned, so a failed call
        leaves the program unchanged.
        """
        c = np.array(c, dtype=float).ravel()
        b = np.array(b, dtype=float).ravel()
        ny, m = c.shape[0], b.shape[0]

        C_arr = np.array(C, dtype=float)
        if C_arr.ndim != 2:
            if C_arr.size == 0:
                C_arr = C_arr.reshape(ny, 0)
            else:
                raise DimensionMismatch(f"{self.name}: C must be two-dimensional, got {C_arr.shape}")
        nx = C_arr.shape[1]

        Q = _as_matrix(Q, ny, ny, f"{self.name}: Q")
        C = _as_matrix(C_arr, ny, nx, f"{self.name}: C")
        A = _as_matrix(A, m, nx, f"{self.name}: A")
        B = _as_matrix(B, m, ny, f"{self.name}: B")
        _check_psd(Q, self.name)

        for arr in (Q, C, A, B, c, b):
            arr.setflags(write=False)
        self._data = (Q, C, A, B, c, b)
        return self

    @property
    def Q(self) -> np.ndarray:
        return self._data[0]

    @property
    def C(self) -> np.ndarray:
        return self._data[1]

    @property
    def A(self) -> np.ndarray:
        return self._data[2]

    @property
    def B(self) -> np.ndarray:
        return self._data[3]

    @property
    def c(self) -> np.ndarray:
        return self._data[4]

    @property
    def b(self) -> np.ndarray:
        return self._data[5]

    def size(self) -> Tuple[int, int, int]:
        """Return ``(ny, nx, n_constraints)``."""
        return self.c.shape[0], self.C.shape[1], self.b.shape[0]

    @property
    def ny(self) -> int:
        return self.c.shape[0]

    @property
    def nx(self) -> int:
        return self.C.shape[1]

    @property
    def n_constraints(self) -> int:
        return self.b.shape[0]

    def kkt(self) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        ny, nx, m = self.size()
        Qs = 0.5 * (self.Q + self.Q.T)
        M = np.block([
            [Qs, self.B.T],
            [-self.B, np.zeros((m, m))],
        ])
        N = np.vstack([self.C, -self.A]).reshape(ny + m, nx)
        q = np.concatenate([self.c, self.b])
        return M, N, q

    def _check_x(self, x) -> np.ndarray:
        x = np.array(x, dtype=float).ravel()
        if x.shape[0] != self.nx:
            raise DimensionMismatch(f"{self.name}: parameter has {x.shape[0]} entries, expected {self.nx}")
        return x

    def solve_fixed(self, x, **lcp_kwargs) -> LCP:
        """LCP of the KKT system with the parameter fixed to ``x``. No solve happens here."""
        x = self._check_x(x)
        M, N, q = self.kkt()
        return LCP(M, q + N @ x, **lcp_kwargs)

    def compute_objective(self, y, x, check_feasibility: bool = False, tol: float = 1e-6) -> float:
        y = np.array(y, dtype=float).ravel()
        x = self._check_x(x)
        if y.shape[0] != self.ny:
            raise DimensionMismatch(f"{self.name}: decision has {y.shape[0]} entries, expected {self.ny}")
        if check_feasibility:
            if np.any(y < -tol) or np.any(self.A @ x + self.B @ y - self.b > tol):
                return float("inf")
        return float(0.5 * y @ self.Q @ y + (self.C @ x + self.c) @ y)

    def best_response(self, x, settings: SolverSettings | None = None) -> Tuple[np.ndarray, float]:
        """Solve the program for fixed ``x``; return ``(y, objective)``."""
        x = self._check_x(x)
        settings = settings or SolverSettings()
        ny, _, m = self.size()
        lin = self.C @ x + self.c

        with SolverSession(settings, name=self.name) as s:
            jl = s.labels("j", ny)
            j = s.index_set("j", jl)
            y = Variable(s.container, "y", domain=[j], type=VariableType.POSITIVE)
            cost = s.vector("cost", j, jl, lin)
            obj = Sum(j, cost[j] * y[j])
            quadratic = bool(np.any(self.Q != 0.0))
            if quadratic:
                j2 = Alias(s.container, "j2", j)
                Qp = s.matrix("Q", [j, j], jl, jl, self.Q)
                obj = 0.5 * Sum([j, j2], Qp[j, j2] * y[j] * y[j2]) + obj

            equations = []
            if m:
                kl = s.labels("k", m)
                k = s.index_set("k", kl)
                Bp = s.matrix("B", [k, j], kl, jl, self.B)
                rhs = s.vector("rhs", k, kl, self.b - self.A @ x)
                cons = Equation(s.container, "cons", domain=[k])
                cons[k] = Sum(j, Bp[k, j] * y[j]) <= rhs[k]
                equations.append(cons)

            model = Model(
                s.container,
                f"{self.name}_br",
                equations=equations,
                problem=Problem.QCP if quadratic else Problem.LP,
                sense=Sense.MIN,
                objective=obj,
            )
            value = s.solve(model, solver=settings.mip_solver)
            y_val = s.values(y, jl)
        logger.debug("%s: best response objective %.6g", self.name, value)
        return y_val, value

    def padded(self, pars: int = 0, vars: int = 0, position: int = -1) -> Tuple[np.ndarray, ...]:
        """Data padded with ``pars`` unused parameters at ``position`` and ``vars`` unused variables.

        Nothing is assigned; ``add_dummy`` applies the result.
        """
        if pars < 0 or vars < 0:
            raise ValueError("pars and vars must be >= 0")
        ny, nx, m = self.size()
        if position == -1:
            position = nx
        if not 0 <= position <= nx:
            raise DimensionMismatch(f"{self.name}: position {position} outside [0, {nx}]")

        Q = np.pad(self.Q, ((0, vars), (0, vars)))
        B = np.pad(self.B, ((0, 0), (0, vars)))
        c = np.pad(self.c, (0, vars))
        C = np.pad(self.C, ((0, vars), (0, 0)))
        C = np.insert(C, [position] * pars, 0.0, axis=1)
        A = np.insert(self.A, [position] * pars, 0.0, axis=1)
        return Q, C, A, B, c, self.b

    def add_dummy(self, pars: int = 0, vars: int = 0, position: int = -1) -> "ParametrizedProgram":
        """Pad with ``pars`` unused parameters at ``position`` and ``vars`` unused variables at the end."""
        return self.set(*self.padded(pars, vars, position))

    def save(self, path: str) -> None:
        Q, C, A, B, c, b = self._data
        np.savez(path, Q=Q, C=C, A=A, B=B, c=c, b=b, name=np.array(self.name))

    @classmethod
    def load(cls, path: str) -> "ParametrizedProgram":
        with np.load(path) as f:
            return cls(f["Q"], f["C"], f["A"], f["B"], f["c"], f["b"], name=str(f["name"]))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ParametrizedProgram):
            return NotImplemented
        return all(np.array_equal(a, b) for a, b in zip(self._data, other._data))

    # mutable through set(), so not hashable
    __hash__ = None

    def __repr__(self) -> str:
        ny, nx, m = self.size()
        return f"ParametrizedProgram(name={self.name!r}, ny={ny}, nx={nx}, constraints={m})"
