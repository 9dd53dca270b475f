"""
Joint KKT-LCP of a Nash game among followers.

Columns of the joint LCP, left to right:

    [ y_0 | y_1 | ... | y_{n-1} | market-clearing duals | leader vars | lam_0 | ... | lam_{n-1} ]

Rows are the followers' stationarity rows, then the market-clearing rows,
then the followers' primal-feasibility rows. Leader columns are not paired
with any row, so ``M`` has ``n_leader`` more columns than rows.

Follower ``i`` sees as its parameter vector every column before ``lam_0``
except its own primal block, in column order.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Sequence, Tuple

import numpy as np

from .config import SolverSettings
from .errors import DimensionMismatch, InconsistentCoupling
from .lcp import LCP
from .qp_param import ParametrizedProgram

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Positions:
    primal: Tuple[int, ...]
    dual: Tuple[int, ...]
    mc_dual: int
    leader: int

    @property
    def n_primal(self) -> int:
        return self.primal[-1]

    @property
    def n_mc(self) -> int:
        return self.leader - self.mc_dual

    @property
    def n_leader(self) -> int:
        return self.dual[0] - self.leader

    @property
    def n_cols(self) -> int:
        return self.dual[-1]

    @property
    def n_rows(self) -> int:
        return self.n_cols - self.n_leader


class NashGameBuilder:
    def __init__(
        self,
        players: Sequence[ParametrizedProgram],
        market_clearing=None,
        mc_rhs=None,
        n_leader: int = 0,
        leader_constraints=None,
        leader_rhs=None,
        *,
        name: str = "game",
    ):
        if not players:
            raise ValueError("a Nash game needs at least one player")
        if n_leader < 0:
            raise ValueError("n_leader must be >= 0")
        self.name = name
        self.players: List[ParametrizedProgram] = list(players)
        self.n_leader = int(n_leader)

        self.mc_rhs = np.zeros(0) if mc_rhs is None else np.array(mc_rhs, dtype=float).ravel()
        n_mc = self.mc_rhs.shape[0]
        if market_clearing is None:
            if n_mc:
                raise DimensionMismatch("market-clearing rhs given without its matrix")
            self.market_clearing = np.zeros((0, self._n_primal()))
        else:
            mc = np.atleast_2d(np.array(market_clearing, dtype=float))
            if mc.shape[0] != n_mc:
                raise DimensionMismatch(f"market clearing has {mc.shape[0]} rows, rhs has {n_mc}")
            self.market_clearing = mc

        n_cols_lead = self._n_primal() + self.n_leader
        if leader_constraints is None:
            self.leader_constraints = np.zeros((0, n_cols_lead))
            self.leader_rhs = np.zeros(0)
        else:
            self.leader_constraints = np.atleast_2d(np.array(leader_constraints, dtype=float))
            self.leader_rhs = np.array(leader_rhs, dtype=float).ravel()
            if self.leader_constraints.shape != (self.leader_rhs.shape[0], n_cols_lead):
                raise DimensionMismatch(
                    f"leader constraints must be {self.leader_rhs.shape[0]}x{n_cols_lead}, "
                    f"got {self.leader_constraints.shape}"
                )
        self.positions = self.set_positions()

    def _n_primal(self) -> int:
        return sum(p.ny for p in self.players)

    @property
    def n_players(self) -> int:
        return len(self.players)

    def set_positions(self, n_leader: int | None = None) -> Positions:
        """Recompute and store the column offsets of every block."""
        if n_leader is not None:
            if n_leader < 0:
                raise ValueError("n_leader must be >= 0")
            self.n_leader = int(n_leader)
        primal = [0]
        for p in self.players:
            primal.append(primal[-1] + p.ny)
        mc_dual = primal[-1]
        leader = mc_dual + self.mc_rhs.shape[0]
        dual = [leader + self.n_leader]
        for p in self.players:
            dual.append(dual[-1] + p.n_constraints)
        self.positions = Positions(tuple(primal), tuple(dual), mc_dual, leader)
        return self.positions

    def other_columns(self, i: int) -> List[int]:
        """Columns forming follower ``i``'s parameter vector."""
        pos = self.positions
        return list(range(0, pos.primal[i])) + list(range(pos.primal[i + 1], pos.dual[0]))

    def _check_coupling(self) -> None:
        pos = self.positions
        for i, p in enumerate(self.players):
            expected = pos.n_primal - p.ny + pos.n_mc + pos.n_leader
            if p.nx != expected:
                raise InconsistentCoupling(
                    f"{self.name}: player {i} ({p.name}) has {p.nx} parameters, "
                    f"expected {expected} (others' primals + {pos.n_mc} prices + {pos.n_leader} leader vars)"
                )

    def _market_clearing_block(self) -> np.ndarray:
        width = self.positions.dual[0]
        mc = self.market_clearing
        if mc.shape[1] == width:
            return mc
        if mc.shape[1] == self.positions.n_primal:
            return np.pad(mc, ((0, 0), (0, width - mc.shape[1])))
        raise DimensionMismatch(
            f"market clearing must have {self.positions.n_primal} or {width} columns, got {mc.shape[1]}"
        )

    def formulate(self) -> Tuple[np.ndarray, np.ndarray, List[Tuple[int, int]]]:
        pos = self.set_positions()
        self._check_coupling()
        nl = pos.n_leader
        M = np.zeros((pos.n_rows, pos.n_cols))
        q = np.zeros(pos.n_rows)
        pairs: List[Tuple[int, int]] = []

        for i, p in enumerate(self.players):
            Mi, Ni, qi = p.kkt()
            ny = p.ny
            lo, hi = pos.primal[i], pos.primal[i + 1]
            d_lo, d_hi = pos.dual[i], pos.dual[i + 1]
            others = self.other_columns(i)

            # stationarity rows
            M[lo:hi, others] = Ni[:ny]
            M[lo:hi, lo:hi] = Mi[:ny, :ny]
            M[lo:hi, d_lo:d_hi] = Mi[:ny, ny:]
            q[lo:hi] = qi[:ny]
            pairs.extend((j, j) for j in range(lo, hi))

            # primal feasibility rows, shifted up past the leader columns
            if d_hi > d_lo:
                rows = slice(d_lo - nl, d_hi - nl)
                M[rows, others] = Ni[ny:]
                M[rows, lo:hi] = Mi[ny:, :ny]
                M[rows, d_lo:d_hi] = Mi[ny:, ny:]
                q[rows] = qi[ny:]
                pairs.extend((j, j + nl) for j in range(d_lo - nl, d_hi - nl))

        if pos.n_mc:
            M[pos.mc_dual:pos.leader, :pos.dual[0]] = self._market_clearing_block()
            q[pos.mc_dual:pos.leader] = -self.mc_rhs
            pairs.extend((j, j) for j in range(pos.mc_dual, pos.leader))

        logger.debug("%s: formulated LCP with %d rows and %d columns", self.name, pos.n_rows, pos.n_cols)
        return M, q, sorted(pairs)

    def rewrite_leader_constraints(self) -> Tuple[np.ndarray, np.ndarray]:
        """Leader constraints and market clearing as ``A z <= b`` over all LCP columns.

        Market clearing becomes two opposite inequalities so that, together
        with its complementarity row, it holds with equality.
        """
        pos = self.set_positions()
        n_lead_rows = self.leader_constraints.shape[0]
        A = np.zeros((n_lead_rows + 2 * pos.n_mc, pos.n_cols))
        if n_lead_rows:
            A[:n_lead_rows, :pos.n_primal] = self.leader_constraints[:, :pos.n_primal]
            A[:n_lead_rows, pos.leader:pos.dual[0]] = self.leader_constraints[:, pos.n_primal:]
        if pos.n_mc:
            mc = self._market_clearing_block()
            A[n_lead_rows:n_lead_rows + pos.n_mc, :pos.dual[0]] = mc
            A[n_lead_rows + pos.n_mc:, :pos.dual[0]] = -mc
        b = np.concatenate([self.leader_rhs, self.mc_rhs, -self.mc_rhs])
        return A, b

    def lcp(self, **lcp_kwargs) -> LCP:
        M, q, pairs = self.formulate()
        A, b = self.rewrite_leader_constraints()
        if A.shape[0] == 0:
            return LCP(M, q, pairs, **lcp_kwargs)
        return LCP(M, q, pairs, A, b, **lcp_kwargs)

    def add_leader_constraint(self, a, b: float) -> "NashGameBuilder":
        """Append ``a'(y, leader vars) <= b`` to the leader constraints."""
        a = np.array(a, dtype=float).ravel()
        width = self.positions.n_primal + self.n_leader
        if a.shape[0] != width:
            raise DimensionMismatch(f"leader constraint has {a.shape[0]} entries, expected {width}")
        self.leader_constraints = np.vstack([self.leader_constraints, a])
        self.leader_rhs = np.append(self.leader_rhs, float(b))
        return self

    def add_dummy(self, par: int, position: int = -1) -> "NashGameBuilder":
        """Add ``par`` leader variables that only enter through the leader's problem.

        Every player is padded before any is changed, so a failure leaves the
        game as it was.
        """
        pos = self.positions
        lead_pos = pos.n_leader if position == -1 else position
        if not 0 <= lead_pos <= pos.n_leader:
            raise DimensionMismatch(f"position {position} outside the leader block")
        padded = [
            p.padded(par, 0, pos.n_primal - p.ny + pos.n_mc + lead_pos) for p in self.players
        ]
        market_clearing = self.market_clearing
        if market_clearing.shape[1] == pos.dual[0]:
            market_clearing = np.insert(market_clearing, [pos.leader + lead_pos] * par, 0.0, axis=1)
        leader_constraints = np.insert(
            self.leader_constraints, [pos.n_primal + lead_pos] * par, 0.0, axis=1
        )

        for p, data in zip(self.players, padded):
            p.set(*data)
        self.market_clearing = market_clearing
        self.leader_constraints = leader_constraints
        self.set_positions(self.n_leader + par)
        return self

    def replace_player(self, i: int, program: ParametrizedProgram) -> "NashGameBuilder":
        if program.ny != self.players[i].ny:
            raise DimensionMismatch(
                f"replacement for player {i} has {program.ny} variables, expected {self.players[i].ny}"
            )
        self.players[i] = program
        self.set_positions()
        return self

    # ------------------------------------------------------------------
    # checks on a given point
    # ------------------------------------------------------------------
    def _split(self, i: int, z) -> Tuple[np.ndarray, np.ndarray]:
        z = np.array(z, dtype=float).ravel()
        if z.shape[0] != self.positions.n_cols:
            raise DimensionMismatch(f"point has {z.shape[0]} entries, expected {self.positions.n_cols}")
        pos = self.positions
        return z[pos.primal[i]:pos.primal[i + 1]], z[self.other_columns(i)]

    def respond(self, i: int, z, settings: SolverSettings | None = None) -> Tuple[np.ndarray, float]:
        """Follower ``i``'s best response to the others' part of ``z``."""
        _, x = self._split(i, z)
        return self.players[i].best_response(x, settings)

    def objective_values(self, z, check_feasibility: bool = False) -> np.ndarray:
        vals = []
        for i, p in enumerate(self.players):
            y, x = self._split(i, z)
            vals.append(p.compute_objective(y, x, check_feasibility))
        return np.array(vals)

    def is_solved(
        self, z, tol: float = 1e-6, settings: SolverSettings | None = None
    ) -> Tuple[bool, int | None, np.ndarray | None]:
        """Return ``(solved, deviating player, its better response)``."""
        current = self.objective_values(z, check_feasibility=True)
        for i in range(self.n_players):
            y, val = self.respond(i, z, settings)
            if current[i] - val > tol:
                return False, i, y
        return True, None, None

    def describe(self) -> str:
        pos = self.positions
        lines = [
            f"NashGame {self.name}: {self.n_players} players, {pos.n_primal} primals, "
            f"{pos.n_mc} market-clearing rows, {pos.n_leader} leader vars",
        ]
        for i, p in enumerate(self.players):
            lines.append(
                f"  player {i} ({p.name}): primal [{pos.primal[i]}, {pos.primal[i + 1]}) "
                f"dual [{pos.dual[i]}, {pos.dual[i + 1]})"
            )
        return "\n".join(lines)
