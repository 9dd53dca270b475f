"""Small reference instances with known equilibria.

Every leader here controls one variable ``x`` and one follower with

    min_y  1/2 y^2 + (x - intercept) y,   y >= 0

so ``y = max(0, intercept - x)``. The leader's LCP columns are ``[y, x]``
and the leader constraint ``x <= cap`` is the only cut.
"""
from __future__ import annotations

from typing import List

import numpy as np

from .epec import LeaderObjective, LeaderProblem
from .nash_game import NashGameBuilder
from .qp_param import ParametrizedProgram


def follower_game(name: str, intercept: float = 3.0, cap: float = 5.0) -> NashGameBuilder:
    follower = ParametrizedProgram(
        Q=[[1.0]],
        C=[[1.0]],
        A=np.zeros((0, 1)),
        B=np.zeros((0, 1)),
        c=[-intercept],
        b=[],
        name=f"{name}_follower",
    )
    return NashGameBuilder(
        [follower],
        n_leader=1,
        leader_constraints=[[0.0, 1.0]],
        leader_rhs=[cap],
        name=name,
    )


def leader(
    name: str,
    *,
    target: float = 1.0,
    intercept: float = 3.0,
    cap: float = 5.0,
    n_other: int = 0,
    interaction: float = 0.0,
) -> LeaderProblem:
    """Leader minimising ``(x - target)^2 + y^2 + interaction * x * x_other``.

    ``x_other`` is the last entry of the other leaders' concatenated
    decisions, i.e. the other leader's ``x`` in a two-leader game.
    """
    C = None
    if n_other:
        C = np.zeros((2, n_other))
        C[1, n_other - 1] = interaction
    objective = LeaderObjective(
        c=np.array([0.0, -2.0 * target]),
        Q=np.diag([2.0, 2.0]),
        C=C,
        constant=target ** 2,
    )
    return LeaderProblem(name, follower_game(name, intercept, cap), objective)


def uncoupled_leaders(n: int = 2) -> List[LeaderProblem]:
    """Leaders that do not interact; each best response is ``x = 2, y = 1`` with value 2."""
    return [leader(f"L{i}", n_other=2 * (n - 1)) for i in range(n)]


def coupled_leaders(interaction: float = 1.0) -> List[LeaderProblem]:
    """Two leaders whose costs share the term ``interaction * x_0 * x_1``.

    Each reaction is ``x_i = 2 - interaction * x_j / 4``, so the symmetric
    equilibrium is ``x = 2 / (1 + interaction / 4)`` while it stays below the
    follower's intercept. At ``interaction = 4`` both reactions coincide and
    every profile with ``x_0 + x_1 = 2`` is an equilibrium.
    """
    return [leader(f"L{i}", n_other=2, interaction=interaction) for i in range(2)]


def coupled_equilibrium(interaction: float = 1.0) -> float:
    return 2.0 / (1.0 + interaction / 4.0)


def switching_leaders() -> List[LeaderProblem]:
    """Two leaders pulled into the follower's ``y = 0`` regime by each other.

    Each leader minimises ``(x - 2)^2 + y^2 - x * x_other``. Against a rival
    at zero the best response keeps ``y > 0`` (``x = 2.5``), while the unique
    equilibrium is ``x = 4, y = 0``; the first approximation holds only the
    ``y > 0`` piece, so polyhedra have to be added before a certificate.
    """
    return [leader(f"L{i}", target=2.0, n_other=2, interaction=-1.0) for i in range(2)]
