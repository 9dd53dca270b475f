from __future__ import annotations

import numpy as np
import pytest

from epecsolve import LCP, NashGameBuilder, ParametrizedProgram, SolverSettings


@pytest.fixture
def settings(tmp_path) -> SolverSettings:
    workdir = tmp_path / "gams"
    return SolverSettings(working_directory=str(workdir))


@pytest.fixture
def unique_lcp() -> LCP:
    """Positive definite LCP whose only solution is z = (1/3, 1/3)."""
    return LCP([[2.0, 1.0], [1.0, 2.0]], [-1.0, -1.0])


@pytest.fixture
def follower() -> ParametrizedProgram:
    """min 1/2 y'Qy + (Cx + c)'y  s.t.  x0 + y0 + y1 <= 4,  y >= 0."""
    return ParametrizedProgram(
        Q=[[2.0, 0.0], [0.0, 1.0]],
        C=[[1.0, 0.0], [0.0, -1.0]],
        A=[[1.0, 0.0]],
        B=[[1.0, 1.0]],
        c=[-1.0, -2.0],
        b=[4.0],
        name="f",
    )


def _producer(name: str, cost: float) -> ParametrizedProgram:
    # Parameters: [other producer's output, price, leader var]
    return ParametrizedProgram(
        Q=[[1.0]],
        C=[[0.0, -1.0, 0.5]],
        A=[[0.0, 0.0, 0.0]],
        B=[[1.0]],
        c=[cost],
        b=[10.0],
        name=name,
    )


@pytest.fixture
def market_game() -> NashGameBuilder:
    """Two capacity-limited producers, one market-clearing row, one leader variable."""
    return NashGameBuilder(
        [_producer("p0", 1.0), _producer("p1", 2.0)],
        market_clearing=[[1.0, 1.0]],
        mc_rhs=[3.0],
        n_leader=1,
        leader_constraints=[[0.0, 0.0, 1.0]],
        leader_rhs=[2.0],
        name="market",
    )


@pytest.fixture
def check_complementary():
    def _check(lcp: LCP, z: np.ndarray, tol: float = 1e-6) -> None:
        w = lcp.M @ z + lcp.q
        assert np.all(z >= -tol)
        assert np.all(w >= -tol)
        for r, c in lcp.pairs:
            assert min(w[r], z[c]) <= tol

    return _check
