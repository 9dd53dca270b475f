import numpy as np
import pytest

from epecsolve import (
    AddPolicy,
    AlgorithmParams,
    ApproximateEquilibrium,
    DimensionMismatch,
    Enumeration,
    EPECCoordinator,
    EPECStatus,
    Infeasible,
    InnerApproximation,
    LCPSolution,
    LCPSolver,
    LeaderObjective,
    LeaderProblem,
    RecoveryStrategy,
    SharedConstraint,
    SolverError,
)
from epecsolve.instances import (
    coupled_equilibrium,
    coupled_leaders,
    follower_game,
    leader,
    switching_leaders,
    uncoupled_leaders,
)
from epecsolve.lcp import pattern_to_number


def _params(settings, **kw) -> AlgorithmParams:
    return AlgorithmParams(solver=settings, **kw)


# ---------------------------------------------------------------------------
# inner approximation bookkeeping
# ---------------------------------------------------------------------------
def test_inner_approximation_add_and_revert():
    inner = InnerApproximation(2)
    assert inner.add((1, -1))
    assert not inner.add((1, -1))
    # undecided entries resolve to +1
    assert not inner.add((0, -1))
    assert inner.add((-1, -1), np.array([0.0, 1.0]))
    assert len(inner) == 2
    assert (1, -1) in inner
    assert inner.has_number(0)
    assert inner.numbers() == [2, 0]

    assert inner.revert() == (-1, -1)
    assert (-1, -1) not in inner
    assert inner.numbers() == [2]
    assert inner.revert() == (1, -1)
    assert inner.revert() is None


def test_inner_approximation_reset():
    inner = InnerApproximation(1)
    inner.add((1,))
    inner.reset([(-1,)], [np.array([0.0, 4.0])])
    assert inner.numbers() == [0]
    assert not inner.has_number(1)
    np.testing.assert_array_equal(inner.points[0], [0.0, 4.0])


def test_inner_approximation_rejects_wrong_length():
    with pytest.raises(DimensionMismatch):
        InnerApproximation(2).add((1,))


def test_approximate_equilibrium_purity():
    eq = ApproximateEquilibrium(
        profile=[np.zeros(2), np.zeros(2)],
        weights=[np.array([1.0]), np.array([0.4, 0.6])],
    )
    assert eq.pure_leaders() == [True, False]
    assert not eq.pure


# ---------------------------------------------------------------------------
# coordinator construction and policies
# ---------------------------------------------------------------------------
def test_coordinator_needs_leaders():
    with pytest.raises(ValueError):
        EPECCoordinator([])


def test_coordinator_rejects_duplicate_names():
    with pytest.raises(ValueError, match="unique"):
        EPECCoordinator([leader("A", n_other=2), leader("A", n_other=2)])


def test_coordinator_rejects_bad_interaction_shape():
    with pytest.raises(DimensionMismatch):
        EPECCoordinator([leader("A", n_other=3), leader("B", n_other=2)])


def test_coordinator_validates_params(settings):
    with pytest.raises(ValueError, match="threads"):
        EPECCoordinator(uncoupled_leaders(2), _params(settings, threads=0))


def test_others_concatenates_in_leader_order():
    coord = EPECCoordinator(uncoupled_leaders(3))
    profile = [np.array([0.0, 1.0]), np.array([2.0, 3.0]), np.array([4.0, 5.0])]
    np.testing.assert_array_equal(coord.others(1, profile), [0.0, 1.0, 4.0, 5.0])


@pytest.mark.parametrize(
    "policy, cursor, expected",
    [
        (AddPolicy.MOST_VIOLATED, 0, [2, 0]),
        (AddPolicy.ROUND_ROBIN, 0, [0, 2]),
        (AddPolicy.ROUND_ROBIN, 1, [2, 0]),
        (AddPolicy.EXHAUSTIVE, 0, [0, 2]),
    ],
)
def test_select_orders_by_policy(settings, policy, cursor, expected):
    coord = EPECCoordinator(uncoupled_leaders(3), _params(settings, add_policy=policy))
    coord._cursor = cursor
    gains = np.array([0.1, 0.0, 0.5])
    assert coord._select([0, 2], gains) == expected


def _deviations(coord):
    # Both leaders currently sit on the y > 0 piece; their deviations have y = 0.
    for inner in coord.inner:
        inner.add((1,))
    full = [(LCPSolution(z=np.array([0.0, 4.0]), w=np.array([1.0]), objective=9.0), None)] * 2
    profile = [np.array([1.0, 2.0])] * 2
    return full, profile


def test_most_violated_adds_one_polyhedron(settings):
    coord = EPECCoordinator(uncoupled_leaders(2), _params(settings))
    full, profile = _deviations(coord)
    added = coord._add_deviations([0, 1], np.array([0.2, 0.7]), full, profile)
    assert added == [1]
    assert coord.inner[1].patterns == [(1,), (-1,)]
    assert len(coord.inner[0]) == 1
    assert coord.statistics.polyhedra_added == [0, 1]
    assert coord._history == [1]


def test_exhaustive_adds_for_every_violator(settings):
    coord = EPECCoordinator(uncoupled_leaders(2), _params(settings, add_policy="exhaustive"))
    full, profile = _deviations(coord)
    added = coord._add_deviations([0, 1], np.array([0.2, 0.7]), full, profile)
    assert sorted(added) == [0, 1]
    assert coord.statistics.polyhedra_added == [1, 1]


def test_known_pattern_falls_through_to_next_leader(settings):
    coord = EPECCoordinator(uncoupled_leaders(2), _params(settings))
    full, profile = _deviations(coord)
    coord.inner[1].add((-1,))
    added = coord._add_deviations([0, 1], np.array([0.2, 0.7]), full, profile)
    assert added == [0]


def test_round_robin_advances_cursor(settings):
    coord = EPECCoordinator(uncoupled_leaders(2), _params(settings, add_policy="round_robin"))
    full, profile = _deviations(coord)
    assert coord._add_deviations([0, 1], np.array([0.2, 0.7]), full, profile) == [0]
    assert coord._cursor == 1


# ---------------------------------------------------------------------------
# the approximated game
# ---------------------------------------------------------------------------
def test_approximate_game_layout():
    coord = EPECCoordinator(coupled_leaders(1.0))
    coord.inner[0].add((1,))
    coord.inner[0].add((-1,))
    coord.inner[1].add((1,))
    game, layouts = coord.approximate_game()
    assert [layout.n_vars for layout in layouts] == [2 * 3 + 2, 2 * 2 + 1]

    p0, p1 = game.players
    assert (p0.ny, p0.nx) == (8, 5)
    assert (p1.ny, p1.nx) == (5, 8)
    # own x row, other leader's x column
    assert p0.C[1, 1] == 1.0
    assert p1.C[1, 1] == 1.0
    assert np.count_nonzero(p0.C) == 1
    np.testing.assert_array_equal(p0.Q[:2, :2], np.diag([2.0, 2.0]))
    assert np.count_nonzero(p0.Q[2:]) == 0
    np.testing.assert_array_equal(p1.c[:2], [0.0, -2.0])
    # each polyhedron: w >= 0, w <= 0 or z <= 0, and the cap
    assert p1.n_constraints == 2 * 2 + 3 + 2
    lcp = game.lcp()
    assert lcp.n_cols == p0.ny + p1.ny + p0.n_constraints + p1.n_constraints


def test_approximate_game_moves_shared_rows_to_the_aggregate():
    objective = LeaderObjective(c=np.array([0.0, -2.0]), Q=np.diag([2.0, 2.0]))
    shared = SharedConstraint(G=np.array([[0.0, 0.5]]))
    leaders = [
        LeaderProblem("A", follower_game("A"), objective, shared),
        LeaderProblem("B", follower_game("B"), objective, shared),
    ]
    coord = EPECCoordinator(leaders)
    for inner in coord.inner:
        inner.add((1,))
    game, _ = coord.approximate_game()
    p0 = game.players[0]
    # hull rows without the cap, then x_A + 0.5 x_B <= 5 on the aggregate
    assert p0.n_constraints == 2 * 2 + 2 + 2 + 1
    np.testing.assert_array_equal(p0.B[-1], [0.0, 1.0, 0.0, 0.0, 0.0])
    np.testing.assert_array_equal(p0.A[-1], [0.0, 0.5, 0.0, 0.0, 0.0])
    assert p0.b[-1] == 5.0


def test_approximate_game_needs_a_polyhedron_per_leader():
    coord = EPECCoordinator(uncoupled_leaders(1))
    with pytest.raises(ValueError, match="empty inner approximation"):
        coord.approximate_game()


# ---------------------------------------------------------------------------
# polyhedra added when the approximated game has no equilibrium
# ---------------------------------------------------------------------------
def _market_leader(market_game) -> LeaderProblem:
    return LeaderProblem("M", market_game, LeaderObjective(c=np.zeros(6)))


@pytest.fixture
def stub_patterns(monkeypatch):
    """Pattern solves succeed except for the ids listed in the returned set."""
    infeasible = set()
    tried = []

    def _solve(self, pattern, objective=None, *, time_limit=None):
        number = pattern_to_number(pattern)
        tried.append(number)
        if number in infeasible:
            raise Infeasible("empty polyhedron", model="stub")
        z = np.zeros(self.lcp.n_cols)
        return LCPSolution(z=z, w=self.lcp.residual(z))

    monkeypatch.setattr(LCPSolver, "solve_pattern", _solve)
    return infeasible, tried


def test_sequential_addition_skips_infeasible_polyhedra(market_game, stub_patterns):
    infeasible, tried = stub_patterns
    infeasible.add(0)
    coord = EPECCoordinator([_market_leader(market_game)])
    coord.inner[0].add((1, 1, 1, 1, 1))
    assert coord._add_polyhedra(0, 2, [np.zeros(6)]) == 2
    assert coord.inner[0].numbers() == [31, 1, 2]
    assert coord._infeasible[0] == {0}
    assert coord._history == [0, 0]
    assert tried == [0, 1, 2]


def test_reverse_sequential_addition(market_game, stub_patterns):
    coord = EPECCoordinator([_market_leader(market_game)], AlgorithmParams(add_poly_method="reverse_sequential"))
    coord.inner[0].add((1, 1, 1, 1, 1))
    assert coord._add_polyhedra(0, 2, [np.zeros(6)]) == 2
    assert coord.inner[0].numbers() == [31, 30, 29]


def test_random_addition_is_seeded(market_game, stub_patterns):
    runs = []
    for _ in range(2):
        coord = EPECCoordinator([_market_leader(market_game)], AlgorithmParams(add_poly_method="random", add_poly_seed=7))
        coord.inner[0].add((1, 1, 1, 1, 1))
        assert coord._add_polyhedra(0, 4, [np.zeros(6)]) == 4
        runs.append(coord.inner[0].numbers())
    assert runs[0] == runs[1]
    assert len(set(runs[0])) == 5


def test_addition_stops_when_every_polyhedron_was_tried(stub_patterns):
    coord = EPECCoordinator(uncoupled_leaders(2), AlgorithmParams(aggressiveness=3))
    for inner in coord.inner:
        inner.add((1,))
    profile = [np.zeros(2), np.zeros(2)]
    assert coord._add_to_all(profile) == 2
    assert coord.statistics.inner_sizes == [2, 2]
    assert coord._add_to_all(profile) == 0


# ---------------------------------------------------------------------------
# pass loop with stubbed solves
# ---------------------------------------------------------------------------
_BEST = LCPSolution(z=np.array([1.0, 2.0]), w=np.array([0.0]), objective=2.0)


def _stub_full(coord, monkeypatch, solution=_BEST):
    monkeypatch.setattr(coord, "full_response", lambda i, profile: solution)


def _stub_equilibrium(coord, monkeypatch, weights=(1.0,), pure_fails=False):
    calls = []

    def _eq(pure=False):
        calls.append(pure)
        if pure and pure_fails:
            raise Infeasible("no pure equilibrium", model="stub")
        w = np.array([1.0]) if pure else np.array(weights)
        return ApproximateEquilibrium([np.array([1.0, 2.0]) for _ in coord.leaders], [w for _ in coord.leaders])

    monkeypatch.setattr(coord, "approximate_equilibrium", _eq)
    return calls


def test_pass_without_new_polyhedron_is_a_numerical_failure(monkeypatch):
    coord = EPECCoordinator(uncoupled_leaders(1))
    _stub_equilibrium(coord, monkeypatch)
    # the deviation claims a better value but lies in the polyhedron already held
    _stub_full(coord, monkeypatch, LCPSolution(z=np.array([1.0, 2.0]), w=np.array([0.0]), objective=-100.0))
    result = coord.solve()
    assert result.status == EPECStatus.NUMERICAL_FAILURE
    assert result.statistics.iterations == 1
    assert "already in the approximation" in result.statistics.message


def test_no_equilibrium_when_nothing_is_left_to_add(monkeypatch, stub_patterns):
    coord = EPECCoordinator(uncoupled_leaders(1))
    _stub_full(coord, monkeypatch)

    def _none(pure=False):
        raise Infeasible("approximated game has no solution", model="stub")

    monkeypatch.setattr(coord, "approximate_equilibrium", _none)
    result = coord.solve()
    assert result.status == EPECStatus.NO_EQUILIBRIUM
    assert result.statistics.iterations == 3
    assert result.statistics.lost_equilibria == 2
    assert result.polyhedra == {"L0": [1, 0]}
    assert result.iter_rows[1]["heuristic"] == 1


def test_solver_retries_are_counted_then_give_up(monkeypatch):
    calls = []

    def _crash(self, *args, **kwargs):
        calls.append(self.name)
        raise SolverError("solver crashed", model="stub")

    monkeypatch.setattr(LCPSolver, "solve_as_mip", _crash)
    result = EPECCoordinator(uncoupled_leaders(1), AlgorithmParams(max_solver_retries=2)).solve()
    assert result.status == EPECStatus.NUMERICAL_FAILURE
    assert result.statistics.solver_retries == 2
    assert len(calls) == 3


def test_full_enumeration_stops_at_time_limit():
    result = EPECCoordinator(
        uncoupled_leaders(2), AlgorithmParams(algorithm="full_enumeration", time_limit=1e-9)
    ).solve()
    assert result.status == EPECStatus.TIME_LIMIT_REACHED
    assert result.statistics.iterations == 0


def test_abort_on_failed_approximated_game(settings, monkeypatch):
    coord = EPECCoordinator(uncoupled_leaders(2), _params(settings, recovery=RecoveryStrategy.ABORT))
    _stub_full(coord, monkeypatch)

    def _fail(pure=False):
        raise SolverError("forced", model="stub")

    monkeypatch.setattr(coord, "approximate_equilibrium", _fail)
    result = coord.solve()
    assert result.status == EPECStatus.NUMERICAL_FAILURE
    assert "approximated game failed" in result.statistics.message


def test_revert_with_nothing_added_fails(settings, monkeypatch):
    coord = EPECCoordinator(uncoupled_leaders(1), _params(settings))
    _stub_full(coord, monkeypatch)

    def _fail(pure=False):
        raise SolverError("forced", model="stub")

    monkeypatch.setattr(coord, "approximate_equilibrium", _fail)
    result = coord.solve()
    assert result.status == EPECStatus.NUMERICAL_FAILURE
    assert "nothing is left to revert" in result.statistics.message
    assert result.statistics.recoveries == 0


def test_infeasible_full_problem_means_no_equilibrium(settings, monkeypatch):
    coord = EPECCoordinator(uncoupled_leaders(2), _params(settings))

    def _infeasible(i, profile):
        raise Infeasible("empty feasible region")

    monkeypatch.setattr(coord, "full_response", _infeasible)
    result = coord.solve()
    assert result.status == EPECStatus.NO_EQUILIBRIUM
    assert result.statistics.iterations == 0
    assert "empty feasible region" in result.statistics.message


def test_mixed_equilibrium_is_reported_without_pure_search(monkeypatch):
    coord = EPECCoordinator(uncoupled_leaders(1))
    _stub_full(coord, monkeypatch)
    _stub_equilibrium(coord, monkeypatch, weights=(0.5, 0.5))
    result = coord.solve()
    assert result.status == EPECStatus.EQUILIBRIUM_FOUND
    assert result.statistics.pure is False
    np.testing.assert_allclose(result.weights["L0"], [0.5, 0.5])


def test_pure_search_by_incremental_enumeration(monkeypatch):
    coord = EPECCoordinator(uncoupled_leaders(1), AlgorithmParams(pure_ne=True))
    _stub_full(coord, monkeypatch)
    calls = _stub_equilibrium(coord, monkeypatch, weights=(0.5, 0.5))
    result = coord.solve()
    assert result.status == EPECStatus.EQUILIBRIUM_FOUND
    assert calls == [False, True]
    assert result.statistics.pure is True
    assert result.statistics.iterations == 2


def test_missing_pure_equilibrium_returns_the_mixed_one(monkeypatch, stub_patterns):
    coord = EPECCoordinator(uncoupled_leaders(1), AlgorithmParams(pure_ne=True))
    _stub_full(coord, monkeypatch)
    _stub_equilibrium(coord, monkeypatch, weights=(0.5, 0.5), pure_fails=True)
    result = coord.solve()
    assert result.status == EPECStatus.NO_EQUILIBRIUM
    assert "mixed" in result.statistics.message
    assert result.statistics.pure is False
    np.testing.assert_allclose(result.weights["L0"], [0.5, 0.5])
    np.testing.assert_allclose(result.decisions["L0"], [1.0, 2.0])


def test_pure_search_by_combinations(monkeypatch):
    coord = EPECCoordinator(uncoupled_leaders(1), AlgorithmParams(pure_ne=True, pure_recovery="combinatorial"))
    _stub_full(coord, monkeypatch)
    calls = _stub_equilibrium(coord, monkeypatch, weights=(0.5, 0.5))
    points = [LCPSolution(z=np.array([1.0, 2.0]), w=np.array([0.0])), LCPSolution(z=np.array([0.0, 4.0]), w=np.array([1.0]))]
    enumeration = Enumeration(solutions=points, patterns=[(1,), (-1,)], points=points)
    monkeypatch.setattr(LCPSolver, "enumerate_all", lambda self, workers=1, deadline=None: enumeration)
    result = coord.solve()
    assert result.status == EPECStatus.EQUILIBRIUM_FOUND
    assert "combinatorial" in result.statistics.message
    # (1,) is already held, so only (-1,) is tried; it joins the approximation
    assert result.polyhedra == {"L0": [1, 0]}
    assert result.statistics.polyhedra_added == [1]
    assert calls == [False, False]
    assert result.statistics.pure is True


# ---------------------------------------------------------------------------
# solver-backed runs
# ---------------------------------------------------------------------------
@pytest.mark.solver
def test_uncoupled_leaders_reach_equilibrium_in_one_pass(settings):
    result = EPECCoordinator(uncoupled_leaders(2), _params(settings, threads=2)).solve()
    assert result.status == EPECStatus.EQUILIBRIUM_FOUND
    assert result.solved
    assert result.statistics.iterations == 1
    for name in ("L0", "L1"):
        np.testing.assert_allclose(result.decisions[name], [1.0, 2.0], atol=1e-5)
        assert result.objectives[name] == pytest.approx(2.0, abs=1e-5)
    assert result.polyhedra == {"L0": [1], "L1": [1]}
    assert result.statistics.pure


@pytest.mark.solver
def test_runs_are_deterministic(settings):
    a = EPECCoordinator(switching_leaders(), _params(settings, threads=2)).solve()
    b = EPECCoordinator(switching_leaders(), _params(settings, threads=2)).solve()
    assert a.status == b.status
    assert a.statistics.iterations == b.statistics.iterations
    assert a.polyhedra == b.polyhedra
    for name in a.decisions:
        np.testing.assert_allclose(a.decisions[name], b.decisions[name], atol=1e-6)


@pytest.mark.solver
def test_coupled_leaders_converge(settings):
    result = EPECCoordinator(coupled_leaders(1.0), _params(settings)).solve()
    assert result.status == EPECStatus.EQUILIBRIUM_FOUND
    x_star = coupled_equilibrium(1.0)
    for name, z in result.decisions.items():
        assert z[1] == pytest.approx(x_star, abs=1e-4)
        assert z[0] == pytest.approx(3.0 - x_star, abs=1e-4)
    assert result.statistics.max_gain <= 1e-6 * max(1.0, max(abs(v) for v in result.objectives.values()))


@pytest.mark.solver
def test_strongly_coupled_leaders_do_not_cycle(settings):
    # both reactions are x_i = 2 - x_j, a line of equilibria through x = 1
    result = EPECCoordinator(coupled_leaders(4.0), _params(settings, max_iterations=20)).solve()
    assert result.status == EPECStatus.EQUILIBRIUM_FOUND
    assert result.statistics.iterations == 1
    x0, x1 = result.decisions["L0"][1], result.decisions["L1"][1]
    assert x0 + x1 == pytest.approx(2.0, abs=1e-4)
    for name, z in result.decisions.items():
        assert z[0] == pytest.approx(3.0 - z[1], abs=1e-4)
    assert result.polyhedra == {"L0": [1], "L1": [1]}


@pytest.mark.solver
def test_switching_leaders_grow_their_approximation(settings):
    sizes = []

    def _cb(it, state, max_gain, inner_sizes):
        sizes.append(inner_sizes)
        assert set(state["profile"]) == {"L0", "L1"}

    result = EPECCoordinator(switching_leaders(), _params(settings)).solve(iter_callback=_cb)
    assert result.status == EPECStatus.EQUILIBRIUM_FOUND
    for z in result.decisions.values():
        np.testing.assert_allclose(z, [0.0, 4.0], atol=1e-4)
    assert {name: sorted(ids) for name, ids in result.polyhedra.items()} == {"L0": [0, 1], "L1": [0, 1]}
    assert result.statistics.iterations == 3
    assert len(sizes) == len(result.iter_rows) == result.statistics.iterations
    for prev, cur in zip(sizes, sizes[1:]):
        assert all(c >= p for p, c in zip(prev, cur))


@pytest.mark.solver
def test_exhaustive_policy_needs_fewer_passes(settings):
    result = EPECCoordinator(switching_leaders(), _params(settings, add_policy="exhaustive")).solve()
    assert result.status == EPECStatus.EQUILIBRIUM_FOUND
    assert result.statistics.iterations == 2


@pytest.mark.solver
def test_full_enumeration_certifies_in_one_pass(settings):
    result = EPECCoordinator(switching_leaders(), _params(settings, algorithm="full_enumeration")).solve()
    assert result.status == EPECStatus.EQUILIBRIUM_FOUND
    assert result.statistics.iterations == 1
    for z in result.decisions.values():
        np.testing.assert_allclose(z, [0.0, 4.0], atol=1e-4)


@pytest.mark.solver
def test_iteration_limit(settings):
    result = EPECCoordinator(switching_leaders(), _params(settings, max_iterations=1)).solve()
    assert result.status == EPECStatus.ITERATION_LIMIT_REACHED
    assert result.statistics.iterations == 1


@pytest.mark.solver
def test_time_limit_returns_incumbent(settings):
    result = EPECCoordinator(coupled_leaders(1.0), _params(settings, time_limit=1e-6)).solve()
    assert result.status == EPECStatus.TIME_LIMIT_REACHED
    assert not result.solved
    assert set(result.decisions) == {"L0", "L1"}


@pytest.mark.solver
def test_bounded_primals_give_the_same_equilibrium(settings):
    result = EPECCoordinator(
        coupled_leaders(1.0), _params(settings, bound_primals=True, bound_big_m=100.0)
    ).solve()
    assert result.status == EPECStatus.EQUILIBRIUM_FOUND
    for z in result.decisions.values():
        assert z[1] == pytest.approx(coupled_equilibrium(1.0), abs=1e-4)


@pytest.mark.solver
def test_revert_last_recovers(settings, monkeypatch):
    coord = EPECCoordinator(
        uncoupled_leaders(1),
        _params(settings, algorithm="full_enumeration", recovery="revert_last"),
    )
    real = coord.approximate_equilibrium
    calls = {"n": 0}

    def _flaky(pure=False):
        calls["n"] += 1
        if calls["n"] == 1:
            raise SolverError("forced", model="stub")
        return real(pure)

    monkeypatch.setattr(coord, "approximate_equilibrium", _flaky)
    result = coord.solve()
    assert result.status == EPECStatus.EQUILIBRIUM_FOUND
    assert result.statistics.recoveries == 1
    # enumeration added (+1) then (-1); the revert dropped (-1)
    assert result.polyhedra == {"L0": [1]}
    np.testing.assert_allclose(result.decisions["L0"], [1.0, 2.0], atol=1e-5)


@pytest.mark.solver
def test_enumerate_vertices_reports_every_leader(settings):
    result = EPECCoordinator(uncoupled_leaders(2), _params(settings, enumerate_vertices=True)).solve()
    assert result.solved
    assert set(result.vertices) == {"L0", "L1"}
    for points in result.vertices.values():
        assert points
        for z in points:
            assert z.shape == (2,)
