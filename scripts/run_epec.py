from __future__ import annotations

import argparse
import logging
import os
import shutil
import sys
import tempfile
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Dict

sys.path.append(os.path.join(os.path.dirname(__file__), "..", "src"))

from epecsolve import AlgorithmParams, EPECCoordinator, SolverSettings
from epecsolve.instances import coupled_equilibrium, coupled_leaders, switching_leaders, uncoupled_leaders
from epecsolve.plot_results import write_default_plots
from epecsolve.results_writer import write_results_excel


@dataclass(frozen=True)
class RunConfig:
    out_dir: str = "outputs"
    plots_dir: str = "plots"

    instance: str = "coupled"
    leaders: int = 2
    interaction: float = 1.0

    algorithm: str = "inner_approximation"
    add_policy: str = "most_violated"
    recovery: str = "revert_last"
    threads: int = 2
    time_limit: float | None = 600.0
    max_iterations: int | None = 50
    deviation_tol: float = 1e-6
    enumerate_vertices: bool = False
    add_poly_method: str = "sequential"
    add_poly_seed: int | None = None
    aggressiveness: int = 1
    pure_ne: bool = False
    pure_recovery: str = "incremental_enumeration"
    indicators: bool = False
    bound_primals: bool = False
    bound_big_m: float = 1e5

    mip_solver: str = "cplex"
    qp_solver: str = "conopt"
    feastol: float = 1e-8
    opttol: float = 1e-8


def _parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Inner-approximation runner (EPEC).")
    p.add_argument("--out-dir", type=str, default=None, help="Outputs folder (default: outputs).")
    p.add_argument("--plots-dir", type=str, default=None, help="Plots folder (default: plots).")

    p.add_argument("--instance", type=str, choices=["uncoupled", "coupled", "switching"], default=None,
                   help="Reference instance to solve.")
    p.add_argument("--leaders", type=int, default=None, help="Number of leaders (uncoupled instance).")
    p.add_argument("--interaction", type=float, default=None, help="Cost interaction (coupled instance).")

    p.add_argument("--algorithm", type=str, choices=["inner_approximation", "full_enumeration"], default=None)
    p.add_argument("--add-policy", type=str, choices=["most_violated", "round_robin", "exhaustive"], default=None)
    p.add_argument("--recovery", type=str, choices=["abort", "revert_last"], default=None)
    p.add_argument("--threads", type=int, default=None, help="Parallel leader solves per pass.")
    p.add_argument("--time-limit", type=float, default=None, help="Wall-clock limit in seconds.")
    p.add_argument("--max-iterations", type=int, default=None, help="Maximum passes.")
    p.add_argument("--deviation-tol", type=float, default=None, help="Relative tolerance on deviation gains.")
    p.add_argument("--enumerate-vertices", action="store_true", help="Report every complementary vertex.")
    p.add_argument("--add-poly-method", type=str, choices=["sequential", "reverse_sequential", "random"], default=None,
                   help="Order of untried polyhedra added when the approximated game has no equilibrium.")
    p.add_argument("--add-poly-seed", type=int, default=None, help="Seed for --add-poly-method random.")
    p.add_argument("--aggressiveness", type=int, default=None, help="Untried polyhedra added per leader.")
    p.add_argument("--pure-ne", action="store_true", help="Only accept pure-strategy equilibria.")
    p.add_argument("--pure-recovery", type=str, choices=["incremental_enumeration", "combinatorial"], default=None)
    p.add_argument("--indicators", action="store_true", help="SOS1 complementarity instead of big-M.")
    p.add_argument("--bound-primals", action="store_true", help="Cap the primal columns of the approximated game.")
    p.add_argument("--bound-big-m", type=float, default=None, help="Cap used with --bound-primals.")

    p.add_argument("--mip-solver", type=str, default=None, help="Solver for MIP/MIQCP/QCP models.")
    p.add_argument("--qp-solver", type=str, default=None, help="Solver for the complementarity relaxation.")
    p.add_argument("--feastol", type=float, default=None, help="Feasibility tolerance.")
    p.add_argument("--opttol", type=float, default=None, help="Optimality tolerance.")

    p.add_argument("--keep-workdir", action="store_true", help="Keep GAMS workdir after run (for debugging).")
    p.add_argument("--verbose", action="store_true", help="Log per-solve details.")
    return p.parse_args()


def _gams_workdir(run_id: str) -> str:
    base = tempfile.gettempdir()
    workdir = os.path.join(base, f"epecsolve_gams_{run_id}")
    if " " in workdir:
        workdir = os.path.join("C:\\temp", f"epecsolve_gams_{run_id}")
    os.makedirs(workdir, exist_ok=True)
    return workdir


def _solver_options(*, solver: str, feastol: float, opttol: float) -> Dict[str, float]:
    name = solver.strip().lower()

    if name == "cplex":
        return {"eprhs": float(feastol), "epopt": float(opttol)}

    if name == "conopt":
        return {"Tol_Feas_Max": float(feastol), "Tol_Optimality": float(opttol)}

    return {}


if __name__ == "__main__":
    args = _parse_args()
    cfg = RunConfig()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    out_dir = args.out_dir or cfg.out_dir
    plots_dir = args.plots_dir or cfg.plots_dir
    instance = args.instance or cfg.instance
    n_leaders = int(args.leaders) if args.leaders is not None else int(cfg.leaders)
    interaction = float(args.interaction) if args.interaction is not None else float(cfg.interaction)

    mip_solver = (args.mip_solver or cfg.mip_solver).strip()
    qp_solver = (args.qp_solver or cfg.qp_solver).strip()
    feastol = float(args.feastol) if args.feastol is not None else float(cfg.feastol)
    opttol = float(args.opttol) if args.opttol is not None else float(cfg.opttol)

    run_id = datetime.now().strftime("%Y%m%d_%H%M%S") + "_" + uuid.uuid4().hex[:6]
    os.makedirs(out_dir, exist_ok=True)
    os.makedirs(plots_dir, exist_ok=True)
    output_path = os.path.join(out_dir, f"results_{run_id}.xlsx")
    workdir = _gams_workdir(run_id)

    solver_opts = _solver_options(solver=mip_solver, feastol=feastol, opttol=opttol)
    qp_opts = _solver_options(solver=qp_solver, feastol=feastol, opttol=opttol)
    params = AlgorithmParams(
        algorithm=args.algorithm or cfg.algorithm,
        threads=int(args.threads) if args.threads is not None else int(cfg.threads),
        time_limit=args.time_limit if args.time_limit is not None else cfg.time_limit,
        add_policy=args.add_policy or cfg.add_policy,
        recovery=args.recovery or cfg.recovery,
        max_iterations=args.max_iterations if args.max_iterations is not None else cfg.max_iterations,
        deviation_tol=float(args.deviation_tol) if args.deviation_tol is not None else float(cfg.deviation_tol),
        enumerate_vertices=bool(args.enumerate_vertices or cfg.enumerate_vertices),
        add_poly_method=args.add_poly_method or cfg.add_poly_method,
        add_poly_seed=args.add_poly_seed if args.add_poly_seed is not None else cfg.add_poly_seed,
        aggressiveness=int(args.aggressiveness) if args.aggressiveness is not None else int(cfg.aggressiveness),
        pure_ne=bool(args.pure_ne or cfg.pure_ne),
        pure_recovery=args.pure_recovery or cfg.pure_recovery,
        bound_primals=bool(args.bound_primals or cfg.bound_primals),
        bound_big_m=float(args.bound_big_m) if args.bound_big_m is not None else float(cfg.bound_big_m),
        solver=SolverSettings(
            mip_solver=mip_solver,
            qp_solver=qp_solver,
            solver_options=solver_opts,
            qp_solver_options=qp_opts,
            working_directory=workdir,
            indicators=bool(args.indicators or cfg.indicators),
        ),
    )

    if instance == "uncoupled":
        leaders = uncoupled_leaders(n_leaders)
    elif instance == "switching":
        leaders = switching_leaders()
    else:
        leaders = coupled_leaders(interaction)

    print(f"[CONFIG] instance={instance} leaders={len(leaders)}")
    print(f"[CONFIG] algorithm={params.algorithm} policy={params.add_policy} recovery={params.recovery}")
    print(f"[CONFIG] threads={params.threads} time_limit={params.time_limit} max_iterations={params.max_iterations}")
    print(f"[CONFIG] mip_solver={mip_solver} qp_solver={qp_solver} solver_options={solver_opts} qp_solver_options={qp_opts}")
    print(f"[CONFIG] workdir={workdir}{' (keep)' if args.keep_workdir else ' (auto-cleanup)'}")

    pass_times: list[float] = []
    timing_state = {"pass_start": 0.0}

    def _iter_log(it: int, state: Dict[str, object], max_gain: float, inner_sizes: list[int]) -> None:
        elapsed = time.perf_counter() - timing_state["pass_start"]
        pass_times.append(elapsed)
        print(f"[ITER {it}] max_gain={max_gain:.6g} inner_sizes={inner_sizes} pass_time={elapsed:.2f}s")
        for name, z in state["profile"].items():
            obj = state["objectives"][name]
            print(f"  {name:<6} obj={obj:.6g}  z={[round(float(v), 6) for v in z]}")
        timing_state["pass_start"] = time.perf_counter()

    coordinator = EPECCoordinator(leaders, params)
    total_start = time.perf_counter()
    timing_state["pass_start"] = total_start
    try:
        result = coordinator.solve(iter_callback=_iter_log)
    finally:
        total_elapsed = time.perf_counter() - total_start
        print(f"\n[TIMING] Total solve time: {total_elapsed:.2f}s")
        if pass_times:
            print(f"[TIMING] Mean pass time: {sum(pass_times)/len(pass_times):.2f}s  (n={len(pass_times)})")

    print(f"[FINAL] status={result.status.value} passes={result.statistics.iterations} pure={result.statistics.pure}")
    for name, z in result.decisions.items():
        print(f"  {name:<6} obj={result.objectives[name]:.6g}  z={[round(float(v), 6) for v in z]}")
    if instance == "coupled":
        print(f"[FINAL] analytic leader decision x={coupled_equilibrium(interaction):.6g}")

    write_results_excel(
        result=result,
        output_path=output_path,
        meta={
            "instance": instance,
            "leaders": len(leaders),
            "interaction": interaction,
            "algorithm": params.algorithm.value,
            "add_policy": params.add_policy.value,
            "recovery": params.recovery.value,
            "add_poly_method": params.add_poly_method.value,
            "pure_ne": params.pure_ne,
            "threads": params.threads,
            "mip_solver": mip_solver,
            "qp_solver": qp_solver,
            "solver_options": str(solver_opts),
            "qp_solver_options": str(qp_opts),
            "workdir": workdir,
        },
    )
    write_default_plots(output_path=output_path, plots_dir=plots_dir)
    print(f"[OK] wrote: {output_path}")

    if not args.keep_workdir:
        shutil.rmtree(workdir, ignore_errors=True)
        print(f"[CLEANUP] Deleted workdir: {workdir}")
    else:
        print(f"[KEEP] Workdir retained: {workdir}")
