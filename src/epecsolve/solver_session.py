from __future__ import annotations

import logging
import os
import shutil
import tempfile
from typing import Dict, List, Sequence

import numpy as np
from gamspy import Container, Model, Options, Parameter, Set
from gamspy.exceptions import GamspyException

from .config import SolverSettings
from .errors import Infeasible, SolverError, Unbounded

logger = logging.getLogger(__name__)

_ACCEPTED = {
    "OptimalGlobal",
    "OptimalLocal",
    "Integer",
    "Feasible",
    "Solved",
    "SolvedUnique",
    "SolvedSingular",
}


def status_name(status: object) -> str:
    return getattr(status, "name", str(status))


class SolverSession:
    """Owns one gamspy Container in a private, space-free working directory.

    Use as a context manager; the directory is removed on every exit path.
    A session is never shared between threads.
    """

    def __init__(self, settings: SolverSettings | None = None, *, name: str = "epec"):
        self.settings = settings or SolverSettings()
        self.name = name
        self.workdir: str | None = None
        self.container: Container | None = None

    def __enter__(self) -> "SolverSession":
        base = self.settings.base_directory() or tempfile.gettempdir()
        self.workdir = tempfile.mkdtemp(prefix=f"epec_{self.name}_", dir=base)
        if " " in self.workdir:
            shutil.rmtree(self.workdir, ignore_errors=True)
            raise ValueError(f"GAMS working directory must be space-free. Got: {self.workdir}")
        self.container = Container(working_directory=self.workdir)
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.container = None
        if self.workdir and os.path.isdir(self.workdir):
            shutil.rmtree(self.workdir, ignore_errors=True)
        self.workdir = None
        return False

    # ------------------------------------------------------------------
    # symbol helpers
    # ------------------------------------------------------------------
    @staticmethod
    def labels(prefix: str, n: int) -> List[str]:
        return [f"{prefix}{k}" for k in range(n)]

    def index_set(self, name: str, labels: Sequence[str], domain: Sequence[Set] | None = None) -> Set:
        if domain is None:
            return Set(self.container, name, records=list(labels))
        return Set(self.container, name, domain=list(domain), records=list(labels))

    def vector(self, name: str, domain: Set, labels: Sequence[str], values: np.ndarray) -> Parameter:
        records = [(lab, float(v)) for lab, v in zip(labels, values) if v != 0.0]
        if records:
            return Parameter(self.container, name, domain=[domain], records=records)
        return Parameter(self.container, name, domain=[domain])

    def matrix(
        self,
        name: str,
        domain: Sequence[Set],
        row_labels: Sequence[str],
        col_labels: Sequence[str],
        values: np.ndarray,
    ) -> Parameter:
        rows, cols = np.nonzero(values)
        records = [
            (row_labels[i], col_labels[j], float(values[i, j])) for i, j in zip(rows, cols)
        ]
        if records:
            return Parameter(self.container, name, domain=list(domain), records=records)
        return Parameter(self.container, name, domain=list(domain))

    @staticmethod
    def values(var, labels: Sequence[str]) -> np.ndarray:
        out = var.toDict()
        out = out if isinstance(out, dict) else {}
        return np.array([float(out.get(lab, 0.0)) for lab in labels])

    # ------------------------------------------------------------------
    # solving
    # ------------------------------------------------------------------
    def solve(self, model: Model, *, solver: str, time_limit: float | None = None) -> float:
        """Solve ``model`` and return its objective value.

        Raises Infeasible, Unbounded or SolverError according to the model
        status reported by the solver.
        """
        kwargs: Dict[str, object] = self.settings.solve_kwargs(solver)
        limit = time_limit if time_limit is not None else self.settings.time_limit
        if limit is not None:
            kwargs["options"] = Options(time_limit=max(float(limit), 1.0))

        try:
            model.solve(**kwargs)
        except GamspyException as e:
            raise SolverError(
                f"Solver '{solver}' failed for model '{model.name}' in workdir '{self.workdir}': {e}",
                model=model.name,
            ) from e

        name = status_name(model.status)
        logger.debug("model %s solved with %s: status=%s", model.name, solver, name)
        if name in _ACCEPTED:
            return float(model.objective_value)
        if "Infeasible" in name:
            raise Infeasible(f"Model '{model.name}' is infeasible ({name})", model=model.name, status=name)
        if "Unbounded" in name:
            raise Unbounded(f"Model '{model.name}' is unbounded ({name})", model=model.name, status=name)
        raise SolverError(
            f"Model '{model.name}' returned status {name} (solver '{solver}')",
            model=model.name,
            status=name,
        )
