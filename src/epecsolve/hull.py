"""
Extended formulation of the convex hull of a union of polyhedra.

For polyhedra ``P_k = {z >= 0 : G_k z <= h_k}``, ``k = 1..K``, a point ``z``
lies in the closure of ``conv(P_1 u ... u P_K)`` iff there are copies
``z^k >= 0`` and weights ``delta_k >= 0`` with

    z = sum_k z^k,   G_k z^k <= h_k delta_k,   sum_k delta_k = 1.

Variables are laid out as ``[z | z^1 | ... | z^K | delta_1 ... delta_K]``
and every returned row reads ``B y <= b``.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence, Tuple

import numpy as np

from .errors import DimensionMismatch


@dataclass(frozen=True)
class HullLayout:
    n: int
    k: int

    @property
    def n_vars(self) -> int:
        return self.n * (self.k + 1) + self.k

    def copy(self, k: int) -> slice:
        return slice(self.n * (k + 1), self.n * (k + 2))

    @property
    def weights(self) -> slice:
        return slice(self.n * (self.k + 1), self.n_vars)


def convex_hull(
    polyhedra: Sequence[Tuple[np.ndarray, np.ndarray]], n: int
) -> Tuple[np.ndarray, np.ndarray, HullLayout]:
    """Return ``(B, b, layout)`` describing the hull of ``polyhedra`` in ``R^n``."""
    if not polyhedra:
        raise ValueError("the convex hull of no polyhedra is empty")
    layout = HullLayout(n, len(polyhedra))

    link = np.zeros((n, layout.n_vars))
    link[:, :n] = np.eye(n)
    for k in range(layout.k):
        link[:, layout.copy(k)] = -np.eye(n)
    blocks_B = [link, -link]
    blocks_b = [np.zeros(n), np.zeros(n)]

    first_weight = layout.weights.start
    for k, (G, h) in enumerate(polyhedra):
        G = np.atleast_2d(np.asarray(G, dtype=float))
        h = np.asarray(h, dtype=float).ravel()
        if G.shape != (h.shape[0], n):
            raise DimensionMismatch(f"polyhedron {k}: G is {G.shape}, expected ({h.shape[0]}, {n})")
        block = np.zeros((G.shape[0], layout.n_vars))
        block[:, layout.copy(k)] = G
        block[:, first_weight + k] = -h
        blocks_B.append(block)
        blocks_b.append(np.zeros(G.shape[0]))

    total = np.zeros((2, layout.n_vars))
    total[0, layout.weights] = 1.0
    total[1, layout.weights] = -1.0
    blocks_B.append(total)
    blocks_b.append(np.array([1.0, -1.0]))
    return np.vstack(blocks_B), np.concatenate(blocks_b), layout
