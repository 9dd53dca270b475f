"""Convergence plots drawn from a results workbook."""

from __future__ import annotations

import logging
import os
from typing import List

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)


def _leader_columns(df: pd.DataFrame, prefix: str) -> List[str]:
    return [c for c in df.columns if str(c).startswith(prefix)]


def write_default_plots(*, output_path: str, plots_dir: str) -> List[str]:
    """
    Standard plots generated at the end of a run. Returns the written files.
    """
    os.makedirs(plots_dir, exist_ok=True)
    written: List[str] = []

    try:
        df_iters = pd.read_excel(output_path, sheet_name="iters")
    except (FileNotFoundError, ValueError) as exc:
        logger.warning("could not read iteration sheet from %s: %s", output_path, exc)
        return written

    df_iters.columns = [str(c).strip() for c in df_iters.columns]
    if "max_gain" in df_iters.columns:
        df_iters = df_iters[df_iters["max_gain"].notna()]

    if {"iter", "max_gain"}.issubset(df_iters.columns) and not df_iters.empty:
        fig, ax = plt.subplots(figsize=(8, 4))
        gains = np.maximum(df_iters["max_gain"].to_numpy(dtype=float), 1e-16)
        ax.semilogy(df_iters["iter"], gains, marker="o", label="max gain")
        for col in _leader_columns(df_iters, "gain_"):
            ax.semilogy(
                df_iters["iter"],
                np.maximum(df_iters[col].to_numpy(dtype=float), 1e-16),
                alpha=0.5,
                linestyle="--",
                label=col[len("gain_"):],
            )
        ax.set_title("Deviation gain per pass")
        ax.set_xlabel("pass")
        ax.set_ylabel("gain")
        ax.legend()
        fig.tight_layout()
        path = os.path.join(plots_dir, "convergence.png")
        fig.savefig(path, dpi=150)
        plt.close(fig)
        written.append(path)

    inner_cols = _leader_columns(df_iters, "inner_")
    if "iter" in df_iters.columns and inner_cols and not df_iters.empty:
        fig, ax = plt.subplots(figsize=(8, 4))
        for col in inner_cols:
            ax.step(df_iters["iter"], df_iters[col], where="post", label=col[len("inner_"):])
        ax.set_title("Inner approximation size")
        ax.set_xlabel("pass")
        ax.set_ylabel("polyhedra")
        ax.legend()
        fig.tight_layout()
        path = os.path.join(plots_dir, "inner_sizes.png")
        fig.savefig(path, dpi=150)
        plt.close(fig)
        written.append(path)

    return written
