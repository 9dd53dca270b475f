from __future__ import annotations

import os
from typing import Dict, List

import pandas as pd

from .epec import EPECResult


def _decision_rows(result: EPECResult) -> List[Dict[str, object]]:
    rows: List[Dict[str, object]] = []
    for name, z in result.decisions.items():
        for col, value in enumerate(z):
            rows.append({"leader": name, "column": col, "value": float(value)})
    return rows


def _summary_rows(result: EPECResult) -> List[Dict[str, object]]:
    stats = result.statistics
    weights = result.weights or {}
    rows: List[Dict[str, object]] = []
    for i, name in enumerate(result.decisions):
        rows.append(
            {
                "leader": name,
                "objective": result.objectives.get(name, float("nan")),
                "inner_size": stats.inner_sizes[i] if i < len(stats.inner_sizes) else 0,
                "polyhedra_added": stats.polyhedra_added[i] if i < len(stats.polyhedra_added) else 0,
                "polyhedra": " ".join(str(p) for p in result.polyhedra.get(name, [])),
                "weights": " ".join(f"{w:.6g}" for w in weights.get(name, [])),
            }
        )
    return rows


def write_results_excel(
    *,
    result: EPECResult,
    output_path: str,
    meta: Dict[str, object] | None = None,
) -> None:
    os.makedirs(os.path.dirname(output_path) or ".", exist_ok=True)
    stats = result.statistics

    df_summary = pd.DataFrame(_summary_rows(result))
    df_decisions = pd.DataFrame(_decision_rows(result))
    df_iters = pd.DataFrame(result.iter_rows)

    vertex_rows: List[Dict[str, object]] = []
    for name, vertices in (result.vertices or {}).items():
        for k, z in enumerate(vertices):
            row: Dict[str, object] = {"leader": name, "vertex": k}
            row.update({f"z{j}": float(v) for j, v in enumerate(z)})
            vertex_rows.append(row)
    df_vertices = pd.DataFrame(vertex_rows)

    meta_items = {
        "status": result.status.value,
        "iterations": stats.iterations,
        "max_gain": stats.max_gain,
        "recoveries": stats.recoveries,
        "solver_retries": stats.solver_retries,
        "lost_equilibria": stats.lost_equilibria,
        "pure": stats.pure,
        "wall_clock": stats.wall_clock,
        "message": stats.message,
    }
    meta_items.update(meta or {})
    df_meta = pd.DataFrame(list(meta_items.items()), columns=["key", "value"])

    with pd.ExcelWriter(output_path, engine="xlsxwriter") as writer:
        workbook = writer.book
        header_fmt = workbook.add_format({"bold": True, "text_wrap": False, "valign": "top", "border": 1})

        def write_sheet(df: pd.DataFrame, sheet_name: str):
            if df.empty:
                return

            df.to_excel(writer, sheet_name=sheet_name, index=False)
            worksheet = writer.sheets[sheet_name]

            for idx, col in enumerate(df.columns):
                worksheet.write(0, idx, col, header_fmt)
                max_len = max(len(str(col)), df[col].astype(str).map(len).max())
                worksheet.set_column(idx, idx, min(max(max_len + 2, 10), 30))

            worksheet.freeze_panes(1, 0)
            max_row, max_col = df.shape
            worksheet.autofilter(0, 0, max_row, max_col - 1)

        write_sheet(df_summary, "leaders")
        write_sheet(df_decisions, "decisions")
        write_sheet(df_iters, "iters")
        write_sheet(df_vertices, "vertices")
        write_sheet(df_meta, "meta")
