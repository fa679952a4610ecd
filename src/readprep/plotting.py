from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Sequence

import matplotlib.pyplot as plt

logger = logging.getLogger(__name__)


def plot_recalibration_curve(
    *,
    curve: List[Dict[str, Any]],
    out_png: str | Path,
    title: str = "Reported vs empirical base quality",
) -> None:
    """Plot one line per read group from ``RecalibrationTable.quality_curve()`` rows."""
    out_png = Path(out_png)
    out_png.parent.mkdir(parents=True, exist_ok=True)

    by_rg: Dict[str, List[Dict[str, Any]]] = {}
    for row in curve:
        by_rg.setdefault(str(row["read_group"]), []).append(row)

    plt.figure()
    top = 1
    for rg, rows in sorted(by_rg.items()):
        xs = [r["reported"] for r in rows]
        ys = [r["empirical"] for r in rows]
        top = max([top] + xs + ys)
        plt.plot(xs, ys, marker="o", label=rg)
    plt.plot([0, top], [0, top], linestyle="--", color="grey")
    plt.xlabel("Reported quality")
    plt.ylabel("Empirical quality")
    plt.title(title)
    if by_rg:
        plt.legend(title="Read group")
    plt.tight_layout()
    plt.savefig(out_png, dpi=160)
    plt.close()


def plot_quality_hist(
    *,
    before: Sequence[int],
    after: Sequence[int],
    out_png: str | Path,
    title: str = "Base quality distribution",
) -> None:
    out_png = Path(out_png)
    out_png.parent.mkdir(parents=True, exist_ok=True)

    n = max(len(before), len(after))
    xs = list(range(n))
    b = list(before) + [0] * (n - len(before))
    a = list(after) + [0] * (n - len(after))

    plt.figure()
    plt.bar([x - 0.2 for x in xs], b, width=0.4, align="center", label="input")
    plt.bar([x + 0.2 for x in xs], a, width=0.4, align="center", label="output")
    plt.xlabel("Base quality")
    plt.ylabel("Base count")
    plt.title(title)
    plt.legend()
    plt.tight_layout()
    plt.savefig(out_png, dpi=160)
    plt.close()


def plot_stage_counts(
    *,
    stage_counts: Dict[str, int],
    out_png: str | Path,
    title: str = "Reads per stage",
) -> None:
    out_png = Path(out_png)
    out_png.parent.mkdir(parents=True, exist_ok=True)

    labels = list(stage_counts)
    values = [int(stage_counts[k]) for k in labels]

    plt.figure()
    plt.bar(labels, values)
    plt.ylabel("Read count")
    plt.title(title)
    plt.xticks(rotation=15, ha="right")
    plt.tight_layout()
    plt.savefig(out_png, dpi=160)
    plt.close()
