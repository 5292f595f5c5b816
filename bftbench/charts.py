from __future__ import annotations

import logging
from pathlib import Path

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns

LOGGER = logging.getLogger("bftbench.charts")

sns.set_style("whitegrid")
plt.rcParams["figure.dpi"] = 100
plt.rcParams["savefig.dpi"] = 300
plt.rcParams["font.size"] = 10
plt.rcParams["axes.labelsize"] = 11
plt.rcParams["axes.titlesize"] = 13
plt.rcParams["legend.fontsize"] = 9

NETWORK_COLORS = {
    "Local": "#2E86AB",
    "Remote": "#F18F01",
}

LATENCY_THROUGHPUT_CHART = "latency_throughput.png"
LOAD_EFFICIENCY_CHART = "load_efficiency.png"


def render_summary_charts(frame: pd.DataFrame, output_dir: Path) -> list[Path]:
    """Render every summary chart for ``frame``; returns the files written."""
    completed = frame[frame["status"] == "ok"] if "status" in frame.columns else frame
    if completed.empty:
        LOGGER.warning("No completed runs to chart")
        return []

    output_dir.mkdir(parents=True, exist_ok=True)
    paths = [
        _render_latency_throughput(completed, output_dir / LATENCY_THROUGHPUT_CHART),
        _render_load_efficiency(completed, output_dir / LOAD_EFFICIENCY_CHART),
    ]
    for path in paths:
        LOGGER.info("Saved chart %s", path)
    return paths


def _render_latency_throughput(frame: pd.DataFrame, chart_path: Path) -> Path:
    """Average latency against measured throughput, one curve per network and committee."""
    fig, ax = plt.subplots(figsize=(10, 6))

    for (network, nodes, faults), group in frame.groupby(["network_type", "nodes", "faults"], sort=True):
        group = group.sort_values("throughput_tps")
        ax.errorbar(
            group["throughput_tps"],
            group["avg_latency_ms"],
            yerr=group["latency_std_dev_ms"],
            marker="o",
            linewidth=2,
            markersize=6,
            capsize=3,
            color=NETWORK_COLORS.get(network),
            label=f"{network}: {nodes} nodes ({faults})",
        )

    ax.set_xlabel("Throughput (tx/s)", fontweight="semibold")
    ax.set_ylabel("Average Latency (ms)", fontweight="semibold")
    ax.set_title("Latency vs Throughput", fontweight="bold", pad=15)
    ax.set_xlim(left=0)
    ax.set_ylim(bottom=0)
    ax.grid(True, alpha=0.3, linestyle="--")
    ax.legend(loc="upper left", frameon=True, fancybox=True)

    plt.tight_layout()
    fig.savefig(chart_path, bbox_inches="tight", facecolor="white")
    plt.close(fig)
    return chart_path


def _render_load_efficiency(frame: pd.DataFrame, chart_path: Path) -> Path:
    """Measured throughput as a percentage of the offered load, per run."""
    df = frame.copy()
    df["efficiency_pct"] = np.where(df["load"] > 0, df["throughput_tps"] / df["load"] * 100, 0.0)
    df["load_label"] = df["load"].astype(str) + " tx/s"

    fig, ax = plt.subplots(figsize=(10, 6))
    sns.barplot(
        data=df,
        x="load_label",
        y="efficiency_pct",
        hue="network_type",
        palette=NETWORK_COLORS,
        ax=ax,
        errorbar=None,
    )
    ax.axhline(100, color="#6A994E", linestyle="--", linewidth=1.5, label="Offered load")
    ax.axhline(200 / 3, color="#C73E1D", linestyle=":", linewidth=1.5, label="Capacity threshold")

    ax.set_xlabel("Offered Load", fontweight="semibold")
    ax.set_ylabel("Throughput / Load (%)", fontweight="semibold")
    ax.set_title("Load Efficiency", fontweight="bold", pad=15)
    ax.set_ylim(bottom=0)
    ax.grid(True, alpha=0.3, axis="y", linestyle="--")
    ax.legend(loc="lower left", frameon=True, fancybox=True)

    plt.tight_layout()
    fig.savefig(chart_path, bbox_inches="tight", facecolor="white")
    plt.close(fig)
    return chart_path


__all__ = ["LATENCY_THROUGHPUT_CHART", "LOAD_EFFICIENCY_CHART", "render_summary_charts"]
