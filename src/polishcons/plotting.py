from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List, Sequence

import matplotlib.pyplot as plt

logger = logging.getLogger(__name__)


def plot_coverage_profile(
    *,
    profile: List[float],
    bin_size: int,
    out_png: str | Path,
    chimeras: Sequence[Dict[str, float]] = (),
    title: str = "Coverage",
) -> None:
    """Plot mean column coverage per window, shading chimera candidate regions."""
    out_png = Path(out_png)
    out_png.parent.mkdir(parents=True, exist_ok=True)

    xs = [i * bin_size for i in range(len(profile))]

    plt.figure(figsize=(8, 3))
    plt.step(xs, profile, where="post")
    for region in chimeras:
        plt.axvspan(region["start0"], region["end0"], color="tab:red", alpha=0.25)
    plt.xlabel("Reference position (0-based)")
    plt.ylabel("Mean coverage")
    plt.title(title)
    plt.tight_layout()
    plt.savefig(out_png, dpi=160)
    plt.close()


def plot_read_counts(
    *,
    counts: Dict[str, int],
    out_png: str | Path,
    title: str = "Alignments",
) -> None:
    out_png = Path(out_png)
    out_png.parent.mkdir(parents=True, exist_ok=True)

    labels = ["Admitted", "Rejected", "Unscored", "Unmapped", "Secondary", "Supplementary", "Duplicate"]
    values = [
        int(counts.get("reads_admitted", 0)),
        int(counts.get("reads_rejected", 0)),
        int(counts.get("reads_unscored", 0)),
        int(counts.get("reads_unmapped", 0)),
        int(counts.get("reads_skipped_secondary", 0)),
        int(counts.get("reads_skipped_supplementary", 0)),
        int(counts.get("reads_skipped_duplicates", 0)),
    ]

    plt.figure()
    plt.bar(labels, values)
    plt.ylabel("Read count")
    plt.title(title)
    plt.xticks(rotation=30, ha="right")
    plt.tight_layout()
    plt.savefig(out_png, dpi=160)
    plt.close()


def plot_chimera_scores(
    *,
    scores: List[float],
    out_png: str | Path,
    title: str = "Chimera scores",
    nbins: int = 20,
) -> None:
    out_png = Path(out_png)
    out_png.parent.mkdir(parents=True, exist_ok=True)

    plt.figure()
    plt.hist(scores, bins=nbins, range=(0.0, 1.0))
    plt.xlabel("Fraction of columns above entropy threshold")
    plt.ylabel("Coverage dips")
    plt.title(title)
    plt.tight_layout()
    plt.savefig(out_png, dpi=160)
    plt.close()
