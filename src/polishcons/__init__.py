"""polishcons: consensus polishing of draft sequences from stacked read alignments.

Public API is intentionally small; most users should use the CLI:

    polishcons polish --bam ... --ref ... --outdir ...

"""

from __future__ import annotations

__all__ = ["__version__"]

__version__ = "0.1.0"
