from __future__ import annotations

import json
import logging
import math
from pathlib import Path
from typing import Any, Iterable, List, Optional, Sequence, Tuple

import numpy as np

logger = logging.getLogger(__name__)

# Scales phred^2 to frequencies so that typical per-column counts (~1-13)
# fall into the usual phred range (~10-40).
PHRED_FREQ_CONSTANT = 120
MAX_PHRED = 40

Range = Tuple[int, int]  # (offset, length)


def clamp(x: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, x))


def freq_to_phred(freq: float) -> int:
    p = int(math.sqrt(max(freq, 0.0) * PHRED_FREQ_CONSTANT) + 0.5)
    return min(p, MAX_PHRED)


def phred_to_freq(phred: int) -> float:
    return int((phred**2 / PHRED_FREQ_CONSTANT) * 100 + 0.5) / 100


def freqs_to_phreds(freqs: Iterable[float]) -> List[int]:
    return [freq_to_phred(f) for f in freqs]


def phreds_to_string(phreds: Iterable[float], offset: int = 33) -> str:
    # coverage strings may carry raw frequencies; cap to printable ASCII
    return "".join(chr(int(clamp(round(p), 0, 126 - offset)) + offset) for p in phreds)


def in_ranges(pos: int, ranges: Optional[Sequence[Range]]) -> bool:
    """True if ``pos`` lies in any ``(offset, length)`` range."""
    if not ranges:
        return False
    return any(off <= pos < off + length for off, length in ranges)


def span_in_ranges(start: int, length: int, ranges: Sequence[Range]) -> bool:
    """True if ``[start, start+length)`` lies entirely within one range."""
    last = start + length - 1
    for off, rlen in ranges:
        if off <= start < off + rlen and off <= last < off + rlen:
            return True
    return False


def shannon_entropy(freqs: Iterable[float]) -> float:
    """Shannon entropy (bits) of a frequency vector, ignoring zero entries."""
    x = np.asarray([f for f in freqs if f], dtype=float)
    if x.size == 0:
        return 0.0
    p = x / x.sum()
    return float(-(p * np.log2(p)).sum())


def compress_trace(trace: str) -> str:
    """Run-length encode a trace string: 'MMMDMMII' -> '3M1D2M2I'."""
    out: List[str] = []
    i = 0
    while i < len(trace):
        j = i
        while j < len(trace) and trace[j] == trace[i]:
            j += 1
        out.append(f"{j - i}{trace[i]}")
        i = j
    return "".join(out)


def ensure_outdir(path: str | Path) -> Path:
    p = Path(path)
    p.mkdir(parents=True, exist_ok=True)
    return p


def write_json(path: str | Path, obj: Any) -> None:
    with open(path, "wt", encoding="utf-8") as f:
        json.dump(obj, f, indent=2, sort_keys=True)
