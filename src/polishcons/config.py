"""Run configuration.

All tunables live on one frozen :class:`ConsensusConfig`, built once per run
(from defaults, a JSON file and/or CLI flags) and handed to every
:class:`~polishcons.context.ReferenceContext`.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConsensusConfig:
    # retention
    bin_size: int = 20
    max_coverage: int = 50
    ncscore_constant: float = 40.0
    invert_scores: bool = False
    min_score: Optional[float] = None
    min_nscore: Optional[float] = None
    min_ncscore: Optional[float] = None
    rep_coverage: int = 0
    rep_flank: int = 150

    # decoding
    trim: bool = True
    indel_taboo: float = 0.1
    indel_taboo_length: Optional[int] = None
    min_trimmed_length: int = 50
    min_trimmed_fraction: float = 0.7
    fallback_phred: int = 1
    qual_weighted: bool = False
    use_ref_qual: bool = False

    # calling
    phred_offset: int = 33
    max_ins_length: int = 0
    variant_min_freq: float = 4
    variant_min_prob: float = 0.0

    # haplotype separation
    haplo_min_freq: float = 2
    haplo_min_prob: float = 0.2
    snp_penalty: float = 60.0
    penalize_keep_every: int = 2
    haplo_quantile: float = 0.75
    haplo_high_coverage_factor: float = 1.5
    haplo_significance: float = 0.00015
    haplo_ref_preference: str = "tie"

    # chimera detection
    chimera_min_bins: int = 20
    chimera_edge_bins: int = 5
    chimera_max_dip_bins: int = 4
    chimera_dip_fraction: float = 0.2
    chimera_entropy_delta: float = 0.7

    def __post_init__(self) -> None:
        if self.bin_size <= 0:
            raise ValueError("bin_size must be > 0")
        if self.max_coverage <= 0:
            raise ValueError("max_coverage must be > 0")
        if not 0.0 <= self.indel_taboo < 0.5:
            raise ValueError("indel_taboo must be in [0, 0.5)")
        if self.indel_taboo_length is not None and self.indel_taboo_length < 0:
            raise ValueError("indel_taboo_length must be >= 0")
        if not 0.0 <= self.min_trimmed_fraction <= 1.0:
            raise ValueError("min_trimmed_fraction must be in [0, 1]")
        if self.max_ins_length < 0:
            raise ValueError("max_ins_length must be >= 0 (0 disables the cap)")
        if self.penalize_keep_every < 1:
            raise ValueError("penalize_keep_every must be >= 1")
        if not 0.0 <= self.haplo_quantile <= 1.0:
            raise ValueError("haplo_quantile must be in [0, 1]")
        if self.haplo_ref_preference not in ("tie", "candidate"):
            raise ValueError("haplo_ref_preference must be 'tie' or 'candidate'")
        if self.chimera_max_dip_bins < 1:
            raise ValueError("chimera_max_dip_bins must be >= 1")

    @property
    def bin_max_bases(self) -> int:
        return self.bin_size * self.max_coverage

    def with_overrides(self, **overrides: Any) -> "ConsensusConfig":
        """Return a copy with non-None overrides applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ConsensusConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown config key(s): {', '.join(unknown)}")
        return cls(**dict(data))


def load_config(path: Optional[str | Path] = None, **overrides: Any) -> ConsensusConfig:
    """Load a JSON config (if given) and apply CLI-style overrides on top."""
    cfg = ConsensusConfig()
    if path is not None:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise ValueError(f"Config file must contain a JSON object: {path}")
        cfg = ConsensusConfig.from_mapping(data)
        logger.info("Loaded config from %s", path)
    return cfg.with_overrides(**overrides)
