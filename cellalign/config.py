"""
Configuration for integration and differential expression runs.

Runs are configured from a YAML file with ``input``, ``output``, ``integration``,
``clustering`` and ``differential`` sections; command-line flags override it.
"""

from dataclasses import dataclass, fields
from enum import Enum
from pathlib import Path
from typing import Optional, Union

import yaml

from .errors import ConfigError


class PAdjustMethod(str, Enum):
    """Multiple-testing correction methods (statsmodels names)."""

    FDR_BH = "fdr_bh"
    FDR_BY = "fdr_by"
    BONFERRONI = "bonferroni"
    HOLM = "holm"

    @classmethod
    def parse(cls, value) -> "PAdjustMethod":
        if isinstance(value, cls):
            return value
        aliases = {"bh": "fdr_bh", "by": "fdr_by"}
        key = str(value).lower()
        try:
            return cls(aliases.get(key, key))
        except ValueError:
            valid = ", ".join(m.value for m in cls)
            raise ConfigError(f"Unknown p_adjust method '{value}' (expected one of: {valid})")


def load_config(config_path: Union[str, Path]) -> dict:
    """Load configuration from YAML file."""
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    with open(path) as f:
        config = yaml.safe_load(f) or {}
    if not isinstance(config, dict):
        raise ConfigError(f"Config root in '{path}' must be a mapping")
    return config


def _known_keys(cls, section: dict) -> dict:
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in section.items() if k in names}


@dataclass(frozen=True)
class IntegrationConfig:
    """Parameters of the reducer, anchor finder and integrator."""

    num_variable_features: int = 2000
    num_components: int = 30
    num_cca_components: Optional[int] = None
    n_neighbors: int = 5
    k_score: int = 30
    anchor_score_floor: float = 0.0
    k_weight: int = 100
    sd_weight: float = 1.0
    k_smooth: int = 20
    n_jobs: Optional[int] = None

    def __post_init__(self):
        for name in ("num_variable_features", "num_components", "n_neighbors", "k_score", "k_weight", "k_smooth"):
            if int(getattr(self, name)) < 1:
                raise ConfigError(f"{name} must be a positive integer")
        if self.num_cca_components is not None:
            if not 1 <= self.num_cca_components <= self.num_components:
                raise ConfigError("num_cca_components must lie in [1, num_components]")
        if not 0.0 <= self.anchor_score_floor <= 1.0:
            raise ConfigError("anchor_score_floor must lie in [0, 1]")
        if self.sd_weight <= 0:
            raise ConfigError("sd_weight must be positive")

    @classmethod
    def from_dict(cls, section: Optional[dict]) -> "IntegrationConfig":
        return cls(**_known_keys(cls, section or {}))


@dataclass(frozen=True)
class DEConfig:
    """Parameters of the per-cluster differential expression engine."""

    condition_a: Optional[str] = None
    condition_b: Optional[str] = None
    min_log_fc: float = 0.25
    only_positive: bool = False
    p_adjust: PAdjustMethod = PAdjustMethod.FDR_BH
    pseudocount: float = 1.0
    sort_by: str = "p_value_adj"
    n_jobs: Optional[int] = None

    def __post_init__(self):
        # frozen: normalize through object.__setattr__
        object.__setattr__(self, "p_adjust", PAdjustMethod.parse(self.p_adjust))
        if self.min_log_fc < 0:
            raise ConfigError("min_log_fc must be non-negative")
        if self.pseudocount <= 0:
            raise ConfigError("pseudocount must be positive")

    @classmethod
    def from_dict(cls, section: Optional[dict]) -> "DEConfig":
        return cls(**_known_keys(cls, section or {}))
