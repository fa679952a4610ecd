"""Transform configuration."""

from __future__ import annotations

import dataclasses
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional, Tuple

from .bqsr import DEFAULT_MIN_OBSERVATIONS
from .covariates import DEFAULT_COVARIATES, CovariateKind
from .errors import ConfigurationError
from .markdups import DEFAULT_POLICY, SCORING_POLICIES
from .realign import DEFAULT_MAX_TARGET_SIZE, DEFAULT_MIN_IMPROVEMENT, DEFAULT_MIN_MISMATCH_READS

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransformConfig:
    """Which stages run and how.

    Stage order is fixed (sort, duplicate marking, recalibration,
    realignment, final sort); the ``enable_*`` switches only select stages.
    """

    enable_sort: bool = True
    enable_duplicate_marking: bool = True
    enable_recalibration: bool = True
    enable_realignment: bool = True

    # recalibration
    covariates: Tuple[CovariateKind, ...] = DEFAULT_COVARIATES
    min_observations_for_bucket: int = DEFAULT_MIN_OBSERVATIONS
    known_sites: Optional[str] = None
    dump_recalibration_table: Optional[str] = None

    # duplicate marking
    duplicate_policy: str = DEFAULT_POLICY
    pool_read_groups: bool = False

    # realignment
    reference_fasta: Optional[str] = None
    max_target_size: int = DEFAULT_MAX_TARGET_SIZE
    target_merge_distance: int = 0
    min_mismatch_reads: int = DEFAULT_MIN_MISMATCH_READS
    min_improvement: int = DEFAULT_MIN_IMPROVEMENT

    num_partitions: Optional[int] = None

    def validate(self) -> "TransformConfig":
        """Raise ConfigurationError for invalid or contradictory options; returns self."""
        if self.enable_realignment and not self.enable_sort:
            raise ConfigurationError(
                "Realignment requires the sort stage; enable sort or disable realignment",
                option="enable_realignment",
            )
        if self.enable_duplicate_marking and not self.enable_sort:
            raise ConfigurationError(
                "Duplicate marking requires sort; enable sort or disable duplicate marking",
                option="enable_duplicate_marking",
            )
        if self.enable_recalibration:
            if not self.covariates:
                raise ConfigurationError("At least one covariate is required", option="covariates")
            for c in self.covariates:
                if not isinstance(c, CovariateKind):
                    raise ConfigurationError(f"Unknown covariate: {c!r}", option="covariates")
            if len(set(self.covariates)) != len(self.covariates):
                raise ConfigurationError("Covariates must not repeat", option="covariates")
        if self.duplicate_policy not in SCORING_POLICIES:
            raise ConfigurationError(
                f"Unknown duplicate policy '{self.duplicate_policy}'; choose from {sorted(SCORING_POLICIES)}",
                option="duplicate_policy",
            )

        for name in ("min_observations_for_bucket", "max_target_size", "min_mismatch_reads", "min_improvement"):
            if getattr(self, name) < 1:
                raise ConfigurationError(f"{name} must be >= 1 (got {getattr(self, name)})", option=name)
        if self.target_merge_distance < 0:
            raise ConfigurationError("target_merge_distance must be >= 0", option="target_merge_distance")
        if self.num_partitions is not None and self.num_partitions < 1:
            raise ConfigurationError("num_partitions must be >= 1", option="num_partitions")

        for name in ("known_sites", "reference_fasta"):
            path = getattr(self, name)
            if path is not None and not Path(path).exists():
                raise ConfigurationError(f"{name} file does not exist: {path}", option=name)
        return self

    def to_dict(self) -> dict:
        d = dataclasses.asdict(self)
        d["covariates"] = [c.value for c in self.covariates]
        return d

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "TransformConfig":
        """Build a config from a plain mapping (e.g. parsed JSON); unknown keys are an error."""
        known = {f.name for f in dataclasses.fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigurationError(f"Unknown configuration option(s): {', '.join(unknown)}", option=unknown[0])
        values = dict(data)
        if "covariates" in values:
            raw = values["covariates"]
            if isinstance(raw, str):
                raw = [raw]
            try:
                values["covariates"] = tuple(
                    c if isinstance(c, CovariateKind) else CovariateKind.parse(str(c)) for c in raw
                )
            except ValueError as e:
                raise ConfigurationError(str(e), option="covariates") from e
        return cls(**values)

    @classmethod
    def from_json(cls, path: str | Path) -> "TransformConfig":
        try:
            with open(path, "rt", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Cannot read configuration file {path}: {e}", option="config") from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"Configuration file {path} must hold a JSON object", option="config")
        return cls.from_mapping(data)
