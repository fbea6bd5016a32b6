from __future__ import annotations

from dataclasses import dataclass, fields, asdict
from enum import Enum
from pathlib import Path
from typing import Any, Dict

import yaml

from .errors import ConfigError


class OverlapMode(str, Enum):
    UNION = "union"
    INTERSECTION_STRICT = "intersection-strict"
    INTERSECTION_NONEMPTY = "intersection-nonempty"


STRANDED_CHOICES = ("yes", "no", "reverse")
UNPAIRED_CHOICES = ("single", "discard")


@dataclass
class CountConfig:
    """
    Options for one counting run.

    The first block mirrors the options every caller must understand; the rest
    tune read filtering and the worker pool.
    """
    overlap_mode: str = OverlapMode.UNION.value
    stranded: str = "yes"
    paired: bool = False
    count_multimapping: bool = False
    count_duplicates: bool = True
    min_overlap_fraction: float = 0.0
    min_overlap_bases: int = 0

    require_proper_pair: bool = True
    unpaired_mates: str = "single"     # "single" or "discard"
    count_secondary: bool = False
    count_supplementary: bool = False
    duplicates_in_multimapping: bool = True
    min_mapq: int = 0
    max_malformed: int = 1000
    workers: int = 1

    @property
    def mode(self) -> OverlapMode:
        return OverlapMode(self.overlap_mode)

    def validate(self) -> "CountConfig":
        """Raise ConfigError on the first invalid option; returns self for chaining."""
        try:
            OverlapMode(self.overlap_mode)
        except ValueError:
            choices = ", ".join(m.value for m in OverlapMode)
            raise ConfigError(f"overlap_mode must be one of: {choices} (got {self.overlap_mode!r})")
        if self.stranded not in STRANDED_CHOICES:
            raise ConfigError(f"stranded must be one of: {', '.join(STRANDED_CHOICES)} (got {self.stranded!r})")
        if self.unpaired_mates not in UNPAIRED_CHOICES:
            raise ConfigError(
                f"unpaired_mates must be one of: {', '.join(UNPAIRED_CHOICES)} (got {self.unpaired_mates!r})"
            )
        for name in ("paired", "count_multimapping", "count_duplicates", "require_proper_pair",
                     "count_secondary", "count_supplementary", "duplicates_in_multimapping"):
            if not isinstance(getattr(self, name), bool):
                raise ConfigError(f"{name} must be true or false (got {getattr(self, name)!r})")
        frac = self.min_overlap_fraction
        if isinstance(frac, bool) or not isinstance(frac, (int, float)) or not 0.0 <= frac <= 1.0:
            raise ConfigError(f"min_overlap_fraction must be within 0.0-1.0 (got {frac!r})")
        for name, lowest in (("min_overlap_bases", 0), ("min_mapq", 0), ("max_malformed", 0), ("workers", 1)):
            v = getattr(self, name)
            if isinstance(v, bool) or not isinstance(v, int) or v < lowest:
                raise ConfigError(f"{name} must be an integer >= {lowest} (got {v!r})")
        return self

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, values: Dict[str, Any]) -> "CountConfig":
        known = {f.name for f in fields(cls)}
        # YAML users tend to write dashes; accept both spellings
        normalized = {str(k).replace("-", "_"): v for k, v in (values or {}).items()}
        unknown = sorted(set(normalized) - known)
        if unknown:
            raise ConfigError(f"Unknown configuration option(s): {', '.join(unknown)}")
        return cls(**normalized)


def load_config(config_path: str | Path) -> Dict[str, Any]:
    """
    Load counting options from a YAML file.

    The options may sit at the top level or under a ``count:`` section.
    """
    path = Path(config_path)
    if not path.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")
    try:
        with open(path, "r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
    except yaml.YAMLError as e:
        raise ConfigError(f"Could not parse {config_path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{config_path}: expected a mapping of options")
    if isinstance(data.get("count"), dict):
        data = data["count"]
    return data
