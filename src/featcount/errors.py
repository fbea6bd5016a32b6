from __future__ import annotations

from typing import Optional


class FeatcountError(RuntimeError):
    """Base class for errors raised by featcount."""


class ConfigError(FeatcountError, ValueError):
    """Invalid counting configuration; raised before any record is read."""


class MalformedInputError(FeatcountError):
    """Too many defective input records; the run is aborted and no table is returned."""

    def __init__(self, message: str, *, reference: Optional[str] = None,
                 position: Optional[int] = None, category: str = "malformed"):
        self.reference = reference
        self.position = position
        self.category = category
        where = f"{reference or '*'}:{position if position is not None else '?'}"
        super().__init__(f"{message} [{category} at {where}]")
