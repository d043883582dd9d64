"""Shared model config and base types."""
from pydantic import BaseModel, ConfigDict


class SFBaseModel(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)


class SFFrozenModel(BaseModel):
    """Value objects that must not change once built (policy snapshots, ledger entries)."""
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True, frozen=True)
