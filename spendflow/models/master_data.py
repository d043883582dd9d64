"""Read-only master data the engine looks up but never edits."""
from typing import Optional

from pydantic import Field

from spendflow.models.base import SFBaseModel


class Category(SFBaseModel):
    id: str = Field(min_length=1)
    name: str = ""
    type: str = "OPEX"  # OPEX or CAPEX
    is_active: bool = True


class CostCenter(SFBaseModel):
    id: str = Field(min_length=1)
    name: str = ""
    owner_id: Optional[str] = None
    is_active: bool = True
