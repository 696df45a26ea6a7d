from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from models import Direction, ManagementPolicy

# Largest magnitude accepted for a single manual figure (one billion, in cents).
MAX_AMOUNT_CENTS = 100_000_000_000


class CategoryIn(BaseModel):
    name: str = Field(..., max_length=255)
    direction: Direction
    description: Optional[str] = None
    management_policy: ManagementPolicy = ManagementPolicy.auto


class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(default=None, max_length=255)
    description: Optional[str] = None
    management_policy: Optional[ManagementPolicy] = None


class CategoryOut(BaseModel):
    id: int
    name: str
    description: Optional[str]
    direction: Direction
    management_policy: ManagementPolicy
    display_order: Optional[int]
    created_at: datetime
    updated_at: datetime


class ReorderIn(BaseModel):
    direction: Literal["up", "down"]


class ManualEntryIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    category_id: int
    year: int
    month: int
    amount_cents: int
    currency_breakdown: Optional[dict[str, int]] = None
    note: Optional[str] = Field(default=None, max_length=500)


class ManualEntryUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    amount_cents: Optional[int] = None
    note: Optional[str] = Field(default=None, max_length=500)


class ManualEntryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    category_id: int
    direction: Direction
    year: int
    month: int
    amount_cents: int
    currency_breakdown: Optional[dict[str, int]]
    note: Optional[str]
    created_at: datetime
    updated_at: datetime
