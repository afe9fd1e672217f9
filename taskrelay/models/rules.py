"""Trigger Rules — controller-supplied criteria matched against observations."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class CriteriaType(str, Enum):
    CATEGORY = "category"           # Exact category equality
    URL_CONTAINS = "url_contains"   # Case-insensitive substring of the raw URL


class RuleCriteria(BaseModel):
    type: CriteriaType
    value: str


class TriggerRule(BaseModel):
    """A single rule. Rule sets are replaced wholesale by the controller."""

    id: str = Field(min_length=1)
    criteria: RuleCriteria


class RuleMatchState(BaseModel):
    """Debounce state for one rule. Created on first match."""

    active: bool = False
    last_triggered_at: datetime


class Observation(BaseModel):
    """One environment observation (a location change on the surface)."""

    url: str
    domain: str = ""
    category: str = "other"
    observed_at: Optional[datetime] = None
