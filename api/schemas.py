from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class FilterRequestModel(BaseModel):
    dimensions: Dict[str, List[str]] = Field(default_factory=dict)
    # ISO dates or datetimes; a bare date end bound covers the whole day.
    date_start: Optional[str] = None
    date_end: Optional[str] = None
    quick_range: Optional[str] = None
    # SSO the whole page is scoped to; only datasets with a source dimension accept it
    source: Optional[str] = None

    @field_validator("date_start", "date_end")
    @classmethod
    def _iso_date(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return None
        datetime.fromisoformat(value.strip())
        return value.strip()


class RowsRequestModel(FilterRequestModel):
    limit: Optional[int] = Field(default=None, ge=0, le=100_000)
    offset: int = Field(default=0, ge=0)


class CrosstabRequestModel(FilterRequestModel):
    row_dimension: str
    column_dimension: str
    columns: List[str] = Field(default_factory=list)
