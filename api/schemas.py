from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field


class IncidentFiltersModel(BaseModel):
    date_from: Optional[str] = None
    date_to: Optional[str] = None
    states: List[str] = Field(default_factory=list)
    district_ids: List[str] = Field(default_factory=list)
    school_types: List[str] = Field(default_factory=list)
    shooting_types: List[str] = Field(default_factory=list)
    min_killed: Optional[int] = None
    max_killed: Optional[int] = None
    min_injured: Optional[int] = None
    max_injured: Optional[int] = None
    has_resource_officer: Optional[bool] = None


class IncidentReportDraftModel(BaseModel):
    title: str = ""
    description: str = ""
    date: str = ""
    category: str = ""
    severity: str = ""
    institution_name: str = ""
    institution_type: str = ""
    state: str = ""
    city: str = ""
    location: str = ""
    reporter_name: str = ""
    reporter_email: str = ""
    reporter_role: str = ""


class ReportReceiptResponse(BaseModel):
    status: str
    title: str
