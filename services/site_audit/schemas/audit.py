from datetime import datetime
from pydantic import BaseModel, AnyHttpUrl, ConfigDict, Field


class AuditRequest(BaseModel):
    url: AnyHttpUrl
    tenant_id: str | None = Field(default=None, max_length=64)


class AuditAccepted(BaseModel):
    audit_id: str
    status: str


class AuditStatusResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    tenant_id: str | None
    url: str
    status: str
    overall_score: int | None
    seo_score: int | None
    ai_readiness_score: int | None
    technical_score: int | None
    pages_crawled: int
    urls_discovered: int
    failed_count: int
    warning_count: int
    passed_count: int
    current_batch: int
    executive_summary: str | None
    error_message: str | None
    started_at: datetime | None
    completed_at: datetime | None
    created_at: datetime
    updated_at: datetime


class CheckResultResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    page_id: int | None
    check_type: str
    check_name: str
    priority: str
    status: str
    details: dict | None
    display_name: str | None
    display_name_passed: str | None
    learn_more_url: str | None
    fix_guidance: str | None
    is_site_wide: bool


class DismissalRequest(BaseModel):
    tenant_id: str = Field(max_length=64)
    check_name: str
    url: str
    dismissed_by: str | None = None
