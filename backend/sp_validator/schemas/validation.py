from datetime import datetime
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator

from sp_validator.models.validation import ValidationStatus


class CredentialsIn(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    tenant_id: str = Field(..., min_length=1, max_length=255)
    client_id: str = Field(..., min_length=1, max_length=255)
    client_secret: str = Field(..., min_length=1, max_length=1024)
    display_name: Optional[str] = Field(default=None, max_length=255)


class TestConfigIn(BaseModel):
    # Not a pytest test class despite the name
    __test__ = False

    resource_group: Optional[str] = Field(default=None, min_length=1, max_length=90)
    location: Optional[str] = Field(default=None, min_length=1, max_length=64)
    test_files: Optional[List[str]] = Field(default=None, max_length=20)

    @field_validator("test_files")
    @classmethod
    def validate_file_names(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        if value is None:
            return value
        for name in value:
            if not name or name.startswith(("/", "\\")) or ".." in name.replace("\\", "/").split("/"):
                raise ValueError(f"invalid test file name: {name!r}")
        return value


class ValidateRequest(BaseModel):
    credentials: CredentialsIn
    subscription_id: str = Field(..., min_length=1, max_length=255)
    webhook_url: Optional[str] = Field(default=None, max_length=2048)
    test_config: TestConfigIn = Field(default_factory=TestConfigIn)
    validation_id: Optional[str] = Field(
        default=None,
        min_length=1,
        max_length=36,
        pattern=r"^[A-Za-z0-9._:-]+$",
        description="Caller-chosen id; resubmitting the same id returns the existing validation",
    )

    @field_validator("webhook_url")
    @classmethod
    def validate_webhook_url(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        value = value.strip()
        parsed = urlparse(value)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError("webhook_url must be an absolute http(s) URL")
        return value


class SubmitResponse(BaseModel):
    validation_id: str
    status: ValidationStatus
    message: str
    status_url: str


class StatusResponse(BaseModel):
    validation_id: str
    status: ValidationStatus
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class ReportResponse(StatusResponse):
    report: Dict[str, Any]


class DeliveryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    validation_id: str
    webhook_url: str
    status: str
    attempts: int
    max_attempts: int
    last_attempt_at: Optional[datetime] = None
    response_status: Optional[int] = None
    response_body: Optional[str] = None
    created_at: Optional[datetime] = None


class DeliveryListResponse(BaseModel):
    validation_id: str
    deliveries: List[DeliveryResponse]
