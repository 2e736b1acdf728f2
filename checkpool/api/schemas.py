from __future__ import annotations

from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


SESSION_ID_PATTERN = r"^ses_[0-9A-HJKMNP-TV-Z]{26}$"
FINGERPRINT_PATTERN = r"^[0-9a-f]{64}$"

SERVICE_FETCH = 1
SERVICE_REPORT = 2


class WorkerMetrics(BaseModel):
    started: bool = False
    stopped: bool = False
    ticks_total: int = 0
    claims_total: int = 0
    idle_ticks_total: int = 0
    errors_total: int = 0
    last_error: str | None = None


class HealthResponse(BaseModel):
    status: str
    role: str
    mode: str


class ReadyResponse(BaseModel):
    status: str
    role: str
    mode: str
    worker_loop_enabled: bool
    worker_loop_ready: bool
    worker_metrics: WorkerMetrics


class WorkerEnvelope(BaseModel):
    """Response shape expected by existing worker scripts."""

    ErrorId: int
    Title: str
    Message: str
    Content: Any = ""


class ApiEnvelope(BaseModel):
    success: bool
    message: str = ""
    data: Any = None


class _LegacyRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    token: str | None = Field(default=None, validation_alias=AliasChoices("token", "Token"))
    device: str = Field(default="", max_length=128, validation_alias=AliasChoices("device", "Device"))

    @field_validator("device", mode="before")
    @classmethod
    def _coerce_device(cls, value: object) -> object:
        if value is None:
            return ""
        return str(value).strip()


class WorkerRequest(_LegacyRequest):
    service_type: int = Field(validation_alias=AliasChoices("service_type", "LoaiDV"))


class FetchRequest(_LegacyRequest):
    quantity: int = Field(default=1, validation_alias=AliasChoices("quantity", "Amount"))
    check_type: int = Field(default=1, validation_alias=AliasChoices("check_type", "TypeCheck"))
    fallback_content: str | None = Field(
        default=None,
        max_length=4096,
        validation_alias=AliasChoices("fallback_content", "Content"),
    )


class ReportRequest(_LegacyRequest):
    item_id: str = Field(default="", validation_alias=AliasChoices("item_id", "Id"))
    outcome: int = Field(validation_alias=AliasChoices("outcome", "Status"))
    message: str = Field(default="", max_length=2048, validation_alias=AliasChoices("message", "Msg"))
    origin: str | None = Field(default=None, max_length=256, validation_alias=AliasChoices("origin", "From"))
    origin_class: str | None = Field(default=None, max_length=64, validation_alias=AliasChoices("origin_class", "Type"))
    locale: str | None = Field(default=None, max_length=16, validation_alias=AliasChoices("locale", "Country"))
    issuer: str | None = Field(default=None, max_length=128, validation_alias=AliasChoices("issuer", "Bank"))
    tier: str | None = Field(default=None, max_length=64, validation_alias=AliasChoices("tier", "Level"))
    extra: dict[str, str] = Field(default_factory=dict)

    @field_validator("item_id", "message", mode="before")
    @classmethod
    def _coerce_text(cls, value: object) -> object:
        if value is None:
            return ""
        return str(value).strip()

    # Workers send numeric origin and class tags; they are stored as text.
    @field_validator("origin", "origin_class", "locale", "issuer", "tier", mode="before")
    @classmethod
    def _coerce_tag(cls, value: object) -> object:
        if value is None:
            return None
        return str(value).strip() or None


class LeasedItemResponse(BaseModel):
    Id: str
    Content: str
    TypeCheck: int
    Price: float


class StartSessionRequest(BaseModel):
    items: list[str] | str
    check_type: int = Field(default=1, ge=1)


class StopSessionRequest(BaseModel):
    session_id: str = Field(pattern=SESSION_ID_PATTERN)


class ExistingItemsRequest(BaseModel):
    fingerprints: list[str] = Field(default_factory=list, max_length=10000)
    contents: list[str] = Field(default_factory=list, max_length=10000)
    check_type: int | None = Field(default=None, ge=1)
    window_days: int = Field(default=7, ge=0, le=365)


class SessionResponse(BaseModel):
    session_id: str
    owner_id: str
    status: str
    check_type: int
    total: int
    price_per_item: float
    estimated_cost: float
    stop_requested: bool
    created_at: str | None = None
    started_at: str | None = None
    ended_at: str | None = None


class SessionItemResponse(BaseModel):
    item_id: str
    fingerprint: str
    status: str
    legacy_code: int
    resolution: dict[str, object] | None = None
    resolved_at: str | None = None


class StartSessionData(BaseModel):
    session: SessionResponse
    seeded: int
    skipped: list[str]


class StopSessionData(BaseModel):
    session: SessionResponse
    released: int


class SessionStatusData(BaseModel):
    session: SessionResponse
    counts: dict[str, int]
    total: int
    processed: int
    pending: int
    progress: int
    items: list[SessionItemResponse]


class EvictData(BaseModel):
    session_id: str
    released: int


class ResolvedMatchResponse(BaseModel):
    fingerprint: str
    status: str
    legacy_code: int
    source: str
    check_type: int | None = None
    item_id: str | None = None
    message: str = ""
    metadata: dict[str, object] = Field(default_factory=dict)
    resolved_at: str | None = None


class DeviceUsageResponse(BaseModel):
    device: str
    total: int
    today: int
    daily: list[dict[str, object]]
