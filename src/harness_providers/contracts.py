from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

ResponseStatus = Literal["success", "error", "timeout", "rate_limited"]
HealthStatus = Literal["healthy", "degraded", "unhealthy"]
ConnectionStatus = Literal["connected", "disconnected", "unknown"]
Priority = Literal["low", "normal", "high", "critical"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AIRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    service_type: str
    prompt: str
    parameters: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] | None = None


class ErrorInfo(BaseModel):
    code: str
    message: str
    details: Any = None


class ResponseMetadata(BaseModel):
    model_config = ConfigDict(extra="allow")

    model: str
    provider: str
    tokens_used: int | None = None
    response_time: float
    confidence: float | None = None
    timestamp: datetime = Field(default_factory=utcnow)


class AIResponse(BaseModel):
    id: str
    content: str
    metadata: ResponseMetadata
    status: ResponseStatus
    error: ErrorInfo | None = None


class ServiceConfig(BaseModel):
    enabled: bool = True
    configuration: dict[str, Any] = Field(default_factory=dict)


class RetrySettings(BaseModel):
    max_attempts: int = Field(ge=1)
    backoff_ms: float = Field(ge=0)


class ProviderConfig(BaseModel):
    name: str
    version: str
    # May carry secrets (apiKey); providers must not keep them past cleanup().
    parameters: dict[str, Any] = Field(default_factory=dict)
    services: dict[str, ServiceConfig] = Field(default_factory=dict)
    timeout: float | None = Field(default=None, gt=0)
    retries: RetrySettings | None = None


class SystemState(BaseModel):
    load: float = 0.0
    memory_usage: float = 0.0
    active_connections: int = 0


class RequestContext(BaseModel):
    priority: Priority = "normal"
    deadline: datetime | None = None
    retry_count: int = 0


class ProviderStats(BaseModel):
    success_rate: float = 0.0
    average_response_time: float = 0.0
    last_used: datetime | None = None


class ProviderContext(BaseModel):
    model_config = ConfigDict(frozen=True)

    system_state: SystemState = Field(default_factory=SystemState)
    request_context: RequestContext = Field(default_factory=RequestContext)
    provider_stats: ProviderStats = Field(default_factory=ProviderStats)


class ProviderInfo(BaseModel):
    name: str
    version: str
    capabilities: list[str]


class ConnectionTestResult(BaseModel):
    success: bool
    duration: float = 0.0
    message: str
    provider: ProviderInfo | None = None
    error: ErrorInfo | None = None


class HealthDetails(BaseModel):
    connection_status: ConnectionStatus
    response_time: float
    error_rate: float
    last_check: datetime = Field(default_factory=utcnow)


class ProviderHealth(BaseModel):
    status: HealthStatus
    score: float = Field(ge=0.0, le=1.0)
    details: HealthDetails
    message: str


class ProviderStatistics(BaseModel):
    name: str
    version: str
    total_requests: int
    successful_requests: int
    failed_requests: int
    success_rate: float
    average_response_time: float
    supported_service_types: list[str]
    last_used: datetime | None = None
