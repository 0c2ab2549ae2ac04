"""Statistics, confidence adjustment and health scoring shared by every provider."""

from __future__ import annotations

from datetime import datetime

from .contracts import HealthStatus, ProviderContext, ProviderStatistics, utcnow

HEALTH_RESPONSE_TIME_CEILING_MS = 5000.0


class StatisticsTracker:
    """Running counters for one provider instance.

    Not locked: concurrent send_request calls on the same instance may
    interleave updates.
    """

    def __init__(self) -> None:
        self.success_count = 0
        self.failure_count = 0
        self.total_response_time = 0.0
        self.last_used: datetime | None = None

    @property
    def total(self) -> int:
        return self.success_count + self.failure_count

    @property
    def success_rate(self) -> float:
        return self.success_count / self.total if self.total else 0.0

    @property
    def average_response_time(self) -> float:
        # successful requests only
        return self.total_response_time / self.success_count if self.success_count else 0.0

    def touch(self) -> None:
        self.last_used = utcnow()

    def record_success(self, duration_ms: float) -> None:
        self.success_count += 1
        self.total_response_time += duration_ms

    def record_failure(self) -> None:
        self.failure_count += 1

    def reset(self) -> None:
        self.success_count = 0
        self.failure_count = 0
        self.total_response_time = 0.0
        self.last_used = None

    def snapshot(self, *, name: str, version: str, supported_service_types: list[str]) -> ProviderStatistics:
        return ProviderStatistics(
            name=name,
            version=version,
            total_requests=self.total,
            successful_requests=self.success_count,
            failed_requests=self.failure_count,
            success_rate=self.success_rate,
            average_response_time=self.average_response_time,
            supported_service_types=list(supported_service_types),
            last_used=self.last_used,
        )


def adjust_confidence(base: float, context: ProviderContext, success_rate: float) -> float:
    adjusted = base
    if context.system_state.load > 0.8:
        adjusted *= 0.9
    if context.request_context.priority == "critical":
        adjusted *= 1.1
    if success_rate > 0.8:
        adjusted *= 1.1
    elif success_rate < 0.3:
        adjusted *= 0.8
    return clamp_unit(adjusted)


def health_score(stats: ProviderStatistics, *, initialized: bool) -> float:
    response_time_score = max(0.0, 1 - stats.average_response_time / HEALTH_RESPONSE_TIME_CEILING_MS)
    score = 0.4 * stats.success_rate + 0.3 * response_time_score + 0.3 * (1.0 if initialized else 0.0)
    return clamp_unit(score)


def health_status(score: float) -> HealthStatus:
    if score >= 0.8:
        return "healthy"
    if score >= 0.5:
        return "degraded"
    return "unhealthy"


def clamp_unit(value: float) -> float:
    return max(0.0, min(1.0, value))
