"""Request DTOs for subscription management and event triggering."""
from __future__ import annotations

import json
from typing import Any

from pydantic import AnyHttpUrl, BaseModel, ConfigDict, Field, field_validator, model_validator

from webhook_service.domain.enums import WebhookEventType

MAX_RETRIES_LIMIT = 10
MAX_TIMEOUT_SECONDS = 120.0

_NON_NULLABLE = ("name", "url", "events", "retry_enabled", "max_retries", "retry_delay", "timeout_seconds")


def _parse_headers(value: Any) -> Any:
    """Accept headers as an object or as a JSON-encoded object string."""
    if value is None:
        return {}
    if isinstance(value, str):
        if not value.strip():
            return {}
        try:
            value = json.loads(value)
        except json.JSONDecodeError as exc:
            raise ValueError(f"headers must be a JSON object: {exc.msg}") from exc
    if not isinstance(value, dict):
        raise ValueError("headers must be a JSON object")
    for key, item in value.items():
        if not key or any(ch in key for ch in " :\r\n\t"):
            raise ValueError(f"invalid header name: {key!r}")
        if not isinstance(item, str):
            raise ValueError(f"header {key!r} must have a string value")
        if "\r" in item or "\n" in item:
            raise ValueError(f"header {key!r} contains a line break")
    return value


def _parse_events(value: list[WebhookEventType]) -> list[WebhookEventType]:
    if WebhookEventType.WEBHOOK_TEST in value:
        raise ValueError(f"{WebhookEventType.WEBHOOK_TEST.value} is reserved for test deliveries")
    deduped = list(dict.fromkeys(value))
    if not deduped:
        raise ValueError("events must be a non-empty list")
    return deduped


class WebhookCreateDTO(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1, max_length=200)
    url: AnyHttpUrl
    description: str | None = None
    events: list[WebhookEventType] = Field(min_length=1)
    headers: dict[str, str] = Field(default_factory=dict)
    transform_enabled: bool = False
    transform_script: str | None = None
    retry_enabled: bool = True
    max_retries: int = Field(default=3, ge=0, le=MAX_RETRIES_LIMIT)
    retry_delay: int = Field(default=5, ge=1)
    timeout_seconds: float | None = Field(default=None, gt=0, le=MAX_TIMEOUT_SECONDS)

    @field_validator("headers", mode="before")
    @classmethod
    def parse_headers(cls, value: Any) -> Any:
        return _parse_headers(value)

    @field_validator("events")
    @classmethod
    def check_events(cls, value: list[WebhookEventType]) -> list[WebhookEventType]:
        return _parse_events(value)


class WebhookUpdateDTO(BaseModel):
    """Partial update; only fields present in the request are applied."""

    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(default=None, min_length=1, max_length=200)
    url: AnyHttpUrl | None = None
    description: str | None = None
    events: list[WebhookEventType] | None = Field(default=None, min_length=1)
    headers: dict[str, str] | None = None
    transform_enabled: bool | None = None
    transform_script: str | None = None
    retry_enabled: bool | None = None
    max_retries: int | None = Field(default=None, ge=0, le=MAX_RETRIES_LIMIT)
    retry_delay: int | None = Field(default=None, ge=1)
    timeout_seconds: float | None = Field(default=None, gt=0, le=MAX_TIMEOUT_SECONDS)

    @field_validator("headers", mode="before")
    @classmethod
    def parse_headers(cls, value: Any) -> Any:
        return _parse_headers(value)

    @field_validator("events")
    @classmethod
    def check_events(cls, value: list[WebhookEventType] | None) -> list[WebhookEventType] | None:
        return None if value is None else _parse_events(value)

    @model_validator(mode="after")
    def reject_nulls(self) -> "WebhookUpdateDTO":
        for key in _NON_NULLABLE:
            if key in self.model_fields_set and getattr(self, key) is None:
                raise ValueError(f"{key} cannot be null")
        return self

    def changes(self) -> dict[str, Any]:
        """Fields explicitly sent by the client, in storage form."""
        data = self.model_dump(exclude_unset=True)
        if data.get("url") is not None:
            data["url"] = str(data["url"])
        if "headers" in data and data["headers"] is None:
            data["headers"] = {}
        return data


class TriggerEventDTO(BaseModel):
    event_type: WebhookEventType
    payload: dict[str, Any]

    @field_validator("event_type")
    @classmethod
    def not_reserved(cls, value: WebhookEventType) -> WebhookEventType:
        if value is WebhookEventType.WEBHOOK_TEST:
            raise ValueError("webhook.test can only be sent through the test endpoint")
        return value
