"""Webhook subscription repository."""
from __future__ import annotations

import json
from datetime import datetime
from typing import Any, List, Tuple
from uuid import UUID

from asyncpg import Pool, Record  # type: ignore[import-untyped]

from webhook_service.core.exceptions import NotFoundError
from webhook_service.domain.enums import WebhookEventType, WebhookStatus
from webhook_service.domain.models import WebhookSubscription
from webhook_service.repositories.base import BaseRepository

# Columns a configuration update may touch, with the SQL cast they need.
_UPDATABLE_COLUMNS: dict[str, str] = {
    "name": "",
    "description": "",
    "url": "",
    "events": "::text[]",
    "headers": "::jsonb",
    "transform_enabled": "",
    "transform_script": "",
    "retry_enabled": "",
    "max_retries": "",
    "retry_delay": "",
    "timeout_seconds": "",
}


def _event_values(events: list[WebhookEventType]) -> list[str]:
    return [WebhookEventType(e).value for e in events]


class WebhookSubscriptionRepository(BaseRepository):
    def __init__(self, pool: Pool):
        super().__init__(pool)

    @classmethod
    def _to_model(cls, record: Record) -> WebhookSubscription:
        return WebhookSubscription.model_validate(cls._decode_json(dict(record), "headers"))

    async def create(
        self,
        *,
        workspace_id: UUID,
        name: str,
        url: str,
        secret_key: str,
        events: list[WebhookEventType],
        description: str | None = None,
        headers: dict[str, str] | None = None,
        transform_enabled: bool = False,
        transform_script: str | None = None,
        retry_enabled: bool = True,
        max_retries: int = 3,
        retry_delay: int = 5,
        timeout_seconds: float = 30.0,
        created_by: UUID | None = None,
    ) -> WebhookSubscription:
        record = await self._fetchrow(
            """
            INSERT INTO webhooks (
                workspace_id, name, description, url, status, secret_key, events, headers,
                transform_enabled, transform_script, retry_enabled, max_retries, retry_delay,
                timeout_seconds, created_by
            )
            VALUES ($1, $2, $3, $4, 'active', $5, $6::text[], $7::jsonb,
                    $8, $9, $10, $11, $12, $13, $14)
            RETURNING *
            """,
            workspace_id,
            name,
            description,
            url,
            secret_key,
            _event_values(events),
            json.dumps(headers or {}),
            transform_enabled,
            transform_script,
            retry_enabled,
            max_retries,
            retry_delay,
            timeout_seconds,
            created_by,
        )
        assert record is not None
        return self._to_model(record)

    async def get(self, subscription_id: UUID) -> WebhookSubscription:
        record = await self._fetchrow("SELECT * FROM webhooks WHERE id = $1", subscription_id)
        if record is None:
            raise NotFoundError("Webhook not found")
        return self._to_model(record)

    async def get_for_workspace(self, workspace_id: UUID, subscription_id: UUID) -> WebhookSubscription:
        record = await self._fetchrow(
            "SELECT * FROM webhooks WHERE workspace_id = $1 AND id = $2",
            workspace_id,
            subscription_id,
        )
        if record is None:
            raise NotFoundError("Webhook not found")
        return self._to_model(record)

    async def get_many(self, subscription_ids: list[UUID]) -> dict[UUID, WebhookSubscription]:
        if not subscription_ids:
            return {}
        records = await self._fetch(
            "SELECT * FROM webhooks WHERE id = ANY($1::uuid[])",
            subscription_ids,
        )
        subs = [self._to_model(r) for r in records]
        return {sub.id: sub for sub in subs}

    async def list_by_workspace(
        self, workspace_id: UUID, *, limit: int = 50, offset: int = 0
    ) -> Tuple[List[WebhookSubscription], int]:
        records = await self._fetch(
            """
            SELECT *,
                   COUNT(*) OVER() AS total_count
            FROM webhooks
            WHERE workspace_id = $1
            ORDER BY created_at DESC
            LIMIT $2 OFFSET $3
            """,
            workspace_id,
            limit,
            offset,
        )
        items: List[WebhookSubscription] = []
        total: int | None = None
        for rec in records:
            rec_dict = dict(rec)
            total_value = rec_dict.pop("total_count", None)
            if total_value is not None:
                total = int(total_value)
            items.append(WebhookSubscription.model_validate(self._decode_json(rec_dict, "headers")))
        if total is None:
            total = await self._count_by_workspace(workspace_id)
        return items, total

    async def _count_by_workspace(self, workspace_id: UUID) -> int:
        record = await self._fetchrow(
            "SELECT COUNT(*) AS total FROM webhooks WHERE workspace_id = $1",
            workspace_id,
        )
        return int(record["total"]) if record else 0

    async def list_active_matching(
        self, workspace_id: UUID, event_type: WebhookEventType
    ) -> List[WebhookSubscription]:
        records = await self._fetch(
            """
            SELECT *
            FROM webhooks
            WHERE workspace_id = $1
              AND status = 'active'
              AND $2 = ANY(events)
            ORDER BY created_at ASC
            """,
            workspace_id,
            WebhookEventType(event_type).value,
        )
        return [self._to_model(r) for r in records]

    async def update(
        self, workspace_id: UUID, subscription_id: UUID, changes: dict[str, Any]
    ) -> WebhookSubscription:
        unknown = set(changes) - set(_UPDATABLE_COLUMNS)
        if unknown:
            raise ValueError(f"Cannot update columns: {sorted(unknown)}")
        if not changes:
            return await self.get_for_workspace(workspace_id, subscription_id)

        assignments: list[str] = []
        values: list[Any] = [workspace_id, subscription_id]
        for column, value in changes.items():
            if column == "events":
                value = _event_values(value)
            elif column == "headers":
                value = json.dumps(value or {})
            values.append(value)
            assignments.append(f"{column} = ${len(values)}{_UPDATABLE_COLUMNS[column]}")

        record = await self._fetchrow(
            f"""
            UPDATE webhooks
            SET {", ".join(assignments)},
                updated_at = now()
            WHERE workspace_id = $1 AND id = $2
            RETURNING *
            """,
            *values,
        )
        if record is None:
            raise NotFoundError("Webhook not found")
        return self._to_model(record)

    async def set_status(
        self, workspace_id: UUID, subscription_id: UUID, status: WebhookStatus
    ) -> WebhookSubscription:
        record = await self._fetchrow(
            """
            UPDATE webhooks
            SET status = $3, updated_at = now()
            WHERE workspace_id = $1 AND id = $2
            RETURNING *
            """,
            workspace_id,
            subscription_id,
            WebhookStatus(status).value,
        )
        if record is None:
            raise NotFoundError("Webhook not found")
        return self._to_model(record)

    async def set_secret(
        self, workspace_id: UUID, subscription_id: UUID, secret_key: str
    ) -> WebhookSubscription:
        record = await self._fetchrow(
            """
            UPDATE webhooks
            SET secret_key = $3, updated_at = now()
            WHERE workspace_id = $1 AND id = $2
            RETURNING *
            """,
            workspace_id,
            subscription_id,
            secret_key,
        )
        if record is None:
            raise NotFoundError("Webhook not found")
        return self._to_model(record)

    async def mark_failed(self, subscription_id: UUID) -> None:
        """Flag systemic trouble after a delivery exhausted its retries."""
        await self._execute(
            "UPDATE webhooks SET status = 'failed', updated_at = now() WHERE id = $1",
            subscription_id,
        )

    async def touch_last_triggered(self, subscription_id: UUID, triggered_at: datetime) -> None:
        # last write wins; concurrent successes all carry a recent timestamp
        await self._execute(
            "UPDATE webhooks SET last_triggered_at = $2 WHERE id = $1",
            subscription_id,
            triggered_at,
        )

    async def delete(self, workspace_id: UUID, subscription_id: UUID) -> None:
        """Delete a subscription; its deliveries go with it (ON DELETE CASCADE)."""
        record = await self._fetchrow(
            """
            DELETE FROM webhooks
            WHERE workspace_id = $1 AND id = $2
            RETURNING id
            """,
            workspace_id,
            subscription_id,
        )
        if record is None:
            raise NotFoundError("Webhook not found")
