"""Webhook delivery repository.

Status transitions are conditional updates (``WHERE status = ...``) so that
concurrent executors racing on one delivery cannot both send it.
"""
from __future__ import annotations

import json
from datetime import datetime
from typing import Any, List, Tuple
from uuid import UUID

from asyncpg import Pool, Record  # type: ignore[import-untyped]

from webhook_service.core.exceptions import NotFoundError
from webhook_service.domain.enums import DeliveryStatus, WebhookEventType
from webhook_service.domain.models import WebhookDelivery, WebhookStats
from webhook_service.repositories.base import BaseRepository


class WebhookDeliveryRepository(BaseRepository):
    def __init__(self, pool: Pool):
        super().__init__(pool)

    @classmethod
    def _to_model(cls, record: Record) -> WebhookDelivery:
        payload = cls._decode_json(dict(record), "payload", "transformed_payload")
        return WebhookDelivery.model_validate(payload)

    async def create(
        self,
        *,
        webhook_id: UUID,
        event_type: WebhookEventType,
        payload: Any,
        transformed_payload: Any,
    ) -> WebhookDelivery:
        record = await self._fetchrow(
            """
            INSERT INTO webhook_deliveries (
                webhook_id, event_type, payload, transformed_payload, status, retry_count
            )
            VALUES ($1, $2, $3::jsonb, $4::jsonb, 'pending', 0)
            RETURNING *
            """,
            webhook_id,
            WebhookEventType(event_type).value,
            json.dumps(payload),
            json.dumps(transformed_payload),
        )
        assert record is not None
        return self._to_model(record)

    async def get(self, delivery_id: UUID) -> WebhookDelivery:
        record = await self._fetchrow("SELECT * FROM webhook_deliveries WHERE id = $1", delivery_id)
        if record is None:
            raise NotFoundError("Webhook delivery not found")
        return self._to_model(record)

    async def get_for_webhook(self, webhook_id: UUID, delivery_id: UUID) -> WebhookDelivery:
        record = await self._fetchrow(
            "SELECT * FROM webhook_deliveries WHERE webhook_id = $1 AND id = $2",
            webhook_id,
            delivery_id,
        )
        if record is None:
            raise NotFoundError("Webhook delivery not found")
        return self._to_model(record)

    async def list_by_webhook(
        self,
        webhook_id: UUID,
        *,
        status: DeliveryStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[WebhookDelivery], int]:
        where = ["webhook_id = $1"]
        values: list[Any] = [webhook_id]
        if status is not None:
            values.append(DeliveryStatus(status).value)
            where.append(f"status = ${len(values)}")
        idx = len(values) + 1
        records = await self._fetch(
            f"""
            SELECT *,
                   COUNT(*) OVER() AS total_count
            FROM webhook_deliveries
            WHERE {" AND ".join(where)}
            ORDER BY created_at DESC
            LIMIT ${idx} OFFSET ${idx + 1}
            """,
            *values,
            limit,
            offset,
        )
        items: List[WebhookDelivery] = []
        total = 0
        for rec in records:
            rec_dict = dict(rec)
            total = int(rec_dict.pop("total_count", 0) or 0)
            items.append(
                WebhookDelivery.model_validate(
                    self._decode_json(rec_dict, "payload", "transformed_payload")
                )
            )
        if not items and offset:
            total = await self._count(where, values)
        return items, total

    async def _count(self, where: list[str], values: list[Any]) -> int:
        record = await self._fetchrow(
            f"SELECT COUNT(*) AS total FROM webhook_deliveries WHERE {' AND '.join(where)}",
            *values,
        )
        return int(record["total"]) if record else 0

    async def claim(self, delivery_id: UUID) -> WebhookDelivery | None:
        """Move a ``pending`` delivery to ``retrying``.

        Returns ``None`` when the delivery is not pending (another executor
        holds it or it is terminal).
        """
        record = await self._fetchrow(
            """
            UPDATE webhook_deliveries
            SET status = 'retrying',
                updated_at = now()
            WHERE id = $1 AND status = 'pending'
            RETURNING *
            """,
            delivery_id,
        )
        return self._to_model(record) if record is not None else None

    async def complete(
        self,
        delivery_id: UUID,
        *,
        status: DeliveryStatus,
        retry_count: int,
        response_status: int | None,
        response_body: str | None,
        error_message: str | None,
        next_retry_at: datetime | None,
        delivered_at: datetime | None,
    ) -> WebhookDelivery | None:
        """Record the outcome of an attempt on a delivery this executor claimed."""
        record = await self._fetchrow(
            """
            UPDATE webhook_deliveries
            SET status = $2,
                retry_count = $3,
                response_status = $4,
                response_body = $5,
                error_message = $6,
                next_retry_at = $7,
                delivered_at = $8,
                updated_at = now()
            WHERE id = $1 AND status = 'retrying'
            RETURNING *
            """,
            delivery_id,
            DeliveryStatus(status).value,
            retry_count,
            response_status,
            response_body,
            error_message,
            next_retry_at,
            delivered_at,
        )
        return self._to_model(record) if record is not None else None

    async def requeue(self, delivery_id: UUID) -> WebhookDelivery | None:
        """Make a ``pending`` or ``failed`` delivery claimable right now (manual retry)."""
        record = await self._fetchrow(
            """
            UPDATE webhook_deliveries
            SET status = 'pending',
                next_retry_at = NULL,
                delivered_at = NULL,
                updated_at = now()
            WHERE id = $1 AND status IN ('pending', 'failed')
            RETURNING *
            """,
            delivery_id,
        )
        return self._to_model(record) if record is not None else None

    async def list_due(self, now: datetime, *, limit: int = 100) -> List[WebhookDelivery]:
        """Pending deliveries whose retry time has come, for active subscriptions only."""
        records = await self._fetch(
            """
            SELECT d.*
            FROM webhook_deliveries d
            JOIN webhooks w ON w.id = d.webhook_id
            WHERE d.status = 'pending'
              AND d.next_retry_at IS NOT NULL
              AND d.next_retry_at <= $1
              AND w.status = 'active'
            ORDER BY d.next_retry_at ASC
            LIMIT $2
            """,
            now,
            limit,
        )
        return [self._to_model(r) for r in records]

    async def stats(self, webhook_id: UUID) -> WebhookStats:
        record = await self._fetchrow(
            """
            SELECT COUNT(*) AS total,
                   COUNT(*) FILTER (WHERE status = 'success') AS success,
                   COUNT(*) FILTER (WHERE status = 'failed') AS failed,
                   COUNT(*) FILTER (WHERE status IN ('pending', 'retrying')) AS pending
            FROM webhook_deliveries
            WHERE webhook_id = $1
            """,
            webhook_id,
        )
        if record is None:
            return WebhookStats()
        return WebhookStats.from_counts(
            total=int(record["total"]),
            success=int(record["success"]),
            failed=int(record["failed"]),
            pending=int(record["pending"]),
        )

    async def reclaim_stuck(self, updated_before: datetime) -> int:
        """Release deliveries left in ``retrying`` by a crashed executor.

        They go back to ``pending`` due immediately; the attempt that was in
        flight is not counted.
        """
        result = await self._execute(
            """
            UPDATE webhook_deliveries
            SET status = 'pending',
                next_retry_at = now(),
                updated_at = now()
            WHERE status = 'retrying'
              AND updated_at < $1
            """,
            updated_before,
        )
        return self._affected(result)

    async def delete_old_succeeded(self, created_before: datetime) -> int:
        """Purge successful deliveries older than *created_before*. Returns count."""
        result = await self._execute(
            "DELETE FROM webhook_deliveries WHERE status = 'success' AND created_at < $1",
            created_before,
        )
        return self._affected(result)
