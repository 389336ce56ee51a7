from __future__ import annotations

from typing import Callable

from webhook_service.services.dependencies import WebhookComponents

# Components are resolved lazily: they only exist once the app has started.
ComponentsProvider = Callable[[], WebhookComponents]
