from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from unittest.mock import AsyncMock, MagicMock

import pytest
from aiohttp import ClientSession, web

from webhook_service.main import create_app
from webhook_service.services.dependencies import WebhookComponents
from webhook_service.services.dispatcher import WebhookDispatcher
from webhook_service.services.executor import DeliveryExecutor
from webhook_service.services.retry import RetryScheduler
from webhook_service.services.subscriptions import WebhookSubscriptionService
from webhook_service.settings import Settings

from tests.fakes import FakeClock, FakeDeliveryRepository, FakeSubscriptionRepository


@dataclass
class ReceivedRequest:
    path: str
    headers: dict[str, str]
    body: bytes


@dataclass
class Receiver:
    """Local subscriber endpoint recording every request it gets.

    ``/hook`` answers with ``status``/``body``; ``/slow`` sleeps ``delay``
    seconds first; ``/big`` returns a 50 000 character body; ``/binary``
    returns bytes containing NUL; ``/endless`` streams until the client hangs up.
    """

    base_url: str = ""
    status: int = 200
    body: str = "ok"
    delay: float = 2.0
    received: list[ReceivedRequest] = field(default_factory=list)

    def url(self, path: str = "/hook") -> str:
        return f"{self.base_url}{path}"

    async def handle(self, request: web.Request) -> web.Response:
        raw = await request.read()
        self.received.append(ReceivedRequest(request.path, dict(request.headers), raw))
        if request.path == "/slow":
            await asyncio.sleep(self.delay)
        if request.path == "/big":
            return web.Response(status=200, text="x" * 50_000)
        return web.Response(status=self.status, text=self.body)

    async def handle_binary(self, request: web.Request) -> web.Response:
        raw = await request.read()
        self.received.append(ReceivedRequest(request.path, dict(request.headers), raw))
        gif = b"GIF89a\x01\x00\x01\x00\x00\xff\x00"
        return web.Response(status=200, body=gif, content_type="image/gif")

    async def handle_endless(self, request: web.Request) -> web.StreamResponse:
        raw = await request.read()
        self.received.append(ReceivedRequest(request.path, dict(request.headers), raw))
        resp = web.StreamResponse(status=200)
        resp.content_type = "text/plain"
        await resp.prepare(request)
        chunk = b"y" * 65_536
        try:
            while True:
                await resp.write(chunk)
                await asyncio.sleep(0.01)
        except ConnectionResetError:
            pass
        return resp


@pytest.fixture
async def receiver():
    state = Receiver()
    app = web.Application()
    for path in ("/hook", "/slow", "/big"):
        app.router.add_post(path, state.handle)
    app.router.add_post("/binary", state.handle_binary)
    app.router.add_post("/endless", state.handle_endless)
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, "127.0.0.1", 0)
    await site.start()
    port = site._server.sockets[0].getsockname()[1]  # type: ignore[union-attr]
    state.base_url = f"http://127.0.0.1:{port}"
    try:
        yield state
    finally:
        await runner.cleanup()


@pytest.fixture
async def unreachable_url():
    """URL of a port nothing listens on."""
    server = await asyncio.start_server(lambda r, w: None, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    server.close()
    await server.wait_closed()
    return f"http://127.0.0.1:{port}/hook"


@pytest.fixture
async def http_session():
    session = ClientSession()
    try:
        yield session
    finally:
        await session.close()


@pytest.fixture
def subscriptions():
    return FakeSubscriptionRepository()


@pytest.fixture
def deliveries(subscriptions):
    return FakeDeliveryRepository(subscriptions)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def executor(http_session, subscriptions, deliveries, clock):
    return DeliveryExecutor(
        http_session,
        subscriptions,
        deliveries,
        RetryScheduler(),
        response_body_limit=10_000,
        user_agent="crm-webhooks/test",
        clock=clock,
    )


@pytest.fixture
def dispatcher(subscriptions, deliveries, executor):
    dispatcher = WebhookDispatcher(
        subscriptions, deliveries, executor, transform_timeout_seconds=2.0, transform_workers=2
    )
    try:
        yield dispatcher
    finally:
        dispatcher.close()


@pytest.fixture
def workspace_id():
    return uuid.uuid4()


@pytest.fixture
def mock_db_pool():
    """asyncpg pool mock: ``async with pool.acquire() as conn`` yields ``conn``."""
    pool = MagicMock()
    conn = AsyncMock()
    pool.acquire.return_value.__aenter__.return_value = conn
    pool.acquire.return_value.__aexit__.return_value = None
    return pool, conn


@pytest.fixture
def components(subscriptions, deliveries, dispatcher):
    return WebhookComponents(
        subscriptions=subscriptions,
        deliveries=deliveries,
        subscription_service=WebhookSubscriptionService(subscriptions, deliveries),
        dispatcher=dispatcher,
    )


@pytest.fixture
async def service_client(aiohttp_client, components):
    """API client over in-memory repositories and a real outbound HTTP session."""
    app = create_app(Settings(), components=components)
    return await aiohttp_client(app)
