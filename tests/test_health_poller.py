import time

import pytest
from aiohttp import web

from engine.pipeline.health import HealthPoller


def counting_app(statuses):
    """Answers with ``statuses`` in order, then keeps repeating the last one."""
    hits = []

    async def handler(request):
        hits.append(time.monotonic())
        status = statuses[min(len(hits) - 1, len(statuses) - 1)]
        return web.Response(status=status, text="ok" if status < 300 else "down")

    app = web.Application()
    app.router.add_get("/health", handler)
    return app, hits


async def test_healthy_after_retries(serve):
    app, hits = counting_app([503, 503, 200])
    server = await serve(app)
    poller = HealthPoller(request_timeout=2)

    assert await poller.poll(str(server.make_url("/health")), max_attempts=5, interval=0.05)
    assert len(hits) == 3
    assert poller.last_attempts == 3


async def test_exactly_n_attempts_with_interval(serve):
    app, hits = counting_app([500])
    server = await serve(app)
    poller = HealthPoller(request_timeout=2)

    started = time.monotonic()
    healthy = await poller.poll(str(server.make_url("/health")), max_attempts=3, interval=0.2)
    elapsed = time.monotonic() - started

    assert not healthy
    assert len(hits) == 3
    assert elapsed >= 0.4
    # no sleep after the last attempt
    assert elapsed < 0.4 + 1.0


async def test_single_attempt_does_not_sleep(serve):
    app, hits = counting_app([404])
    server = await serve(app)

    started = time.monotonic()
    assert not await HealthPoller().poll(str(server.make_url("/health")), max_attempts=1, interval=5)
    assert time.monotonic() - started < 2
    assert len(hits) == 1


async def test_connection_refused_counts_as_failed_attempt(serve):
    app, _ = counting_app([200])
    server = await serve(app)
    url = str(server.make_url("/health"))
    await server.close()

    poller = HealthPoller(request_timeout=1)
    assert not await poller.poll(url, max_attempts=2, interval=0.05)
    assert poller.last_attempts == 2


async def test_invalid_attempts():
    with pytest.raises(ValueError):
        await HealthPoller().poll("http://127.0.0.1/health", max_attempts=0, interval=1)
