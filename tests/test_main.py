import asyncio
import signal

from bookgen import main as entrypoint
from bookgen.app import create_app

from conftest import wait_for


async def test_sigterm_sets_shutdown_event():
    event = asyncio.Event()
    entrypoint.install_signal_handlers(event)
    try:
        signal.raise_signal(signal.SIGTERM)
        await asyncio.wait_for(event.wait(), timeout=2)
    finally:
        entrypoint.remove_signal_handlers()


async def test_serve_stops_monitor_and_exits_zero_on_sigterm(db, store, provider, monkeypatch):
    async def fake_hypercorn(app, config, shutdown_trigger):
        async with app.test_app():
            await shutdown_trigger()

    monkeypatch.setattr(entrypoint, "hypercorn_serve", fake_hypercorn)
    app = create_app(provider=provider, store=store, auto_start_monitor=True)
    monitor = app.extensions["order_monitor"]

    server = asyncio.create_task(entrypoint.serve(app))
    await wait_for(lambda: monitor.running)
    signal.raise_signal(signal.SIGTERM)

    assert await asyncio.wait_for(server, timeout=10) == 0
    assert not monitor.running
