import asyncio
import json
import logging

from quart import Blueprint, Response

from ..common.redis_client import get_redis
from ..common.config import settings

_logger = logging.getLogger(__name__)

bp = Blueprint("realtime", __name__)


async def _close_pubsub(pubsub) -> None:
    if pubsub is None:
        return
    try:
        await pubsub.unsubscribe(settings.REDIS_EVENTS_CHANNEL)
        await pubsub.close()
    except Exception as e:
        _logger.debug("Pubsub close failed | err=%s", e)


@bp.get("/events")
async def sse_events():
    """Generation status transitions as Server-Sent Events."""

    async def gen():
        pubsub = None
        backoff = 1.0
        yield "retry: 3000\n\n"
        try:
            while True:
                try:
                    if pubsub is None:
                        r = await get_redis()
                        pubsub = r.pubsub(ignore_subscribe_messages=True)
                        await pubsub.subscribe(settings.REDIS_EVENTS_CHANNEL)
                    message = await pubsub.get_message(timeout=5.0)
                    if message:
                        data = message.get("data")
                        try:
                            payload = json.loads(data) if isinstance(data, str) else data
                        except ValueError:
                            payload = {"raw": data}
                        event = payload.get("event", "generation") if isinstance(payload, dict) else "generation"
                        yield f"event: {event}\n"
                        yield f"data: {json.dumps(payload)}\n\n"
                    else:
                        # Keep-alive to prevent closes by proxies
                        yield ": keep-alive\n\n"
                    backoff = 1.0
                except asyncio.CancelledError:
                    break
                except Exception:
                    yield f": redis-error, retrying in {int(backoff)}s\n\n"
                    await asyncio.sleep(backoff)
                    backoff = min(backoff * 2, 15.0)
                    await _close_pubsub(pubsub)
                    pubsub = None
        finally:
            await _close_pubsub(pubsub)

    headers = {
        "Cache-Control": "no-cache",
        "X-Accel-Buffering": "no",
        "Connection": "keep-alive",
    }
    return Response(gen(), mimetype="text/event-stream", headers=headers)
