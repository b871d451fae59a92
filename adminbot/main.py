import asyncio
import os

from fastapi import Depends, FastAPI
from redis.exceptions import RedisError

from adminbot.config import settings
from adminbot.logging_config import get_logger, setup_logging
from adminbot.routers import webhook
from adminbot.routers.webhook import get_batch_service
from adminbot.services.batch_service import BatchService
from adminbot.services.booking.yclients import YClientsBackend
from adminbot.services.chatflow_service import ChatFlowChannel
from adminbot.services.intermediate_context import IntermediateContextStore
from adminbot.services.llm.openai_provider import OpenAIProvider
from adminbot.services.redis_client import close_redis
from adminbot.services.turn_service import TurnController, TurnWorker

setup_logging(settings.log_level, json_output=not settings.debug)

app = FastAPI(
    title="adminbot",
    description="Conversational booking bot",
    version="0.1.0",
)

app.include_router(webhook.router)

worker_logger = get_logger("turn_worker")
_worker: TurnWorker | None = None
_worker_task: asyncio.Task | None = None


def build_worker() -> TurnWorker:
    batcher = BatchService()
    controller = TurnController(
        batcher=batcher,
        contexts=IntermediateContextStore(),
        llm=OpenAIProvider(),
        backend=YClientsBackend(),
        channel=ChatFlowChannel(),
    )
    return TurnWorker(controller, batcher)


@app.on_event("startup")
async def start_turn_worker() -> None:
    global _worker, _worker_task
    if not settings.worker_enabled or os.environ.get("PYTEST_CURRENT_TEST"):
        return
    if _worker_task is None or _worker_task.done():
        _worker = build_worker()
        _worker_task = asyncio.create_task(_worker.run_forever())
        worker_logger.info("Turn worker started")


@app.on_event("shutdown")
async def stop_turn_worker() -> None:
    global _worker, _worker_task
    if _worker_task is not None:
        _worker_task.cancel()
        try:
            await _worker_task
        except asyncio.CancelledError:
            pass
        # Turns already running finish and answer; nothing is cancelled mid-turn.
        await _worker.drain()
        _worker_task = None
        _worker = None
    await close_redis()


@app.get("/health")
async def health(batcher: BatchService = Depends(get_batch_service)):
    try:
        stats = await batcher.get_stats()
    except RedisError as e:
        worker_logger.error(f"Health check: Redis unavailable: {e}")
        return {"status": "degraded", "redis": "unavailable"}
    return {
        "status": "ok",
        "pending_batches": stats["pending_batches"],
        "turns_in_flight": _worker.in_flight if _worker else 0,
    }
