import asyncio
import os
from uuid import UUID

from fastapi import FastAPI

from relay.config import settings
from relay.database import SessionLocal, init_db
from relay.logging_config import get_logger, setup_logging
from relay.routers import slack_events
from relay.services.continuation_service import due_continuation_ids, run_continuation

setup_logging(settings.log_level, settings.log_file)

app = FastAPI(
    title="Thread Relay",
    description="Relays Slack thread questions to Gemini and edits the answer into the thread",
    version="0.1.0",
)

app.include_router(slack_events.router)

logger = get_logger("main")
worker_logger = get_logger("continuation_worker")
_continuation_worker_task: asyncio.Task | None = None
_continuation_tasks: set[asyncio.Task] = set()
_in_flight_continuations: set[UUID] = set()


def _is_continuation_worker_enabled() -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return settings.reply_mode == "deferred" and settings.continuation_worker_enabled


def check_credentials() -> None:
    missing = settings.missing_credentials()
    if not missing:
        return
    if settings.require_credentials:
        raise RuntimeError(f"Missing required credentials: {', '.join(missing)}")
    logger.error(
        "Credentials missing, outbound calls will fail until they are set",
        extra={"context": {"missing": missing}},
    )


async def _dispatch_continuation(continuation_id: UUID) -> None:
    try:
        await asyncio.to_thread(run_continuation, continuation_id, settings=settings)
    except Exception as exc:
        worker_logger.error(
            "Continuation dispatch failed",
            extra={"context": {"continuation_id": str(continuation_id), "error": str(exc)}},
        )
    finally:
        _in_flight_continuations.discard(continuation_id)


async def _continuation_worker_loop() -> None:
    while True:
        try:
            await asyncio.sleep(max(settings.continuation_worker_interval_seconds, 0.1))
            concurrency = max(settings.continuation_concurrency, 1)
            free_slots = concurrency - len(_in_flight_continuations)
            if free_slots <= 0:
                continue

            db = SessionLocal()
            try:
                # In-flight ids stay PENDING until their thread consumes them.
                continuation_ids = due_continuation_ids(
                    db,
                    limit=min(settings.continuation_batch_limit, free_slots) + len(_in_flight_continuations),
                )
            finally:
                db.close()

            fresh_ids = [cid for cid in continuation_ids if cid not in _in_flight_continuations][:free_slots]
            for continuation_id in fresh_ids:
                _in_flight_continuations.add(continuation_id)
                task = asyncio.create_task(_dispatch_continuation(continuation_id))
                _continuation_tasks.add(task)
                task.add_done_callback(_continuation_tasks.discard)
            if fresh_ids:
                worker_logger.info(
                    "Continuations dispatched",
                    extra={"context": {"count": len(fresh_ids), "in_flight": len(_in_flight_continuations)}},
                )
        except asyncio.CancelledError:
            break
        except Exception as exc:
            worker_logger.error(
                "Continuation worker loop failed",
                extra={"context": {"error": str(exc)}},
            )


async def _wait_for_continuations() -> None:
    if _continuation_tasks:
        await asyncio.gather(*list(_continuation_tasks), return_exceptions=True)


@app.on_event("startup")
async def start_continuation_worker() -> None:
    global _continuation_worker_task
    check_credentials()
    init_db()
    if not _is_continuation_worker_enabled():
        return
    if _continuation_worker_task is None or _continuation_worker_task.done():
        _continuation_worker_task = asyncio.create_task(_continuation_worker_loop())
        worker_logger.info("Continuation worker started")


@app.on_event("shutdown")
async def stop_continuation_worker() -> None:
    global _continuation_worker_task
    if _continuation_worker_task is None:
        return
    _continuation_worker_task.cancel()
    try:
        await _continuation_worker_task
    except asyncio.CancelledError:
        pass
    _continuation_worker_task = None
    await _wait_for_continuations()


@app.get("/health")
async def health():
    return {"status": "ok"}
