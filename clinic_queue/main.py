import asyncio
import json
import logging
import sys

from fastapi import Depends, FastAPI, Request, WebSocket, WebSocketDisconnect, status
from fastapi.responses import JSONResponse

from .broadcast import QUEUE_UPDATE, QueueBroadcaster, serialize_queue
from .config import get_settings
from .database import engine, init_db
from .errors import QueueError
from .models import Entry
from .notifications import build_notifier
from .ordering import summarize_queue
from .schemas import (
    CountRead,
    DisplayRead,
    EntryCreate,
    EntryRead,
    EntryUpdate,
    EntryView,
    MessageRead,
    RegistrationRead,
    ServingRead,
    StatusUpdate,
    TrackedEntryRead,
)
from .service import QueueService


settings = get_settings()

root_logger = logging.getLogger()
root_logger.setLevel(getattr(logging, settings.log_level))
root_logger.handlers.clear()

if settings.debug:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
else:

    class JSONFormatter(logging.Formatter):
        def format(self, record: logging.LogRecord) -> str:
            return json.dumps({
                "ts": self.formatTime(record, self.datefmt),
                "level": record.levelname,
                "logger": record.name,
                "msg": record.getMessage(),
                "module": record.module,
                "line": record.lineno,
            })

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())

root_logger.addHandler(handler)
logger = logging.getLogger(__name__)


app = FastAPI(
    title="Clinic Queue Service",
    openapi_url="/queue/openapi.json",
    docs_url="/queue/docs",
    redoc_url="/queue/redoc",
)

queue_service = QueueService(engine, QueueBroadcaster(), build_notifier(settings), settings)


def get_queue_service() -> QueueService:
    return queue_service


def tracked(service: QueueService, entry: Entry) -> TrackedEntryRead:
    return TrackedEntryRead(
        **EntryRead.model_validate(entry).model_dump(),
        tracking_link=service.tracking_link(entry.sequence_number),
    )


@app.exception_handler(QueueError)
async def queue_error_handler(request: Request, exc: QueueError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.on_event("startup")
def on_startup() -> None:
    init_db()
    logger.info("Clinic queue service started")


@app.get("/queue/health")
def healthcheck() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/queue", response_model=list[EntryView])
def get_queue(service: QueueService = Depends(get_queue_service)) -> list[EntryView]:
    return service.current_queue()


@app.post("/queue/entries", response_model=RegistrationRead, status_code=status.HTTP_201_CREATED)
async def create_entry(
    payload: EntryCreate, service: QueueService = Depends(get_queue_service)
) -> RegistrationRead:
    registration = await service.register(
        name=payload.name,
        phone=payload.phone,
        kind=payload.kind,
        email=payload.email,
        category=payload.category,
    )
    return RegistrationRead(
        **EntryRead.model_validate(registration.entry).model_dump(),
        tracking_link=registration.tracking_link,
        notification_sent=registration.notification_sent,
    )


@app.get("/queue/entries/{entry_id}", response_model=TrackedEntryRead)
def read_entry(entry_id: int, service: QueueService = Depends(get_queue_service)) -> TrackedEntryRead:
    return tracked(service, service.get_entry(entry_id))


@app.patch("/queue/entries/{entry_id}", response_model=TrackedEntryRead)
async def update_entry(
    entry_id: int, payload: EntryUpdate, service: QueueService = Depends(get_queue_service)
) -> TrackedEntryRead:
    updates = payload.model_dump(exclude_unset=True)
    entry = await service.update_details(entry_id, **updates)
    return tracked(service, entry)


@app.put("/queue/entries/{entry_id}/status", response_model=EntryRead)
async def update_entry_status(
    entry_id: int, payload: StatusUpdate, service: QueueService = Depends(get_queue_service)
) -> EntryRead:
    entry = await service.update_status(entry_id, payload.status)
    return EntryRead.model_validate(entry)


@app.delete("/queue/entries/{entry_id}", response_model=MessageRead)
async def delete_entry(
    entry_id: int, service: QueueService = Depends(get_queue_service)
) -> MessageRead:
    await service.delete_entry(entry_id)
    return MessageRead(message="Entry removed successfully")


@app.post("/queue/reset", response_model=MessageRead)
async def reset_queue(service: QueueService = Depends(get_queue_service)) -> MessageRead:
    await service.reset()
    return MessageRead(message="Queue reset successfully")


@app.post("/queue/next", response_model=ServingRead)
async def call_next_entry(service: QueueService = Depends(get_queue_service)) -> ServingRead:
    result = await service.advance()
    return ServingRead(
        current=EntryRead.model_validate(result.current) if result.current else None,
        completed=EntryRead.model_validate(result.completed) if result.completed else None,
        queue=result.queue,
        detail="Next entry called" if result.current else "No entries waiting",
    )


@app.get("/queue/display", response_model=DisplayRead)
def display_payload(service: QueueService = Depends(get_queue_service)) -> DisplayRead:
    views = service.current_queue()
    summary = summarize_queue(views)
    return DisplayRead(
        **summary.model_dump(),
        done_today=service.done_today(),
        queue=views,
    )


@app.get("/queue/stats/done-today", response_model=CountRead)
def done_today(service: QueueService = Depends(get_queue_service)) -> CountRead:
    return CountRead(count=service.done_today())


async def send_queue(websocket: WebSocket, service: QueueService) -> None:
    broadcaster = service.broadcaster
    try:
        views = await asyncio.to_thread(service.current_queue)
    except QueueError as exc:
        logger.error("Failed to load queue for observer: %s", exc.message)
        await broadcaster.send_personal(websocket, "ERROR", {
            "message": "Failed to load queue",
            "error": exc.message,
        })
        return
    await broadcaster.send_personal(websocket, QUEUE_UPDATE, serialize_queue(views))


async def handle_socket_event(websocket: WebSocket, service: QueueService, event: object) -> None:
    broadcaster = service.broadcaster

    if event == "GET_QUEUE":
        await send_queue(websocket, service)

    elif event == "START_CONSULTATION":
        try:
            result = await service.advance()
        except QueueError as exc:
            logger.error("START_CONSULTATION failed: %s", exc.message)
            await broadcaster.send_personal(websocket, "ERROR", {
                "message": "Failed to start consultation",
                "error": exc.message,
            })
            return
        await broadcaster.send_personal(websocket, "CONSULTATION_STARTED", {
            "success": True,
            "message": "Consultation started successfully",
            "queue": serialize_queue(result.queue),
        })

    elif event == "GET_DAILY_DONE_COUNT":
        try:
            count = await asyncio.to_thread(service.done_today)
        except QueueError as exc:
            logger.error("Error fetching daily done count: %s", exc.message)
            count = 0
        await broadcaster.send_personal(websocket, "DAILY_DONE_COUNT", {"count": count})

    else:
        await broadcaster.send_personal(websocket, "ERROR", {
            "message": "Unknown event",
            "error": str(event),
        })


@app.websocket("/queue/ws")
async def queue_socket(websocket: WebSocket, service: QueueService = Depends(get_queue_service)) -> None:
    broadcaster = service.broadcaster
    await broadcaster.connect(websocket)
    try:
        await send_queue(websocket, service)
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except ValueError:
                message = {"event": raw.strip()}
            event = message.get("event") if isinstance(message, dict) else None
            await handle_socket_event(websocket, service, event)
    except WebSocketDisconnect:
        pass
    finally:
        broadcaster.disconnect(websocket)


def run() -> None:
    import uvicorn

    uvicorn.run("clinic_queue.main:app", host="0.0.0.0", port=5000)
