import asyncio
import json
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pymongo.errors import PyMongoError

from config import settings

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(levelname)s:%(name)s:%(message)s"
)

import database
from errors import RandomChatError
from notifier import QueueConnection
from schemas import (
    MessagePage,
    ReportSessionRequest,
    SendMessageRequest,
    SessionActionRequest,
    SessionSummary,
    SessionView,
    StartSearchRequest,
)
from service import RandomChatService, build_service

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.service = build_service()
    logger.info(f"{settings.APP_NAME} {settings.APP_VERSION} started ({settings.SESSION_STORE} store)")
    yield


app = FastAPI(title=settings.APP_NAME, version=settings.APP_VERSION, debug=settings.DEBUG, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RandomChatError)
async def random_chat_error_handler(request: Request, exc: RandomChatError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(PyMongoError)
async def database_error_handler(request: Request, exc: PyMongoError):
    logger.exception(f"Database error on {request.method} {request.url.path}")
    return JSONResponse(status_code=500, content={"detail": "Server error"})


def get_service(request: Request) -> RandomChatService:
    return request.app.state.service


def get_user_id(x_user_id: Optional[str] = Header(None)) -> str:
    # Identity is established upstream; we only receive the verified id
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return x_user_id


@app.get("/")
def read_root():
    return {"message": "Random Chat API is running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "Running",
        "database": "Not Available",
        "database_url": None,
        "database_name": None,
        "session_store": settings.SESSION_STORE,
        "connection_status": "Not Connected",
        "collections": []
    }

    try:
        if database.db is not None:
            response["database"] = "Available"
            response["database_url"] = "Set" if settings.DATABASE_URL else "Not Set"
            response["database_name"] = database.db.name
            response["connection_status"] = "Connected"
            try:
                collections = database.db.list_collection_names()
                response["collections"] = collections[:10]
                response["database"] = "Connected"
            except PyMongoError as e:
                response["database"] = f"Connected but error: {str(e)[:50]}"
        else:
            response["database"] = "Not initialized"
    except Exception as e:
        response["database"] = f"Error: {str(e)[:50]}"

    return response


# Random chat commands

@app.post("/api/random-chat/search", response_model=SessionSummary)
async def start_search(payload: StartSearchRequest, user_id: str = Depends(get_user_id), service: RandomChatService = Depends(get_service)):
    return await service.start_search(user_id, payload.topic, payload.is_anonymous)


@app.post("/api/random-chat/message", response_model=dict)
async def send_message(payload: SendMessageRequest, user_id: str = Depends(get_user_id), service: RandomChatService = Depends(get_service)):
    message = await service.send_message(payload.session_id, user_id, payload.content)
    return {"message": "Message sent successfully", "data": message.model_dump(mode="json")}


@app.post("/api/random-chat/end", response_model=dict)
async def end_chat(payload: SessionActionRequest, user_id: str = Depends(get_user_id), service: RandomChatService = Depends(get_service)):
    await service.end_chat(payload.session_id, user_id)
    return {"message": "Chat ended successfully"}


@app.post("/api/random-chat/skip", response_model=SessionSummary)
async def skip_partner(payload: SessionActionRequest, user_id: str = Depends(get_user_id), service: RandomChatService = Depends(get_service)):
    return await service.skip_partner(payload.session_id, user_id)


@app.post("/api/random-chat/report", response_model=dict)
async def report_session(payload: ReportSessionRequest, user_id: str = Depends(get_user_id), service: RandomChatService = Depends(get_service)):
    report_id = service.report_session(payload.session_id, user_id, payload.reason, payload.description)
    return {"message": "Report submitted successfully", "report_id": report_id}


# Random chat queries

@app.get("/api/random-chat/session/{session_id}", response_model=SessionView)
async def get_session(session_id: str, user_id: str = Depends(get_user_id), service: RandomChatService = Depends(get_service)):
    return service.get_session(session_id, user_id)


@app.get("/api/random-chat/session/{session_id}/messages", response_model=MessagePage)
async def get_messages(
    session_id: str,
    offset: int = 0,
    limit: Optional[int] = None,
    user_id: str = Depends(get_user_id),
    service: RandomChatService = Depends(get_service)
):
    return service.get_messages(session_id, user_id, offset=offset, limit=limit)


@app.get("/api/random-chat/active", response_model=Optional[SessionView])
async def get_active_session(user_id: str = Depends(get_user_id), service: RandomChatService = Depends(get_service)):
    return service.get_active_session(user_id)


@app.get("/api/random-chat/history", response_model=List[SessionSummary])
async def get_history(limit: int = 20, user_id: str = Depends(get_user_id), service: RandomChatService = Depends(get_service)):
    return service.get_history(user_id, limit)


# Realtime channels (SSE + WebSocket)

async def sse_event_generator(request: Request, service: RandomChatService, user_id: str):
    subscriber = QueueConnection()
    service.notifier.connect(user_id, subscriber)
    try:
        while True:
            if await request.is_disconnected():
                break
            if subscriber.finished:
                logger.info(f"SSE subscriber of {user_id} fell behind, closing stream")
                break
            try:
                event = await asyncio.wait_for(subscriber.queue.get(), timeout=15)
                yield f"data: {event}\n\n"
            except asyncio.TimeoutError:
                yield ": keep-alive\n\n"
    finally:
        service.notifier.disconnect(user_id, subscriber)


@app.get("/api/stream")
async def stream(request: Request, user_id: str = Query(...), service: RandomChatService = Depends(get_service)):
    return StreamingResponse(sse_event_generator(request, service, user_id), media_type="text/event-stream")


TYPING_EVENTS = {
    "random_chat_typing_start": True,
    "random_chat_typing_stop": False,
}


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, user_id: str = Query(...)):
    service: RandomChatService = websocket.app.state.service
    await websocket.accept()
    service.notifier.connect(user_id, websocket)
    try:
        await websocket.send_json({
            "type": "connection_established",
            "data": {"user_id": user_id},
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })
        while True:
            try:
                data = json.loads(await websocket.receive_text())
            except ValueError:
                continue
            kind = data.get("type") if isinstance(data, dict) else None
            if kind in TYPING_EVENTS and data.get("session_id"):
                await service.relay.relay_typing(data["session_id"], user_id, TYPING_EVENTS[kind])
    except WebSocketDisconnect:
        pass
    finally:
        service.notifier.disconnect(user_id, websocket)


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", settings.API_PORT))
    uvicorn.run(app, host=settings.API_HOST, port=port)
