"""
FastAPI application, the moodrelay entry point.

Transports for the same relay core:
  - POST /api/chat                 buffered JSON reply
  - POST /api/chat + GET .../stream   Server-Sent Events
  - POST /api/chat + GET .../poll     polling
  - WS   /ws                       WebSocket push
plus conversation listing, mood analytics, health, and the browser client.
"""

import json
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from uuid import uuid4

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, StreamingResponse
from fastapi.staticfiles import StaticFiles

from moodrelay import __version__
from moodrelay.analytics import analyze_all, analyze_conversation
from moodrelay.backends import make_backend
from moodrelay.config import get_config, is_production
from moodrelay.errors import RelayError, ValidationError, error_body
from moodrelay.polling import PollRegistry
from moodrelay.relay import Relay
from moodrelay.sse import SSE_HEADERS, sse_frames
from moodrelay.storage.conversation_store import ConversationStore
from moodrelay.wiretap import WireLog

logger = logging.getLogger(__name__)

TRANSPORTS = ("json", "sse", "poll")

# ---------------------------------------------------------------------------
# Globals, initialized at startup
# ---------------------------------------------------------------------------
store: ConversationStore | None = None
relay: Relay | None = None
poll_registry: PollRegistry | None = None
wire: WireLog | None = None
_started_at: float = time.monotonic()


def _setup_logging(cfg: dict):
    log_cfg = cfg.get("logging", {})
    level = getattr(logging, str(log_cfg.get("level", "INFO")).upper(), logging.INFO)
    log_file = log_cfg.get("file")

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    global store, relay, poll_registry, wire, _started_at

    cfg = get_config()
    _setup_logging(cfg)

    snapshot_path = cfg.get("storage", {}).get("snapshot_path") or None
    store = ConversationStore(snapshot_path)

    wire_cfg = cfg.get("wiretap", {})
    wire = WireLog(wire_cfg.get("path", "./data/wire.jsonl"), enabled=bool(wire_cfg.get("enabled", True)))

    backend = make_backend(cfg.get("upstream", {}))
    relay = Relay.from_config(cfg, store=store, backend=backend, wire=wire)
    poll_registry = PollRegistry(ttl_seconds=float(cfg.get("polling", {}).get("ttl_seconds", 300)))
    _started_at = time.monotonic()

    logger.info(
        "moodrelay %s started, listening on %s:%s, upstream %s (%s)",
        __version__,
        cfg["server"]["host"],
        cfg["server"]["port"],
        backend.url,
        backend.model,
    )
    logger.info("Snapshot: %s", snapshot_path or "disabled (in-memory only)")
    if not backend.configured:
        logger.warning("Upstream API key is not set, chat requests will fail with a configuration error")

    yield

    await poll_registry.wait_idle()
    wire.close()
    logger.info("moodrelay shutting down")


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------
app = FastAPI(
    title="MoodRelay",
    description="Mood-aware chat relay.",
    version=__version__,
    lifespan=lifespan,
)


def _cors_origins(cfg: dict) -> list[str]:
    if is_production(cfg):
        return list(cfg.get("cors", {}).get("production_origins", []))
    return ["*"]


_origins = _cors_origins(get_config())
app.add_middleware(
    CORSMiddleware,
    allow_origins=_origins,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
    # Browsers refuse credentials with a wildcard origin
    allow_credentials=_origins != ["*"],
)


@app.exception_handler(RelayError)
async def relay_error_handler(request: Request, exc: RelayError):
    body, status = error_body(exc)
    logger.warning("%s %s → %d %s: %s", request.method, request.url.path, status, exc.kind, exc.message)
    return JSONResponse(body, status_code=status)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    body, status = error_body(exc)
    logger.exception("Unhandled error on %s %s (%s)", request.method, request.url.path, body["requestId"])
    return JSONResponse(body, status_code=status)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Chat
# ---------------------------------------------------------------------------

@app.post("/api/chat")
async def chat(request: Request):
    """
    Body: {"content": str, "mood": str, "conversationId": str, "transport": "json"|"sse"|"poll"}

    json (default): answers with the full reply.
    sse / poll: stores the user message and answers 202 with the URL to
    collect the reply from.
    """
    try:
        body = await request.json()
    except ValueError:
        raise ValidationError("Request body must be valid JSON")
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")

    content = body.get("content")
    mood = body.get("mood")
    conv_id = body.get("conversationId")
    transport = body.get("transport") or "json"
    if transport not in TRANSPORTS:
        raise ValidationError(f"Unknown transport '{transport}'. Use: {', '.join(TRANSPORTS)}")

    if transport == "json":
        reply = await relay.complete(conv_id, content, mood)
        return JSONResponse({"status": "success", "content": reply, "timestamp": _now()})

    relay.validate(content, conv_id)
    conv_id = str(conv_id)
    if transport == "poll":
        poll_registry.ensure_idle(conv_id)
    relay.submit(conv_id, content, mood)

    if transport == "sse":
        return JSONResponse(
            {"status": "accepted", "conversationId": conv_id, "stream": f"/api/chat/{conv_id}/stream"},
            status_code=202,
        )

    poll_registry.start(conv_id, relay.stream_reply(conv_id, transport="poll"))
    return JSONResponse(
        {"status": "accepted", "conversationId": conv_id, "poll": f"/api/chat/{conv_id}/poll"},
        status_code=202,
    )


@app.get("/api/chat/{conv_id}/stream")
async def chat_stream(conv_id: str):
    """SSE reply to the conversation's pending user message."""
    return StreamingResponse(
        sse_frames(relay.stream_reply(conv_id, transport="sse")),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@app.get("/api/chat/{conv_id}/poll")
async def chat_poll(conv_id: str):
    """Drain whatever reply text arrived since the last poll."""
    return JSONResponse(poll_registry.poll(conv_id))


@app.websocket("/ws")
async def chat_ws(websocket: WebSocket):
    """
    Client sends {"content", "mood", "conversationId"?}; server pushes
    {"type": "content"|"done"|"error", "content", "conversationId"} frames.
    A connection without an id gets one generated and keeps it.
    """
    await websocket.accept()
    connection_conv_id: str | None = None
    logger.info("WebSocket connected")
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                data = json.loads(raw)
            except ValueError:
                data = None
            if not isinstance(data, dict):
                await websocket.send_json({
                    "type": "error",
                    "content": "Message must be a JSON object",
                    "kind": ValidationError.kind,
                })
                continue

            conv_id = data.get("conversationId") or connection_conv_id
            if not conv_id:
                conv_id = uuid4().hex
            if connection_conv_id is None:
                connection_conv_id = str(conv_id)

            async for event in relay.stream_turn(conv_id, data.get("content"), data.get("mood")):
                frame = {"type": event.type, "content": event.content, "conversationId": str(conv_id)}
                if event.kind:
                    frame["kind"] = event.kind
                await websocket.send_json(frame)
    except WebSocketDisconnect:
        logger.info("WebSocket disconnected (conv=%s)", connection_conv_id)


# ---------------------------------------------------------------------------
# Conversations and analytics
# ---------------------------------------------------------------------------

@app.get("/api/conversations")
async def list_conversations():
    """All conversations, newest first."""
    return JSONResponse([c.to_dict() for c in store.list()])


@app.get("/api/conversations/{conv_id}")
async def get_conversation(conv_id: str):
    return JSONResponse(store.require(conv_id).to_dict())


@app.get("/api/mood-analysis")
async def mood_analysis():
    """Mood statistics across every conversation."""
    return JSONResponse(analyze_all(store.list()))


@app.get("/api/mood-analysis/{conv_id}")
async def mood_analysis_for(conv_id: str):
    """Mood timeline and statistics for one conversation."""
    return JSONResponse(analyze_conversation(store.require(conv_id)))


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

def _max_rss_mb() -> float | None:
    try:
        import resource
    except ImportError:
        return None
    # ru_maxrss is in kilobytes on Linux
    return round(resource.getrusage(resource.RUSAGE_SELF).ru_maxrss / 1024, 1)


@app.get("/api/health")
@app.get("/health")
async def health():
    """Liveness plus a little metadata."""
    cfg = get_config()
    return JSONResponse({
        "status": "ok",
        "version": __version__,
        "timestamp": _now(),
        "uptime": round(time.monotonic() - _started_at, 3),
        "memory": {"maxRssMB": _max_rss_mb()},
        "conversations": store.count() if store else 0,
        "storage": store.stats() if store else {},
        "upstreamConfigured": relay.backend.configured if relay else False,
        "environment": "production" if is_production(cfg) else "development",
    })


# ---------------------------------------------------------------------------
# Web UI
# ---------------------------------------------------------------------------

_web_dir = Path(__file__).parent / "web"
if _web_dir.exists():
    app.mount("/web", StaticFiles(directory=str(_web_dir)), name="web")


@app.get("/")
async def root():
    """Serve the browser client."""
    return FileResponse(str(_web_dir / "index.html"), media_type="text/html")


# ---------------------------------------------------------------------------
# Run with: python -m moodrelay.main
# ---------------------------------------------------------------------------
if __name__ == "__main__":
    import uvicorn

    cfg = get_config()
    uvicorn.run(
        "moodrelay.main:app",
        host=cfg["server"]["host"],
        port=cfg["server"]["port"],
        reload=False,
    )
