from fastapi import FastAPI
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.responses import Response

from chatdesk.api.conversations import router as conversations_router
from chatdesk.api.widget_public import router as widget_public_router
from chatdesk.errors import register_error_handlers
from chatdesk.logging import configure_logging
from chatdesk.telemetry import setup_otel
from chatdesk.websocket.manager import get_connection_manager
from chatdesk.websocket.widget_router import router as ws_widget_router

configure_logging()

app = FastAPI(title="chatdesk")
register_error_handlers(app)
setup_otel(app)

app.include_router(widget_public_router, prefix="/api")
app.include_router(conversations_router, prefix="/api")
app.include_router(ws_widget_router)


@app.get("/health")
def health_check():
    return {"status": "ok"}


@app.head("/health")
def head_health():
    return Response(status_code=200)


@app.get("/metrics")
def metrics():
    data = generate_latest()
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)


@app.on_event("startup")
async def _start_websocket_manager():
    manager = get_connection_manager()
    await manager.connect()


@app.on_event("shutdown")
async def _stop_websocket_manager():
    manager = get_connection_manager()
    await manager.disconnect()
