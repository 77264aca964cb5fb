import sys
import asyncio

# Fix for asyncio subprocess support on Windows
# MUST BE SET BEFORE OTHER IMPORTS
if sys.platform == 'win32':
    asyncio.set_event_loop_policy(asyncio.WindowsProactorEventLoopPolicy())

import base64
import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, Optional

import socketio
import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from agent import LiveAgent
from audio import list_input_devices, list_output_devices
from errors import DeviceError, SessionError, TeardownError
from events import AgentEvent
from settings import AgentConfig, deep_merge, load_settings, save_settings

logger = logging.getLogger(__name__)

SETTINGS: Dict[str, Any] = load_settings()
agent: Optional[LiveAgent] = None


def configure_logging() -> None:
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def build_agent() -> LiveAgent:
    return LiveAgent(AgentConfig.from_settings(SETTINGS))


# Replaced in tests.
agent_factory: Callable[[], LiveAgent] = build_agent


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    logger.info("[SERVER] Startup (Python %s)", sys.version.split()[0])
    yield
    global agent
    if agent is not None:
        logger.info("[SERVER] Shutdown: closing active session")
        try:
            await agent.disconnect()
        except TeardownError as e:
            logger.error("[SERVER] %s", e)
        agent = None


# Create a Socket.IO server
sio = socketio.AsyncServer(async_mode='asgi', cors_allowed_origins='*', max_http_buffer_size=25 * 1024 * 1024)
app = FastAPI(lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)
app_socketio = socketio.ASGIApp(sio, app)


@app.get("/status")
async def status():
    return {
        "status": "running",
        "service": "Live Session Backend",
        "session": agent.status() if agent is not None else None,
    }


# --------------------------------------------------------------------------------------
# Agent -> UI
# --------------------------------------------------------------------------------------
def _forward_events(live_agent: LiveAgent) -> None:
    ev = live_agent.events
    ev.on(AgentEvent.TEXT, lambda text: sio.emit('text', {'text': text}))
    ev.on(AgentEvent.TEXT_SENT, lambda text: sio.emit('text_sent', {'text': text}))
    ev.on(AgentEvent.AUDIO, lambda data: sio.emit('audio', {'data': base64.b64encode(data).decode("ascii")}))
    ev.on(AgentEvent.TRANSCRIPTION, lambda text: sio.emit('transcription', {'text': text}))
    ev.on(AgentEvent.USER_TRANSCRIPTION, lambda text: sio.emit('user_transcription', {'text': text}))
    ev.on(AgentEvent.TURN_COMPLETE, lambda _=None: sio.emit('turn_complete', {}))
    ev.on(AgentEvent.INTERRUPTED, lambda _=None: sio.emit('interrupted', {}))
    ev.on(AgentEvent.CONNECTED, lambda _=None: sio.emit('connected', {}))
    ev.on(AgentEvent.DISCONNECTED, lambda info=None: sio.emit('disconnected', info or {}))
    ev.on(AgentEvent.SCREENSHARE_STOPPED, lambda _=None: sio.emit('screenshare_stopped', {}))
    ev.on(AgentEvent.ERROR, lambda msg: sio.emit('error', {'msg': str(msg)}))


async def _emit_status(msg: str) -> None:
    await sio.emit('status', {'msg': msg, 'session': agent.status() if agent is not None else None})


# --------------------------------------------------------------------------------------
# UI -> Agent
# --------------------------------------------------------------------------------------
@sio.event
async def connect(sid, environ):
    logger.info("[SERVER] Client connected: %s", sid)
    await sio.emit('status', {'msg': 'Connected to Live Session Backend'}, room=sid)


@sio.event
async def disconnect(sid):
    logger.info("[SERVER] Client disconnected: %s", sid)


@sio.event
async def start_session(sid, data=None):
    global agent
    if agent is not None and agent.is_connected:
        await _emit_status('Session already running')
        return
    if agent is not None:
        # The model link dropped; release the stale session's devices first.
        stale, agent = agent, None
        try:
            await stale.disconnect()
        except TeardownError as e:
            logger.error("[SERVER] %s", e)

    live_agent = agent_factory()
    _forward_events(live_agent)
    agent = live_agent
    try:
        await live_agent.connect()
        await live_agent.initialize()
    except (SessionError, ValueError) as e:
        logger.error("[SERVER] Failed to start session: %s", e)
        await sio.emit('error', {'msg': f"Failed to start: {e}"})
        try:
            await live_agent.disconnect()
        except TeardownError as te:
            logger.error("[SERVER] %s", te)
        agent = None
        return
    await _emit_status('Session started')


@sio.event
async def stop_session(sid, data=None):
    global agent
    live_agent, agent = agent, None
    if live_agent is None:
        await _emit_status('No session running')
        return
    try:
        await live_agent.disconnect()
    except TeardownError as e:
        logger.error("[SERVER] %s", e)
        await sio.emit('error', {'msg': str(e)})
    await _emit_status('Session stopped')


async def _run_toggle(label: str, action) -> None:
    if agent is None:
        await sio.emit('error', {'msg': 'No session running'})
        return
    try:
        await action()
    except SessionError as e:
        logger.error("[SERVER] %s failed: %s", label, e)
        await sio.emit('error', {'msg': f"{label} failed: {e}"})
    await _emit_status(f"{label} done")


@sio.event
async def toggle_mic(sid, data=None):
    await _run_toggle('Toggle microphone', lambda: agent.toggle_mic())


@sio.event
async def toggle_camera(sid, data=None):
    await _run_toggle('Toggle camera', lambda: agent.toggle_camera())


@sio.event
async def toggle_screen(sid, data=None):
    await _run_toggle('Toggle screen share', lambda: agent.toggle_screen_share())


@sio.event
async def user_input(sid, data):
    text = (data or {}).get('text')
    if not text:
        return
    if agent is None:
        logger.warning("[SERVER] User input received with no session running")
        await sio.emit('error', {'msg': 'No session running'})
        return
    try:
        await agent.send_text(text)
    except SessionError as e:
        logger.error("[SERVER] Failed to send text: %s", e)
        await sio.emit('error', {'msg': f"Failed to send message: {e}"})


@sio.event
async def get_devices(sid, data=None):
    try:
        inputs = await asyncio.to_thread(list_input_devices)
        outputs = await asyncio.to_thread(list_output_devices)
    except (DeviceError, OSError) as e:
        logger.error("[SERVER] Failed to list audio devices: %s", e)
        await sio.emit('error', {'msg': f"Failed to list audio devices: {e}"}, room=sid)
        return
    await sio.emit('devices', {
        'input': [{'index': i, 'name': name} for i, name in inputs],
        'output': [{'index': i, 'name': name} for i, name in outputs],
    }, room=sid)


@sio.event
async def get_settings(sid):
    await sio.emit('settings', SETTINGS)


@sio.event
async def update_settings(sid, data):
    if not isinstance(data, dict):
        return
    logger.info("[SERVER] Updating settings: %s", sorted(data))
    deep_merge(SETTINGS, data)
    save_settings(SETTINGS)
    # Applies to the next session.
    await sio.emit('settings', SETTINGS)


if __name__ == "__main__":
    configure_logging()
    uvicorn.run(
        "server:app_socketio",
        host="127.0.0.1",
        port=8000,
        reload=False,
        loop="asyncio",
    )
