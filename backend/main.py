"""
Experiment Coordinator Backend - Multi-Session Behavioral Experiment Host
FastAPI application exposing the experiment core over HTTP and WebSocket

Architecture:
- Participant Management: deterministic per-user session ordering
- Session Lifecycle: start/end/resume, activity, idle and timeout detection
- Validation: phase-gated actions and rule-based consistency checks
- Backup & Recovery: periodic/event/emergency snapshots to the durable store
- Data Export: JSON snapshot, CSV metrics and statistical summary
- WebSocket Broadcast: idle / timeout / force-end-session notifications
"""

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from contextlib import asynccontextmanager
from pydantic import BaseModel
import asyncio
import json
import logging
import time
from typing import Dict, List, Optional

from experiment_core import ExperimentConfig, ExperimentCoordinator
from experiment_core.infra import AsyncioScheduler, JsonFileStore, Topic

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Topics produced by the core and pushed to clients
BROADCAST_TOPICS = (Topic.IDLE, Topic.TIMEOUT, Topic.FORCE_END_SESSION, Topic.SESSION_ENDED)

# ==========================================
# Global State
# ==========================================

class ConnectionManager:
    """Manage WebSocket connections"""
    def __init__(self):
        self.active_connections: List[WebSocket] = []

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.active_connections.append(websocket)
        logger.info(f"WebSocket client connected. Total clients: {len(self.active_connections)}")

    def disconnect(self, websocket: WebSocket):
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)
        logger.info(f"WebSocket client disconnected. Total clients: {len(self.active_connections)}")

    async def broadcast(self, message: str):
        """Broadcast message to all connected clients"""
        dead_connections = []
        for connection in self.active_connections:
            try:
                await connection.send_text(message)
            except Exception as e:
                logger.error(f"Error sending to client: {e}")
                dead_connections.append(connection)

        # Remove dead connections
        for conn in dead_connections:
            if conn in self.active_connections:
                self.active_connections.remove(conn)


# Global instances (initialized in lifespan)
ws_manager = ConnectionManager()
config = ExperimentConfig.from_env()
coordinator: Optional[ExperimentCoordinator] = None

# Broadcasts scheduled from bus handlers
pending_broadcasts = set()


def bridge_bus_event(topic: Topic, payload: Dict):
    """Forward produced bus events to WebSocket clients"""
    if topic not in BROADCAST_TOPICS or not ws_manager.active_connections:
        return

    message = json.dumps({'topic': topic.value, 'payload': payload})
    task = asyncio.get_running_loop().create_task(ws_manager.broadcast(message))
    pending_broadcasts.add(task)
    task.add_done_callback(pending_broadcasts.discard)


# ==========================================
# Data Models
# ==========================================

class UserRequest(BaseModel):
    """Participant initialization request"""
    user_id: str


class SessionStartRequest(BaseModel):
    """Session start request (host-probed capabilities)"""
    device_info: Optional[Dict] = None
    browser_info: Optional[Dict] = None


class EventRequest(BaseModel):
    """Gameplay event"""
    type: str
    data: Optional[Dict] = None


class SignalRequest(BaseModel):
    """Non-metric gameplay event (e.g. awardPoints)"""
    type: str


class VisibilityRequest(BaseModel):
    hidden: bool


class RecoverRequest(BaseModel):
    """Recovery selector: 'latest', a backup kind or an explicit key"""
    selector: str = 'latest'


# ==========================================
# Application Lifecycle
# ==========================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    global coordinator

    logger.info("🚀 Experiment Coordinator Backend starting...")

    store = JsonFileStore(config.store_path, capacity_bytes=config.backup.max_storage_bytes)
    coordinator = ExperimentCoordinator(
        config=config,
        store=store,
        scheduler=AsyncioScheduler(asyncio.get_running_loop()),
    )
    coordinator.initialize()
    coordinator.bus.subscribe_all(bridge_bus_event)

    logger.info("✓ Coordinator initialized")

    yield

    # Cleanup
    logger.info("🛑 Experiment Coordinator Backend shutting down...")

    coordinator.shutdown()

    for task in list(pending_broadcasts):
        task.cancel()

    logger.info("✓ Shutdown complete")


# ==========================================
# FastAPI Application
# ==========================================

app = FastAPI(
    title="Experiment Coordinator API",
    description="Multi-Session Behavioral Experiment Host",
    version="1.0.0",
    lifespan=lifespan
)

# CORS Middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def require_coordinator() -> ExperimentCoordinator:
    if coordinator is None:
        raise HTTPException(status_code=503, detail="Coordinator not initialized")
    return coordinator


# ==========================================
# REST API Endpoints
# ==========================================

@app.get("/")
async def root():
    """API root endpoint"""
    return {
        "status": "running",
        "version": "1.0.0",
        "service": "Experiment Coordinator Backend",
        "total_sessions": config.total_sessions
    }


@app.get("/api/health")
async def health_check():
    """Health check endpoint"""
    active = coordinator is not None and coordinator.state.is_experiment_active
    return {
        "status": "healthy",
        "timestamp": time.time(),
        "websocket_clients": len(ws_manager.active_connections),
        "user_id": coordinator.state.user_id if coordinator else None,
        "session_active": active
    }


@app.post("/api/users")
async def initialize_user(request: UserRequest):
    """Set the participant and load their progress"""
    logger.info(f"Initializing participant: {request.user_id}")
    coord = require_coordinator()

    try:
        status = coord.initialize_user(request.user_id)
        return {"success": True, **status}

    except (ValueError, RuntimeError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Error initializing participant: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/api/reset")
async def reset_experiment():
    """Discard the participant's data (experiment complete only)"""
    coord = require_coordinator()

    try:
        status = coord.reset_experiment()
        return {"success": True, **status}

    except (ValueError, RuntimeError) as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.post("/api/session/start")
async def start_session(request: SessionStartRequest):
    """Start (or resume) the participant's next session"""
    coord = require_coordinator()

    try:
        session = coord.start_session(
            device_info=request.device_info,
            browser_info=request.browser_info
        )
        return {
            "success": True,
            "session_id": session['session_id'],
            "permutation_id": session['permutation_id'],
            "speed_config": session['speed_config'],
            "resumed": session.get('resumed', False),
            "status": "active"
        }

    except (ValueError, RuntimeError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Error starting session: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/api/session/end")
async def end_session():
    """End the current session"""
    logger.info("Ending session")
    coord = require_coordinator()

    try:
        record = coord.end_session()
        if record is None:
            raise HTTPException(status_code=400, detail="No active session")

        return {
            "success": True,
            "session_id": record['session_id'],
            "summary": record['summary'],
            "completed_sessions": coord.state.completed_sessions_count()
        }

    except RuntimeError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.post("/api/session/event")
async def log_event(event: EventRequest):
    """Record a gameplay event in the current session"""
    coord = require_coordinator()

    if not coord.log_event(event.type, event.data or {}):
        raise HTTPException(status_code=400, detail=f"Event rejected: {event.type}")

    return {"success": True}


@app.post("/api/session/signal")
async def signal_event(signal: SignalRequest):
    """Announce a non-metric gameplay event"""
    coord = require_coordinator()

    try:
        accepted = coord.signal_event(signal.type)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return {"success": accepted}


@app.post("/api/session/activity")
async def report_activity():
    require_coordinator().activity()
    return {"success": True}


@app.post("/api/session/visibility")
async def report_visibility(request: VisibilityRequest):
    require_coordinator().visibility_changed(request.hidden)
    return {"success": True}


@app.post("/api/session/suspend")
async def report_suspend():
    """Page is being unloaded: persist what can be resumed"""
    require_coordinator().suspend()
    return {"success": True}


@app.get("/api/session/status")
async def get_session_status():
    """Get current session status"""
    coord = require_coordinator()
    return {"success": True, **coord.status()}


@app.get("/api/actions/{action}")
async def check_action(action: str):
    """Phase check plus per-action preconditions"""
    coord = require_coordinator()
    validation = coord.validation.validate_action(action)

    return {
        "success": True,
        "action": action,
        "can_perform": coord.validation.can_perform_action(action),
        **validation.to_dict()
    }


@app.get("/api/validation")
async def run_validation():
    coord = require_coordinator()
    return {"success": True, **coord.validation.run_validation().to_dict()}


@app.get("/api/progress")
async def get_progress():
    coord = require_coordinator()
    return {"success": True, **coord.validation.progress_summary()}


@app.get("/api/backups")
async def list_backups():
    coord = require_coordinator()
    return {"success": True, "backups": coord.backups()}


@app.post("/api/backups/{kind}")
async def create_backup(kind: str):
    """Create a backup of the given kind (session|periodic|event|emergency)"""
    coord = require_coordinator()

    if not coord.state.user_id:
        raise HTTPException(status_code=400, detail="User ID not set")

    if not coord.backup.create_backup(kind):
        raise HTTPException(status_code=400, detail=f"Backup failed: {kind}")

    return {"success": True, "kind": kind}


@app.post("/api/recover")
async def recover(request: RecoverRequest):
    """Restore shared state from a backup"""
    coord = require_coordinator()

    snapshot = coord.recover(request.selector)
    if snapshot is None:
        raise HTTPException(status_code=404, detail=f"No restorable backup for '{request.selector}'")

    return {"success": True, "selector": request.selector, **coord.status()}


@app.get("/api/storage/health")
async def storage_health():
    coord = require_coordinator()
    return {"success": True, **coord.backup.health().to_dict()}


@app.get("/api/export")
async def export_data(format: str = "json"):
    """Export participant data as JSON or CSV"""
    coord = require_coordinator()

    try:
        if format == "csv":
            content = coord.export_csv()
            return PlainTextResponse(
                content,
                media_type="text/csv",
                headers={
                    "Content-Disposition": f'attachment; filename="experiment_{coord.state.user_id}_data.csv"'
                }
            )
        if format == "json":
            return {"success": True, **coord.export_data()}

    except RuntimeError as e:
        raise HTTPException(status_code=400, detail=str(e))

    raise HTTPException(status_code=400, detail=f"Unsupported export format: {format}")


@app.get("/api/debug")
async def debug_info():
    coord = require_coordinator()
    return {"success": True, **coord.debug_info()}


# ==========================================
# WebSocket Endpoint
# ==========================================

@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """WebSocket connection for experiment notifications"""
    await ws_manager.connect(websocket)

    try:
        while True:
            # Any client message counts as participant activity
            data = await websocket.receive_text()
            logger.debug(f"Received from client: {data}")

            if coordinator is not None:
                coordinator.activity()

    except WebSocketDisconnect:
        ws_manager.disconnect(websocket)
    except Exception as e:
        logger.error(f"WebSocket error: {e}")
        ws_manager.disconnect(websocket)


# ==========================================
# Run Application
# ==========================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info"
    )
