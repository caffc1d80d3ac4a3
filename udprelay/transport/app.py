"""
UDP Relay Application

FastAPI application with the WebSocket control channel and a small
informational HTTP surface. This is the main entry point for running the relay.

Endpoints:
- WS  /  and /ws: control channel (one relay session per connection)
- GET /: human-readable status page
- GET /status: connection count, uptime, environment, version
- GET /health: liveness
- GET /clients: session listing
- POST /send-to-client/{client_id}: send a datagram to a client's requested address

Configuration is read from environment variables (see udprelay.config);
variables can be loaded from a .env file in the project root.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Annotated

from dotenv import load_dotenv
from fastapi import FastAPI, Request, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse
from pydantic import BaseModel, Field, ValidationError

# Load environment variables from .env file
load_dotenv()

from udprelay.config import DeploymentMode, RelayConfig
from udprelay.resolver import (
    AddressResolver,
    HttpPublicAddressLookup,
    StaticPublicAddressLookup,
)
from udprelay.session import SessionManager
from udprelay.transport.handler import WebSocketHandler

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


class SendToClientBody(BaseModel):
    """Body of POST /send-to-client/{client_id}."""
    data: list[Annotated[int, Field(ge=0, le=255)]] | None = Field(
        default=None,
        description="Datagram bytes (0-255)"
    )
    message: str | None = Field(
        default=None,
        description="UTF-8 text, used when data is absent"
    )
    
    def payload(self) -> bytes:
        if self.data:
            return bytes(self.data)
        return (self.message or "Hello from server").encode("utf-8")


def _log_unhandled(loop: asyncio.AbstractEventLoop, context: dict) -> None:
    """Log exceptions the event loop could not deliver to an awaiting task."""
    exc = context.get("exception")
    logger.error(
        f"Unhandled error: {context.get('message', 'unknown')}",
        exc_info=(type(exc), exc, exc.__traceback__) if exc else None,
    )


def build_resolver(config: RelayConfig) -> AddressResolver:
    lookup = None
    if config.public_ip:
        lookup = StaticPublicAddressLookup(config.public_ip)
    elif config.lookup_urls:
        lookup = HttpPublicAddressLookup(
            config.lookup_urls,
            timeout_seconds=config.lookup_timeout_seconds,
        )
    return AddressResolver(
        lookup=lookup,
        public_hostname=config.public_hostname,
        lookup_budget_seconds=config.lookup_timeout_seconds * max(len(config.lookup_urls), 1),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    
    Builds the session manager from the app's config and closes every
    session on shutdown.
    """
    config: RelayConfig = app.state.config
    
    # Startup
    asyncio.get_running_loop().set_exception_handler(_log_unhandled)
    logger.info(f"Starting UDP relay on port {config.port} ({config.environment})...")
    if config.deployment_mode == DeploymentMode.RESTRICTED:
        logger.info("Restricted environment: UDP sockets bind 0.0.0.0 with OS-assigned ports")
    if config.public_hostname:
        logger.info(f"Public hostname: {config.public_hostname}")
    
    session_manager = SessionManager.from_config(config, build_resolver(config))
    await session_manager.start()
    
    app.state.session_manager = session_manager
    app.state.handler = WebSocketHandler(
        session_manager,
        outbound_queue_size=config.outbound_queue_size,
    )
    app.state.started_at = time.monotonic()
    
    logger.info("UDP relay started")
    
    yield
    
    # Shutdown
    logger.info("Shutting down UDP relay...")
    await session_manager.shutdown()
    logger.info("UDP relay stopped")


def create_app(config: RelayConfig | None = None) -> FastAPI:
    """Create the relay application."""
    config = config or RelayConfig.from_env()
    app = FastAPI(
        title="UDP Relay",
        description="WebSocket to UDP relay for browser clients",
        version=config.version,
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.session_manager = None
    app.state.handler = None
    app.state.started_at = time.monotonic()
    
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )
    
    @app.websocket("/")
    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """
        Control channel endpoint.
        
        Every connection gets its own relay session.
        """
        handler: WebSocketHandler | None = websocket.app.state.handler
        if handler is None:
            await websocket.close(code=1011, reason="Relay not initialized")
            return
        
        await handler.handle_connection(websocket)
    
    @app.get("/status")
    async def status(request: Request):
        """Relay status."""
        state = request.app.state
        sessions: SessionManager | None = state.session_manager
        return {
            "status": "running",
            "connections": sessions.session_count if sessions else 0,
            "udpSockets": sessions.udp_count if sessions else 0,
            "uptime": round(time.monotonic() - state.started_at, 3),
            "environment": state.config.environment,
            "deploymentMode": state.config.deployment_mode.value,
            "version": state.config.version,
        }
    
    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
    
    @app.get("/clients")
    async def list_clients(request: Request):
        """All connected relay clients."""
        sessions: SessionManager | None = request.app.state.session_manager
        clients = [s.to_summary_dict() for s in await sessions.list_sessions()] if sessions else []
        return {
            "clients": clients,
            "totalClients": len(clients),
        }
    
    @app.post("/send-to-client/{client_id}")
    async def send_to_client(client_id: str, request: Request):
        """
        Send a datagram from a client's UDP socket to the address that client
        asked to bind. The outcome is reported on the client's control channel.
        """
        try:
            body = SendToClientBody.model_validate(await request.json())
        except (ValueError, ValidationError):
            return JSONResponse(status_code=400, content={"error": "Invalid JSON data"})
        
        sessions: SessionManager | None = request.app.state.session_manager
        session = await sessions.send_to_client(client_id, body.payload()) if sessions else None
        if session is None:
            return JSONResponse(status_code=404, content={"error": "Client not found"})
        
        target_ip, target_port = session.client_target
        return {
            "success": True,
            "message": f"Data sent to client {client_id}",
            "targetIP": target_ip,
            "targetPort": target_port,
        }
    
    @app.get("/", response_class=HTMLResponse)
    async def index(request: Request):
        """Human-readable status page."""
        state = request.app.state
        sessions: SessionManager | None = state.session_manager
        scheme = "wss" if request.headers.get("x-forwarded-proto") == "https" else "ws"
        host = request.headers.get("host", f"localhost:{state.config.port}")
        return _STATUS_PAGE.format(
            port=state.config.port,
            connections=sessions.session_count if sessions else 0,
            uptime=int(time.monotonic() - state.started_at),
            mode=state.config.deployment_mode.value,
            ws_url=f"{scheme}://{host}/",
        )
    
    return app


_STATUS_PAGE = """<!DOCTYPE html>
<html>
<head>
    <title>UDP Relay</title>
    <meta charset="utf-8">
    <style>
        body {{ font-family: Arial, sans-serif; margin: 40px; }}
        .status {{ background: #e8f5e8; padding: 15px; border-radius: 5px; }}
        .info {{ background: #e8f4fd; padding: 10px; border-radius: 5px; margin: 10px 0; }}
    </style>
</head>
<body>
    <h1>UDP Relay</h1>
    <div class="status">
        <h3>Running</h3>
        <p><strong>Port:</strong> {port}</p>
        <p><strong>Connections:</strong> <span id="connections">{connections}</span></p>
        <p><strong>Uptime:</strong> {uptime}s</p>
        <p><strong>Binding mode:</strong> {mode}</p>
    </div>
    <div class="info">
        <h3>Endpoints</h3>
        <ul>
            <li><a href="/status">/status</a> - JSON status</li>
            <li><a href="/health">/health</a> - liveness</li>
            <li><a href="/clients">/clients</a> - connected clients</li>
            <li><strong>POST /send-to-client/{{clientId}}</strong> - send a datagram to a client's requested address</li>
        </ul>
    </div>
    <div class="info">
        <h3>WebSocket</h3>
        <p>Control channel: <code>{ws_url}</code></p>
    </div>
    <script>
        setInterval(() => {{
            fetch('/status')
                .then(r => r.json())
                .then(data => {{ document.getElementById('connections').textContent = data.connections; }})
                .catch(() => {{}});
        }}, 5000);
    </script>
</body>
</html>
"""


app = create_app()
