#!/usr/bin/env python3
"""
Command Server Backend - remote command execution control plane

Agents register with a single-use token, then hold one persistent WebSocket
each. Operators submit shell commands for a specific agent and read results
back asynchronously.

Operator endpoints require "Authorization: Bearer <operator key>".
Agent endpoints: POST /register (registration token in body) and GET /ws
(signed agent credential in the Authorization header).
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, WebSocket, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from agent.command_dispatcher import AgentNotFoundError, CommandDispatcher
from agent.heartbeat_monitor import HeartbeatMonitor
from agent.manager import AgentManager
from agent.models import (
    AgentInfo,
    AgentRegistrationRequest,
    AgentRegistrationResponse,
    CommandInfo,
    CommandRequest,
    CommandStatus,
    RegistrationTokenResponse,
    SubmittedCommand,
)
from agent.session_registry import SessionRegistry
from agent.websocket_handler import AgentWebSocketHandler
from auth.operator_auth import require_operator
from config.paths import ensure_data_dirs
from config.settings import AppConfig, HealthCheckFilter, setup_logging
from database import DatabaseManager, StorageError, get_database_manager

logger = logging.getLogger(__name__)


def create_app(db: Optional[DatabaseManager] = None, config=AppConfig) -> FastAPI:
    """
    Build the FastAPI application.

    Services (store, registry, dispatcher, heartbeat monitor) are created in the
    lifespan and kept on app.state.

    Args:
        db: Store to use; defaults to the process-wide DatabaseManager
        config: Configuration class (AppConfig or a test double)
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage application lifecycle"""
        # Validate configuration early to fail fast on misconfiguration
        config.validate()

        logger.info("Starting command server...")

        # Reapply health check filter to uvicorn access logger (must be done after uvicorn starts)
        logging.getLogger("uvicorn.access").addFilter(HealthCheckFilter())

        store = db or get_database_manager()
        registry = SessionRegistry()
        dispatcher = CommandDispatcher(
            store,
            registry,
            command_timeout=config.COMMAND_TIMEOUT,
            pending_timeout=config.PENDING_COMMAND_TIMEOUT,
        )
        agent_manager = AgentManager(store, token_ttl_minutes=config.REGISTRATION_TOKEN_TTL_MINUTES)
        heartbeat_monitor = HeartbeatMonitor(
            registry,
            timeout=config.HEARTBEAT_TIMEOUT,
            check_interval=config.HEARTBEAT_CHECK_INTERVAL,
        )

        app.state.db = store
        app.state.registry = registry
        app.state.dispatcher = dispatcher
        app.state.agent_manager = agent_manager
        app.state.heartbeat_monitor = heartbeat_monitor

        await heartbeat_monitor.start()
        await dispatcher.start_expiry_sweep(config.COMMAND_SWEEP_INTERVAL)

        yield

        # Shutdown
        logger.info("Shutting down command server...")

        try:
            await heartbeat_monitor.stop()
        except Exception as e:
            logger.error(f"Error stopping heartbeat monitor: {e}")

        try:
            await dispatcher.stop_expiry_sweep()
        except Exception as e:
            logger.error(f"Error stopping command expiry sweep: {e}")

        try:
            await registry.close_all()
            logger.info("All agent sessions closed")
        except Exception as e:
            logger.error(f"Error closing agent sessions: {e}")

        if db is None:
            # Dispose SQLAlchemy engine (run in thread pool to avoid blocking event loop)
            try:
                loop = asyncio.get_running_loop()
                await loop.run_in_executor(None, store.dispose)
                logger.info("SQLAlchemy engine disposed")
            except Exception as e:
                logger.error(f"Error disposing database engine: {e}")

    app = FastAPI(
        title="Command Server API",
        version="1.0.0",
        lifespan=lifespan
    )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Return field-level details for pydantic validation errors"""
        errors = []
        for error in exc.errors():
            field = " -> ".join(str(x) for x in error['loc'])
            errors.append({
                "field": field,
                "message": error['msg'],
                "type": error['type']
            })

        logger.warning(f"Validation failed for {request.url.path}: {errors}")
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={"detail": "Validation failed", "errors": errors}
        )

    @app.exception_handler(StorageError)
    async def storage_exception_handler(request: Request, exc: StorageError):
        logger.error(f"Storage failure serving {request.url.path}: {exc}")
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"detail": "Storage unavailable"}
        )

    @app.exception_handler(AgentNotFoundError)
    async def agent_not_found_handler(request: Request, exc: AgentNotFoundError):
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content={"detail": f"Client {exc.agent_id} not found"}
        )

    # ==================== Health ====================

    @app.get("/health")
    async def health_check(request: Request):
        """Liveness probe (no authentication)"""
        return {"status": "ok", "connected_agents": len(request.app.state.registry)}

    # ==================== Agent Registration ====================

    @app.post("/register", response_model=AgentRegistrationResponse)
    async def register_agent(registration: AgentRegistrationRequest, request: Request):
        """Exchange a registration token for an agent ID and credential"""
        ip = registration.ip or (request.client.host if request.client else None)
        result = request.app.state.agent_manager.register_agent(
            registration.token, registration.hostname, ip
        )

        if not result["success"]:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=result["error"])

        return AgentRegistrationResponse(client_id=result["client_id"], token=result["token"])

    @app.post("/tokens", response_model=RegistrationTokenResponse, dependencies=[Depends(require_operator)])
    async def create_registration_token(request: Request):
        """Issue a single-use registration token for a new agent"""
        record = request.app.state.agent_manager.generate_registration_token()
        return RegistrationTokenResponse(token=record.token, expires_at=record.expires_at)

    # ==================== Operator API ====================

    @app.get("/clients", response_model=List[AgentInfo], dependencies=[Depends(require_operator)])
    async def list_clients(request: Request):
        """List all registered agents with live connection state"""
        registry = request.app.state.registry
        agents = request.app.state.agent_manager.list_agents()
        return [AgentInfo.from_record(agent, registry.is_connected(agent.id)) for agent in agents]

    @app.post("/command", response_model=SubmittedCommand, dependencies=[Depends(require_operator)])
    async def send_command(command_request: CommandRequest, request: Request):
        """
        Submit a command for one agent.

        Returns immediately; status is 'executing' if the agent is connected
        and 'pending' (delivered=false) if it will be sent on reconnect.
        """
        command = request.app.state.dispatcher.submit(command_request.client_id, command_request.command)
        info = CommandInfo.from_record(command)
        return SubmittedCommand(
            **info.model_dump(),
            delivered=info.status == CommandStatus.EXECUTING,
        )

    @app.get("/commands/{client_id}", response_model=List[CommandInfo], dependencies=[Depends(require_operator)])
    async def get_commands(client_id: str, request: Request):
        """Command history for an agent, oldest first"""
        commands = request.app.state.dispatcher.history(client_id)
        return [CommandInfo.from_record(command) for command in commands]

    # ==================== Agent WebSocket ====================

    @app.websocket("/ws")
    async def agent_websocket_endpoint(websocket: WebSocket):
        """
        Persistent agent connection.

        Requires ?client_id=<id> and "Authorization: Bearer <credential>";
        refused with close code 1008 before any session exists otherwise.
        """
        state = websocket.app.state
        handler = AgentWebSocketHandler(
            websocket,
            registry=state.registry,
            dispatcher=state.dispatcher,
            agent_manager=state.agent_manager,
        )
        await handler.handle_connection()

    return app


app = create_app()


def run():
    """Console entry point: run the server with uvicorn"""
    import uvicorn

    ensure_data_dirs()
    setup_logging()
    AppConfig.validate()
    uvicorn.run(app, host=AppConfig.HOST, port=AppConfig.PORT, log_config=None)


if __name__ == "__main__":
    run()
