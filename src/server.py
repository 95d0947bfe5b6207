"""
Server: WebSocket connection dispatcher.

Accepts browser connections on the configured path, admits each request
through the rate limiter and hands it to the job runner. Jobs run as
background tasks: the connection keeps reading while a job is in flight,
and a job keeps running (with its messages dropped) after the client
disconnects.
"""

import asyncio
import os
import secrets
from contextlib import asynccontextmanager
from dataclasses import dataclass

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.staticfiles import StaticFiles
from pydantic import ValidationError

import messages
from config import AppConfig
from llm import LLMClient
from logging_utils import SessionLogger, get_logger
from pipeline import JobRunner
from rate_limiter import RateLimiter
from relay import ResultRelay
from state import ClientSession, InboundRequest, Job, PAYLOAD_FIELDS

logger = get_logger(__name__)

WELCOME_TEXT = "Welcome! Connected to compiler backend."


@dataclass
class Dependencies:
    """
    All collaborators of the dispatcher.

    Built once at startup, passed to create_app(). Makes testing easy -
    just swap in fakes.
    """
    config: AppConfig
    llm: LLMClient
    rate_limiter: RateLimiter
    relay: ResultRelay
    runner: JobRunner


def create_dependencies(config: AppConfig, llm: LLMClient | None = None) -> Dependencies:
    """Wire the default collaborators for config."""
    if llm is None:
        llm = LLMClient(config.llm, max_log_tokens=config.jobs.max_log_tokens)
    return Dependencies(
        config=config,
        llm=llm,
        rate_limiter=RateLimiter(config.rate_limit),
        relay=ResultRelay(),
        runner=JobRunner(config, llm),
    )


def client_identity(websocket: WebSocket, trusted_header: str) -> str | None:
    """
    Derive the rate-limit identity for a connection.

    The proxy header wins when one is configured and present; otherwise the
    transport peer address is used. None means unidentifiable.
    """
    if trusted_header:
        forwarded = websocket.headers.get(trusted_header, "").strip()
        if forwarded:
            return forwarded
    if websocket.client is not None and websocket.client.host:
        return websocket.client.host
    return None


async def _receive_message(websocket: WebSocket) -> str:
    """Next inbound frame as text; binary frames are decoded as UTF-8."""
    message = await websocket.receive()
    if message["type"] == "websocket.disconnect":
        raise WebSocketDisconnect(message.get("code", 1000))
    if message.get("text") is not None:
        return message["text"]
    return (message.get("bytes") or b"").decode("utf-8", errors="replace")


class Dispatcher:
    """Routes inbound messages of one server to the job runner."""

    def __init__(self, deps: Dependencies):
        self.deps = deps
        self.sessions: dict[str, ClientSession] = {}
        self._jobs: set[asyncio.Task] = set()

    async def serve(self, websocket: WebSocket) -> None:
        """Handle one connection from accept to close."""
        await websocket.accept()
        session = ClientSession(
            session_id=secrets.token_hex(8),
            client_id=client_identity(websocket, self.deps.config.server.client_ip_header),
            connection=websocket,
        )
        self.sessions[session.session_id] = session
        self.deps.relay.register(session.session_id, websocket)
        log = SessionLogger(logger, session.session_id, session.client_id)
        log.info("Client connected")
        self.deps.relay.send(session.session_id, messages.banner(WELCOME_TEXT))

        try:
            while True:
                raw = await _receive_message(websocket)
                self.handle_message(session, raw)
        except WebSocketDisconnect:
            log.info("Client disconnected")
        except Exception:
            log.exception("WebSocket error")
        finally:
            await self.deps.relay.unregister(session.session_id)
            self.sessions.pop(session.session_id, None)

    def handle_message(self, session: ClientSession, raw: str) -> Job | None:
        """
        Parse, admit and start one request.

        Returns:
            The started Job, or None if nothing was started.
        """
        relay = self.deps.relay
        log = SessionLogger(logger, session.session_id, session.client_id)
        try:
            request = InboundRequest.model_validate_json(raw)
        except ValidationError as e:
            log.warning("Malformed message: %s", e.errors()[:1])
            relay.send(session.session_id, messages.banner("ERROR: Could not parse request."))
            return None

        kind = request.kind
        if kind is None:
            log.debug("Ignoring message with type %r", request.type)
            return None

        payload = request.payload_for(kind)
        if payload is None:
            field_name = PAYLOAD_FIELDS[kind]
            relay.send(
                session.session_id,
                messages.banner(f"ERROR: '{field_name}' is required for {request.type} requests."),
            )
            return None

        if not session.client_id:
            relay.send(session.session_id, messages.banner("ERROR: Could not identify your IP."))
            return None

        if not self.deps.rate_limiter.admit(session.client_id):
            relay.send(session.session_id, messages.banner("ERROR: Too many requests."))
            relay.send(
                session.session_id,
                messages.terminal_log(
                    f"Please wait {self.deps.config.rate_limit.window_seconds:g} seconds and try again.{messages.CRLF}"
                ),
            )
            return None

        job = Job(kind=kind, payload=payload, session_id=session.session_id)
        session.jobs_started += 1
        log.info("Starting %s job #%d", kind.name.lower(), session.jobs_started)
        self._start(job)
        return job

    @property
    def jobs_in_flight(self) -> int:
        return len(self._jobs)

    def _start(self, job: Job) -> None:
        relay = self.deps.relay

        def forward(message):
            relay.send(job.session_id, message)

        task = asyncio.create_task(self.deps.runner.run(job, forward, forward))
        self._jobs.add(task)
        task.add_done_callback(self._jobs.discard)

    async def drain(self) -> None:
        """Wait for every in-flight job to finish."""
        while self._jobs:
            await asyncio.gather(*list(self._jobs))


def create_app(config: AppConfig, deps: Dependencies | None = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        config: Application configuration.
        deps: Collaborators; the defaults from create_dependencies() if None.
    """
    if deps is None:
        deps = create_dependencies(config)

    dispatcher = Dispatcher(deps)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        if dispatcher.jobs_in_flight:
            logger.info("Waiting for %d job(s) to finish", dispatcher.jobs_in_flight)
        await dispatcher.drain()

    app = FastAPI(title="SynthRelay", lifespan=lifespan)
    app.state.deps = deps
    app.state.dispatcher = dispatcher

    @app.websocket(config.server.ws_path)
    async def compile_endpoint(websocket: WebSocket):
        await dispatcher.serve(websocket)

    @app.get("/healthz")
    async def healthz():
        return {"status": "ok", "jobs_in_flight": dispatcher.jobs_in_flight}

    static_dir = config.server.static_dir
    if static_dir:
        if os.path.isdir(static_dir):
            app.mount("/", StaticFiles(directory=static_dir, html=True), name="static")
        else:
            logger.warning("Static directory not found, not serving it: %s", static_dir)

    return app

