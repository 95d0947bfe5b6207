"""
SynthRelay: WebSocket relay between a browser HDL editor and external tools.

A browser client sends Verilog source or a natural-language prompt over a
WebSocket; the backend runs Yosys (and netlistsvg) in a Docker sandbox or
calls a hosted language model, and streams the raw output back.

Key design principles:
1. No global mutable state - rate-limit table and sessions are owned objects
2. Explicit dependencies via the Dependencies container
3. Each job kind is a declared list of stages run by one runner
4. Every job ends in exactly one status line and a removed scratch directory

Modules:
- config.py: Immutable AppConfig, ServerConfig, SandboxConfig, LLMConfig
- state.py: JobKind, Job, ClientSession, InboundRequest
- messages.py: Outbound message shapes
- rate_limiter.py: Fixed-window RateLimiter
- relay.py: ResultRelay, ordered fire-and-forget delivery
- pipeline.py: Stages, PIPELINES registry and JobRunner
- llm.py: LLMClient for code generation and log explanation
- server.py: Dispatcher and FastAPI app
- main.py: CLI entry point
"""

from state import Job, JobKind, JobStatus, InboundRequest
from config import AppConfig, load_config
from llm import LLMClient
from rate_limiter import RateLimiter
from relay import ResultRelay
from pipeline import JobRunner, PIPELINES
from server import Dependencies, create_app

__all__ = [
    # State
    "Job",
    "JobKind",
    "JobStatus",
    "InboundRequest",
    # Config
    "AppConfig",
    "load_config",
    # LLM
    "LLMClient",
    # Core
    "RateLimiter",
    "ResultRelay",
    "JobRunner",
    "PIPELINES",
    # Server
    "Dependencies",
    "create_app",
]
