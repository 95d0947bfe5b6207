"""
AppConfig: Immutable application configuration.

This module contains ONLY static configuration that doesn't change while the
server runs. Per-connection and per-job state lives in state.py.

Design principles:
- Frozen dataclasses prevent accidental mutation
- Configuration loaded once at startup
- Environment variables can override config file values
- No global mutable state
"""

import json
import os
import tempfile
from dataclasses import dataclass, field

from logging_utils import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class ServerConfig:
    """Listening address and WebSocket endpoint."""
    host: str = "0.0.0.0"
    port: int = 8080
    ws_path: str = "/compile"
    # Header set by the fronting proxy; empty string trusts the socket peer only
    client_ip_header: str = "cf-connecting-ip"
    static_dir: str | None = None


@dataclass(frozen=True)
class SandboxConfig:
    """External tool execution configuration."""
    enabled: bool = True
    image: str = "yosys-compiler-img"
    render_image: str | None = None
    container_workdir: str = "/app"
    scratch_root: str = field(
        default_factory=lambda: os.path.join(tempfile.gettempdir(), "synthrelay")
    )
    yosys_binary: str = "yosys"
    render_binary: str = "netlistsvg"
    compile_script: str = "read_verilog design.v; synth_ice40; write_blif build.blif; stat"
    diagram_script: str = "read_verilog design.v; prep -auto-top; write_json netlist.json"

    @property
    def diagram_image(self) -> str:
        """Image used for the schematic render stage."""
        return self.render_image or self.image


@dataclass(frozen=True)
class RateLimitConfig:
    """Fixed-window request quota per client."""
    window_seconds: float = 60.0
    max_requests: int = 10


@dataclass(frozen=True)
class JobConfig:
    """Job runner behaviour."""
    heartbeat_interval: float = 2.0
    explain_compile_logs: bool = True
    max_log_tokens: int = 6000


@dataclass(frozen=True)
class LLMConfig:
    """Immutable LLM configuration."""
    base_url: str
    model: str
    temperature: float = 0.2

    @classmethod
    def from_env(cls) -> "LLMConfig":
        """Create LLMConfig from environment variables."""
        return cls(
            base_url=os.environ.get("OPENAI_BASE_URL") or "https://openrouter.ai/api/v1",
            model=os.environ.get("CODEGEN_MODEL_NAME") or "google/gemini-2.5-flash",
            temperature=float(os.environ.get("CODEGEN_TEMPERATURE") or 0.2),
        )


@dataclass(frozen=True)
class AppConfig:
    """
    Complete immutable application configuration.

    This is the single source of truth for all static configuration.
    Create once at startup and pass to the components that need it.
    """
    llm: LLMConfig
    server: ServerConfig = field(default_factory=ServerConfig)
    sandbox: SandboxConfig = field(default_factory=SandboxConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    jobs: JobConfig = field(default_factory=JobConfig)


def load_config(config_path: str | None = None) -> AppConfig:
    """
    Load configuration from JSON file and environment variables.

    Priority: Environment variables > Config file > Defaults

    Args:
        config_path: Path to JSON config file. Missing file means defaults.

    Returns:
        Immutable AppConfig instance.
    """
    config_data = {}
    if config_path and os.path.exists(config_path):
        try:
            with open(config_path, 'r', encoding='utf-8') as f:
                config_data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Failed to load config from %s: %s", config_path, e)

    _set_env_if_not_exists("OPENAI_API_KEY", config_data.get("OPENAI_API_KEY", ""))
    _set_env_if_not_exists("OPENAI_BASE_URL", config_data.get("OPENAI_BASE_URL", ""))
    _set_env_if_not_exists("CODEGEN_MODEL_NAME", config_data.get("CODEGEN_MODEL_NAME", ""))

    server_config = ServerConfig(
        host=config_data.get("host", "0.0.0.0"),
        port=int(os.environ.get("SYNTHRELAY_PORT") or config_data.get("port", 8080)),
        ws_path=config_data.get("ws_path", "/compile"),
        client_ip_header=config_data.get("client_ip_header", "cf-connecting-ip"),
        static_dir=config_data.get("static_dir"),
    )

    sandbox_defaults = SandboxConfig()
    sandbox_env = os.environ.get("SYNTHRELAY_SANDBOX")
    sandbox_config = SandboxConfig(
        enabled=_parse_bool(sandbox_env) if sandbox_env else config_data.get("docker_enabled", True),
        image=os.environ.get("SYNTHRELAY_DOCKER_IMAGE") or config_data.get("docker_image", sandbox_defaults.image),
        render_image=config_data.get("render_image"),
        scratch_root=config_data.get("scratch_root", sandbox_defaults.scratch_root),
        yosys_binary=config_data.get("yosys_binary", sandbox_defaults.yosys_binary),
        render_binary=config_data.get("render_binary", sandbox_defaults.render_binary),
    )

    rate_limit_config = RateLimitConfig(
        window_seconds=float(config_data.get("rate_limit_window_seconds", 60.0)),
        max_requests=int(config_data.get("rate_limit_max_requests", 10)),
    )

    job_config = JobConfig(
        heartbeat_interval=float(config_data.get("heartbeat_interval", 2.0)),
        explain_compile_logs=config_data.get("explain_compile_logs", True),
        max_log_tokens=int(config_data.get("max_log_tokens", 6000)),
    )

    return AppConfig(
        llm=LLMConfig.from_env(),
        server=server_config,
        sandbox=sandbox_config,
        rate_limit=rate_limit_config,
        jobs=job_config,
    )


def _set_env_if_not_exists(key: str, value: str) -> None:
    """Set environment variable only if not already set and value is non-empty."""
    if key not in os.environ or not os.environ[key]:
        if value:
            os.environ[key] = value


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def ensure_directories(config: AppConfig) -> None:
    """Ensure all required directories exist."""
    if not os.path.exists(config.sandbox.scratch_root):
        os.makedirs(config.sandbox.scratch_root, exist_ok=True)
        logger.info("Created directory: %s", config.sandbox.scratch_root)
