"""
Main entry point for SynthRelay.

This module wires together all components and starts the server.

Usage:
    # Command line
    python main.py --config synthrelay.json --port 8080

    # Programmatic
    from main import build_app
    app = build_app(load_config("synthrelay.json"))
"""

import argparse
import sys
from dataclasses import replace

import uvicorn
from fastapi import FastAPI

from config import AppConfig, load_config, ensure_directories
from logging_utils import configure_logging, get_logger, set_verbose
from server import create_app

logger = get_logger(__name__)


def build_app(config: AppConfig) -> FastAPI:
    """
    Create the ASGI application for config.

    Args:
        config: Application configuration.

    Returns:
        FastAPI app with the WebSocket endpoint mounted.
    """
    ensure_directories(config)
    return create_app(config)


def apply_cli_overrides(config: AppConfig, args: argparse.Namespace) -> AppConfig:
    """Return config with command-line flags applied on top."""
    server = config.server
    if args.host:
        server = replace(server, host=args.host)
    if args.port:
        server = replace(server, port=args.port)
    if args.static_dir:
        server = replace(server, static_dir=args.static_dir)

    sandbox = config.sandbox
    if args.no_sandbox:
        sandbox = replace(sandbox, enabled=False)

    return replace(config, server=server, sandbox=sandbox)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="SynthRelay: stream Yosys synthesis and LLM code generation to a browser"
    )
    parser.add_argument("--config", type=str, default=None,
                        help="Path to JSON configuration file")
    parser.add_argument("--host", type=str, default=None,
                        help="Interface to listen on")
    parser.add_argument("--port", type=int, default=None,
                        help="Port to listen on")
    parser.add_argument("--static-dir", type=str, default=None,
                        help="Directory with the browser front end to serve at /")
    parser.add_argument("--no-sandbox", action="store_true",
                        help="Run yosys/netlistsvg directly instead of inside Docker")
    parser.add_argument("--verbose", "-v", action="store_true",
                        help="Enable debug logging")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    configure_logging()
    set_verbose(args.verbose)

    config = apply_cli_overrides(load_config(args.config), args)
    app = build_app(config)

    logger.info("Backend server starting on http://%s:%d", config.server.host, config.server.port)
    logger.info("WebSocket endpoint: ws://%s:%d%s",
                config.server.host, config.server.port, config.server.ws_path)
    if not config.sandbox.enabled:
        logger.warning("Sandbox disabled: user designs run directly on this host")

    uvicorn.run(app, host=config.server.host, port=config.server.port, log_level="info")
    return 0


if __name__ == "__main__":
    sys.exit(main())
