"""
Shared test fixtures and utilities for SynthRelay tests.

This module provides:
- Fake yosys / netlistsvg executables (no Docker or EDA tools needed)
- AppConfig fixtures pointing at those fakes
- A mock LLM client
- Helpers to run a job and collect every message it produced
"""

import asyncio
import os
import stat
import sys
from unittest.mock import AsyncMock, Mock

import pytest

# Add src to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


# =============================================================================
# Fake External Tools
# =============================================================================

FAKE_YOSYS = """#!__PYTHON__
import json
import re
import sys
import time

script = sys.argv[sys.argv.index("-p") + 1] if "-p" in sys.argv else ""
with open("design.v", encoding="utf-8") as f:
    source = f.read()

delay = re.search(r"// delay ([0-9.]+)", source)
if delay:
    time.sleep(float(delay.group(1)))

print("-- Parsing `design.v' using frontend `verilog' --", flush=True)
if "syntax_error" in source:
    print("ERROR: syntax error, unexpected TOK_ENDMODULE", file=sys.stderr, flush=True)
    sys.exit(1)
if "write_json" in script and "no-netlist" not in source:
    with open("netlist.json", "w", encoding="utf-8") as f:
        json.dump({"modules": {}, "source": source}, f)
print("=== design hierarchy ===", flush=True)
print("   Number of cells:                  3", flush=True)
"""

FAKE_NETLISTSVG = """#!__PYTHON__
import os
import sys

here = os.path.dirname(os.path.abspath(__file__))
with open(os.path.join(here, "render_calls.log"), "a", encoding="utf-8") as log:
    log.write(os.getcwd() + "\\n")

netlist = sys.argv[1]
out = sys.argv[sys.argv.index("-o") + 1]
with open(netlist, encoding="utf-8") as f:
    data = f.read()
if "fail-render" in data:
    print("Error: cannot lay out netlist", file=sys.stderr)
    sys.exit(2)
if "no-svg" not in data:
    with open(out, "w", encoding="utf-8") as f:
        f.write('<svg xmlns="http://www.w3.org/2000/svg"></svg>')
"""

FAKE_DOCKER_DOWN = """#!__PYTHON__
import sys
print("docker: Cannot connect to the Docker daemon.", file=sys.stderr)
sys.exit(125)
"""

VALID_VERILOG = """module mux2 (input a, input b, input sel, output y);
  assign y = sel ? b : a;
endmodule
"""

BROKEN_VERILOG = """module broken (input a, output y);
  assign y = a  // syntax_error
endmodule
"""


def write_executable(path, body: str) -> str:
    """Write a Python script with a shebang for this interpreter and chmod +x."""
    path = str(path)
    with open(path, "w", encoding="utf-8") as f:
        f.write(body.replace("__PYTHON__", sys.executable))
    os.chmod(path, os.stat(path).st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture
def fake_tools(tmp_path):
    """Executable stand-ins for yosys and netlistsvg."""
    tools_dir = tmp_path / "tools"
    tools_dir.mkdir()
    return {
        "dir": str(tools_dir),
        "yosys": write_executable(tools_dir / "yosys", FAKE_YOSYS),
        "netlistsvg": write_executable(tools_dir / "netlistsvg", FAKE_NETLISTSVG),
        "docker_down": write_executable(tools_dir / "docker_down", FAKE_DOCKER_DOWN),
        "render_log": str(tools_dir / "render_calls.log"),
    }


# =============================================================================
# Fixtures: Config
# =============================================================================

@pytest.fixture
def mock_llm_config():
    """Create an LLMConfig for testing."""
    from config import LLMConfig
    return LLMConfig(
        base_url="https://test.api.com",
        model="test-model",
        temperature=0.1,
    )


@pytest.fixture
def scratch_root(tmp_path):
    return str(tmp_path / "scratch")


@pytest.fixture
def app_config(mock_llm_config, fake_tools, scratch_root):
    """AppConfig wired to the fake tools, sandbox off, fast heartbeat."""
    from config import AppConfig, SandboxConfig, JobConfig, RateLimitConfig
    return AppConfig(
        llm=mock_llm_config,
        sandbox=SandboxConfig(
            enabled=False,
            scratch_root=scratch_root,
            yosys_binary=fake_tools["yosys"],
            render_binary=fake_tools["netlistsvg"],
        ),
        rate_limit=RateLimitConfig(window_seconds=60.0, max_requests=10),
        jobs=JobConfig(heartbeat_interval=0.05, explain_compile_logs=False),
    )


# =============================================================================
# Fixtures: LLM
# =============================================================================

@pytest.fixture
def mock_llm():
    """LLM client double with async methods."""
    llm = Mock()
    llm.generate_code = AsyncMock(
        return_value="module mux2 (input a, input b, input sel, output y);\n"
                     "  assign y = sel ? b : a;\nendmodule"
    )
    llm.explain_log = AsyncMock(return_value="Yosys parsed and synthesized the design.")
    return llm


# =============================================================================
# Helpers
# =============================================================================

class MessageRecorder:
    """Collects everything a job emits, in order."""

    def __init__(self):
        self.messages = []
        self.final = []

    def on_output(self, message):
        self.messages.append(message)

    def on_done(self, message):
        self.messages.append(message)
        self.final.append(message)

    def of_type(self, type_name):
        return [m for m in self.messages if m["type"] == type_name]

    @property
    def text(self) -> str:
        return "".join(m.get("message", "") for m in self.messages)


def run_job(runner, job, after=None):
    """
    Run job to completion on a fresh event loop.

    Args:
        after: Optional seconds to keep the loop alive after the job ends,
            to catch late timer callbacks.
    """
    recorder = MessageRecorder()

    async def _go():
        status = await runner.run(job, recorder.on_output, recorder.on_done)
        if after:
            count = len(recorder.messages)
            await asyncio.sleep(after)
            recorder.late = recorder.messages[count:]
        return status

    recorder.status = asyncio.run(_go())
    return recorder


@pytest.fixture
def recorder():
    return MessageRecorder()
