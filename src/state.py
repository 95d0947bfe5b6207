"""
State: Per-connection and per-job data for the relay.

Job is the single container passed through every pipeline stage, in the same
spirit as an explicit task state: stages read the payload and append to the
output buffer instead of sharing module-level variables.

Design:
- JobKind is the one tagged selector every request kind maps to
- InboundRequest validates the raw client message (pydantic)
- Job and ClientSession are plain mutable dataclasses owned by exactly one
  coroutine each, so no locking is needed
"""

from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any

from pydantic import BaseModel, ConfigDict


class JobKind(Enum):
    """What the client asked for."""
    COMPILE = auto()
    GENERATE_CODE = auto()
    GENERATE_DIAGRAM = auto()


class JobState(Enum):
    """Lifecycle of a job. Errors jump straight to CLEANED."""
    CREATED = auto()
    SCRATCH_ALLOCATED = auto()
    RUNNING = auto()
    CLEANED = auto()
    DONE = auto()


class JobStatus(str, Enum):
    """Outcome reported in the final status line."""
    SUCCESS = "success"
    FAILURE = "failure"
    FATAL = "fatal"


# Wire name -> job kind
REQUEST_KINDS: dict[str, JobKind] = {
    "compile": JobKind.COMPILE,
    "generate": JobKind.GENERATE_CODE,
    "generateDiagram": JobKind.GENERATE_DIAGRAM,
}

# Field of InboundRequest that carries each kind's payload
PAYLOAD_FIELDS: dict[JobKind, str] = {
    JobKind.COMPILE: "code",
    JobKind.GENERATE_CODE: "prompt",
    JobKind.GENERATE_DIAGRAM: "code",
}


class InboundRequest(BaseModel):
    """A message received from the browser client."""
    model_config = ConfigDict(extra="ignore")

    type: str | None = None
    code: str | None = None
    prompt: str | None = None

    @property
    def kind(self) -> JobKind | None:
        """Job kind for this request, or None for unknown/missing types."""
        if self.type is None:
            return None
        return REQUEST_KINDS.get(self.type)

    def payload_for(self, kind: JobKind) -> str | None:
        """Return the non-empty payload the given kind needs, if present."""
        value = getattr(self, PAYLOAD_FIELDS[kind])
        return value if value else None


@dataclass
class Job:
    """
    One client request and its full execution lifecycle.

    work_dir is set once the scratch directory exists. It keeps pointing at
    the (removed) path after cleanup; state tells whether it is still live.
    """
    kind: JobKind
    payload: str
    session_id: str = ""
    work_dir: str | None = None
    output_buffer: list[str] = field(default_factory=list)
    state: JobState = JobState.CREATED
    exit_code: int | None = None
    status: JobStatus | None = None

    @property
    def output(self) -> str:
        """Everything the external processes have printed so far."""
        return "".join(self.output_buffer)

    def record_output(self, text: str) -> None:
        self.output_buffer.append(text)


@dataclass
class ClientSession:
    """A single open WebSocket connection."""
    session_id: str
    client_id: str | None
    connection: Any = None
    jobs_started: int = 0
