"""
Outbound message shapes sent to the browser client.

The front end renders terminalLog messages in an xterm-style console, so
lines use CRLF endings and status lines are coloured with ANSI escapes.
Structured results are consumed once by the UI and never appended to the
console transcript.
"""

from typing import TypedDict

from state import JobStatus

TERMINAL_LOG = "terminalLog"
GENERATION_RESULT = "generationResult"
DIAGRAM_RESULT = "diagramResult"

CRLF = "\r\n"

_ANSI_RESET = "\x1b[0m"
_STATUS_COLORS = {
    JobStatus.SUCCESS: "\x1b[32m",
    JobStatus.FAILURE: "\x1b[31m",
    JobStatus.FATAL: "\x1b[1;31m",
}

HEARTBEAT_TEXT = "...working..." + CRLF


class TerminalLogMessage(TypedDict, total=False):
    type: str
    message: str
    status: str


class GenerationResultMessage(TypedDict):
    type: str
    code: str


class DiagramResultMessage(TypedDict):
    type: str
    svgDataUri: str


OutboundMessage = TerminalLogMessage | GenerationResultMessage | DiagramResultMessage


def terminal_log(text: str) -> TerminalLogMessage:
    """A raw chunk of console text, forwarded verbatim."""
    return {"type": TERMINAL_LOG, "message": text}


def banner(text: str) -> TerminalLogMessage:
    """A framed status line, e.g. '--- Welcome! ---'."""
    return terminal_log(f"{CRLF}--- {text} ---{CRLF}")


def status_line(text: str, status: JobStatus) -> TerminalLogMessage:
    """
    The final line of a job.

    Success and failure share this exact shape; only the status field and
    the colour differ.
    """
    color = _STATUS_COLORS[status]
    return {
        "type": TERMINAL_LOG,
        "message": f"{CRLF}{color}--- {text} ---{_ANSI_RESET}{CRLF}",
        "status": status.value,
    }


def generation_result(code: str) -> GenerationResultMessage:
    return {"type": GENERATION_RESULT, "code": code}


def diagram_result(svg_data_uri: str) -> DiagramResultMessage:
    return {"type": DIAGRAM_RESULT, "svgDataUri": svg_data_uri}
