"""Parse the tool's newline-delimited JSON event stream."""

from __future__ import annotations

import codecs
import json
from dataclasses import dataclass
from typing import Any, Optional

from loguru import logger


class LineBuffer:
    """Reassemble complete lines from arbitrarily split output chunks.

    Bytes are decoded incrementally so a multi-byte character split across
    two reads is not corrupted.
    """

    def __init__(self, encoding: str = "utf-8") -> None:
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._pending = ""

    def feed(self, chunk: bytes | str) -> list[str]:
        if isinstance(chunk, bytes):
            text = self._decoder.decode(chunk)
        else:
            text = chunk
        if not text:
            return []
        self._pending += text
        parts = self._pending.split("\n")
        self._pending = parts.pop()
        return [part.rstrip("\r") for part in parts]

    def flush(self) -> Optional[str]:
        """Return the trailing incomplete fragment, if any, and reset."""
        self._pending += self._decoder.decode(b"", final=True)
        fragment, self._pending = self._pending, ""
        fragment = fragment.rstrip("\r")
        return fragment if fragment.strip() else None


def parse_event_line(line: str) -> Optional[dict[str, Any]]:
    """Parse one protocol line; return None for blank or non-JSON lines."""
    stripped = line.strip()
    if not stripped:
        return None
    try:
        event = json.loads(stripped)
    except json.JSONDecodeError:
        return None
    return event if isinstance(event, dict) else None


@dataclass(frozen=True)
class ToolUseSummary:
    event_type: str
    message: str
    metadata: dict[str, Any]


def _truncate(text: str, limit: int) -> str:
    return text[:limit] + ("..." if len(text) > limit else "")


def _basename(path: Any) -> str:
    text = str(path or "")
    return text.rsplit("/", 1)[-1] if text else "file"


def describe_tool_use(block: dict[str, Any]) -> ToolUseSummary:
    """Map an assistant `tool_use` item to a queue status event."""
    name = str(block.get("name") or "tool")
    tool_input = block.get("input") if isinstance(block.get("input"), dict) else {}
    if name == "Read":
        return ToolUseSummary("read_file", f"Reading: {_basename(tool_input.get('file_path'))}", {"file": tool_input.get("file_path")})
    if name == "Edit":
        return ToolUseSummary("edit_file", f"Editing: {_basename(tool_input.get('file_path'))}", {"file": tool_input.get("file_path")})
    if name == "Write":
        return ToolUseSummary("write_file", f"Creating: {_basename(tool_input.get('file_path'))}", {"file": tool_input.get("file_path")})
    if name == "Bash":
        command = str(tool_input.get("command") or "command")
        return ToolUseSummary("bash_command", f"Running: {_truncate(command, 50)}", {"command": command[:200]})
    if name in {"Grep", "Glob"}:
        pattern = tool_input.get("pattern") or tool_input.get("glob") or "files"
        return ToolUseSummary("search", f"Searching: {pattern}", {"pattern": pattern})
    if name == "Task":
        description = str(tool_input.get("description") or "working...")
        return ToolUseSummary(
            "progress_update",
            f"Subtask: {_truncate(description, 50)}",
            {"subagent": tool_input.get("subagent_type")},
        )
    return ToolUseSummary("progress_update", f"Using: {name}", {"tool": name})


def _content_items(event: dict[str, Any]) -> list[dict[str, Any]]:
    message = event.get("message")
    if not isinstance(message, dict):
        return []
    content = message.get("content")
    if not isinstance(content, list):
        return []
    return [item for item in content if isinstance(item, dict)]


def tool_uses(event: dict[str, Any]) -> list[ToolUseSummary]:
    if event.get("type") != "assistant":
        return []
    return [describe_tool_use(item) for item in _content_items(event) if item.get("type") == "tool_use"]


def format_progress_text(event: dict[str, Any]) -> Optional[str]:
    """Render a parsed event as short human-readable progress text."""
    event_type = event.get("type")
    if event_type == "assistant":
        parts: list[str] = []
        for item in _content_items(event):
            if item.get("type") == "text" and str(item.get("text") or "").strip():
                parts.append(str(item["text"]))
            elif item.get("type") == "tool_use":
                parts.append(f"\n{describe_tool_use(item).message}\n")
        return "".join(parts) or None
    if event_type == "error":
        error = event.get("error")
        message = error.get("message") if isinstance(error, dict) else None
        return f"\nError: {message or 'Unknown error'}\n"
    if event_type == "text":
        return str(event.get("text") or "") or None
    return None


class StreamAccumulator:
    """Fold parsed events into the session's running and final output."""

    def __init__(self) -> None:
        self.narrative: list[str] = []
        self.raw: list[str] = []
        self.result_text: Optional[str] = None
        self.model: Optional[str] = None
        self.result_meta: dict[str, Any] = {}
        self.events_seen = 0
        self.noise_lines = 0

    def handle_line(self, line: str) -> Optional[dict[str, Any]]:
        if not line.strip():
            return None
        self.raw.append(line)
        event = parse_event_line(line)
        if event is None:
            self.noise_lines += 1
            logger.debug("Non-JSON stdout line: {}", line[:100])
            return None
        self.events_seen += 1
        self._apply(event)
        return event

    def _apply(self, event: dict[str, Any]) -> None:
        event_type = event.get("type")
        if event_type == "system":
            if event.get("subtype") == "init":
                self.model = event.get("model") or self.model
                logger.info("Tool session initialized (model={})", self.model or "unknown")
            return
        if event_type == "assistant":
            for item in _content_items(event):
                if item.get("type") == "text" and item.get("text"):
                    self.narrative.append(str(item["text"]))
            return
        if event_type == "result":
            result = event.get("result")
            if isinstance(result, str) and result:
                self.result_text = result
            self.result_meta = {
                key: event.get(key)
                for key in ("subtype", "duration_ms", "num_turns", "total_cost_usd", "is_error", "error")
                if event.get(key) is not None
            }
            if event.get("is_error"):
                logger.warning("Tool reported an error result: {}", event.get("error") or event.get("subtype"))
            return

    @property
    def narrative_text(self) -> str:
        return "\n".join(self.narrative).strip()

    @property
    def raw_text(self) -> str:
        return "\n".join(self.raw)

    def final_text(self) -> str:
        """Resolve the final text: narrative, then `result` field, then raw output."""
        narrative = self.narrative_text
        if narrative:
            return narrative
        if self.result_text:
            return self.result_text
        return self.raw_text
