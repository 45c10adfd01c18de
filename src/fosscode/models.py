"""Core data types shared by the agent loop, tools, scheduler and message queue."""

from __future__ import annotations

import asyncio
import json
import secrets
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


def make_id(prefix: str) -> str:
    """Build an id of the form ``<prefix>_<epoch ms>_<random>``."""
    return f"{prefix}_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


@dataclass
class ToolCallRequest:
    id: str
    tool_name: str
    arguments: dict[str, Any] = field(default_factory=dict)

    def to_openai(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.tool_name, "arguments": json.dumps(self.arguments)},
        }


@dataclass(frozen=True)
class Message:
    """One entry of conversation history. Frozen: history entries are never edited in place."""

    role: str  # user | assistant | system | tool
    content: str
    timestamp: float = field(default_factory=time.time)
    tool_calls: tuple[ToolCallRequest, ...] = ()
    tool_call_id: str | None = None

    def to_openai(self) -> dict[str, Any]:
        msg: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            msg["tool_calls"] = [tc.to_openai() for tc in self.tool_calls]
        if self.tool_call_id is not None:
            msg["tool_call_id"] = self.tool_call_id
        return msg


@dataclass
class ToolResult:
    success: bool
    data: Any = None
    error: str | None = None
    metadata: dict[str, Any] | None = None

    @classmethod
    def ok(cls, data: Any = None, **metadata: Any) -> ToolResult:
        return cls(success=True, data=data, metadata=metadata or None)

    @classmethod
    def fail(cls, error: str, **metadata: Any) -> ToolResult:
        return cls(success=False, error=error, metadata=metadata or None)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"success": self.success}
        if self.data is not None:
            out["data"] = self.data
        if self.error is not None:
            out["error"] = self.error
        if self.metadata:
            out["metadata"] = self.metadata
        return out

    def to_content(self) -> str:
        """Serialize for a ``role: tool`` history message."""
        return json.dumps(self.to_dict(), default=str)


@dataclass
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def add(self, other: Usage | None) -> None:
        if other is None:
            return
        self.prompt_tokens += other.prompt_tokens
        self.completion_tokens += other.completion_tokens
        self.total_tokens += other.total_tokens


@dataclass
class BackendResponse:
    content: str
    usage: Usage | None = None
    finish_reason: str = "stop"
    tool_calls: list[ToolCallRequest] = field(default_factory=list)


class CancellationLevel(str, Enum):
    COMMAND = "command"
    FULL = "full"


class CancellationToken:
    """Cooperative cancellation flag.

    Components read ``is_cancelled`` between operations, or race ``wait()``
    against an awaitable. Only the CancellationController mutates a token.
    """

    def __init__(self) -> None:
        self.is_cancelled = False
        self.level: CancellationLevel | None = None
        self.reason: str | None = None
        self._event = asyncio.Event()

    def _set(self, level: CancellationLevel, reason: str) -> None:
        self.is_cancelled = True
        self.level = level
        self.reason = reason
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def __repr__(self) -> str:
        return f"CancellationToken(is_cancelled={self.is_cancelled}, level={self.level}, reason={self.reason!r})"


class TaskPriority(str, Enum):
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def rank(self) -> int:
        return {"high": 0, "normal": 1, "low": 2}[self.value]


class TaskStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED)


@dataclass
class TaskOutput:
    type: str  # stdout | stderr | progress | result | error
    content: str
    timestamp: float = field(default_factory=time.time)


@dataclass
class BackgroundTask:
    id: str
    name: str
    description: str
    config: dict[str, Any] = field(default_factory=dict)
    priority: TaskPriority = TaskPriority.NORMAL
    status: TaskStatus = TaskStatus.QUEUED
    progress: int = 0
    created_at: float = field(default_factory=time.time)
    started_at: float | None = None
    completed_at: float | None = None
    error: str | None = None
    result: Any = None
    timeout: float | None = None  # seconds
    parent_task_id: str | None = None
    child_task_ids: list[str] = field(default_factory=list)
    retry_count: int = 0
    max_retries: int = 0
    output: list[TaskOutput] = field(default_factory=list)


class MessageStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class QueuedMessage:
    id: str
    message: str
    options: dict[str, Any] = field(default_factory=dict)
    status: MessageStatus = MessageStatus.QUEUED
    response: Any = None
    error: str | None = None
    created_at: float = field(default_factory=time.time)


class SubagentStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class Subagent:
    id: str
    name: str
    instructions: str
    task_id: str
    status: SubagentStatus = SubagentStatus.ACTIVE
    created_at: float = field(default_factory=time.time)
    last_response: str = ""
