"""Hierarchical progress reporting.

A progress tree is passed into every build and push task as a capability
instead of writing to global console state. Each node has a name, can
spawn named children, emits leveled messages and counts ticks toward an
optional total. Messages are kept in a bounded buffer on the root (for
renderers and tests) and forwarded to structlog.

Example:
    >>> root = ProgressTree()
    >>> build = root.add_child("build")
    >>> web = build.add_child("web")
    >>> web.init(total=3)
    >>> web.info("starting builder")
    >>> web.inc()
    >>> web.done("build finished")
    >>> [m.text for m in root.messages]
    ['starting builder', 'build finished']
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

import structlog

logger = structlog.get_logger(__name__)

DEFAULT_MESSAGE_CAPACITY = 200
"""Number of messages retained by a progress tree."""


class MessageLevel(str, Enum):
    """Severity of a progress message."""

    INFO = "info"
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass(frozen=True)
class Message:
    """A single message emitted by a progress node.

    Attributes:
        origin: Path of the emitting node, joined with " › ".
        level: Message severity.
        text: Message text.
        time: UTC timestamp of emission.
    """

    origin: str
    level: MessageLevel
    text: str
    time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class Progress:
    """One node of a progress tree.

    Nodes are created through ``ProgressTree.add_child`` or
    ``Progress.add_child``; they should not be instantiated directly.
    """

    def __init__(self, tree: ProgressTree, name: str, parent: Progress | None = None) -> None:
        self._tree = tree
        self._name = name
        self._parent = parent
        self._children: list[Progress] = []
        self._step = 0
        self._total: int | None = None

    @property
    def name(self) -> str:
        """Return the node name."""
        return self._name

    @property
    def path(self) -> str:
        """Return the full path of this node from the root."""
        if self._parent is None:
            return self._name
        return f"{self._parent.path} › {self._name}"

    @property
    def children(self) -> list[Progress]:
        """Return the children of this node."""
        return list(self._children)

    @property
    def step(self) -> int:
        """Return the number of ticks counted so far."""
        return self._step

    @property
    def total(self) -> int | None:
        """Return the expected number of ticks, if known."""
        return self._total

    def add_child(self, name: str) -> Progress:
        """Create a named child node."""
        child = Progress(self._tree, name, parent=self)
        self._children.append(child)
        return child

    def set_name(self, name: str) -> None:
        """Rename this node."""
        self._name = name

    def init(self, total: int | None = None) -> None:
        """Reset the tick counter and set the expected total."""
        self._step = 0
        self._total = total

    def inc(self, by: int = 1) -> None:
        """Count ``by`` ticks."""
        self._step += by

    def message(self, level: MessageLevel, text: str) -> None:
        """Emit a leveled message."""
        self._tree.record(Message(origin=self.path, level=level, text=text))

    def info(self, text: str) -> None:
        """Emit an informational message."""
        self.message(MessageLevel.INFO, text)

    def done(self, text: str) -> None:
        """Emit a success message."""
        self.message(MessageLevel.SUCCESS, text)

    def fail(self, text: str) -> None:
        """Emit a failure message."""
        self.message(MessageLevel.FAILURE, text)


class ProgressTree:
    """Root of a progress tree.

    Attributes:
        capacity: Maximum number of messages retained.
    """

    def __init__(self, capacity: int = DEFAULT_MESSAGE_CAPACITY) -> None:
        self.capacity = capacity
        self._messages: deque[Message] = deque(maxlen=capacity)
        self._children: list[Progress] = []

    @property
    def messages(self) -> list[Message]:
        """Return the retained messages, oldest first."""
        return list(self._messages)

    @property
    def children(self) -> list[Progress]:
        """Return the top-level nodes."""
        return list(self._children)

    def add_child(self, name: str) -> Progress:
        """Create a top-level node."""
        child = Progress(self, name)
        self._children.append(child)
        return child

    def record(self, message: Message) -> None:
        """Store a message and forward it to the log."""
        self._messages.append(message)

        log = logger.bind(progress=message.origin)
        if message.level is MessageLevel.FAILURE:
            log.warning(message.text)
        else:
            log.info(message.text, message_level=message.level.value)


__all__ = [
    "DEFAULT_MESSAGE_CAPACITY",
    "Message",
    "MessageLevel",
    "Progress",
    "ProgressTree",
]
