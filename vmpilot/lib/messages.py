"""Typed views of the records exchanged with child processes.

The supervisor only interprets a handful of shapes. Everything else is
carried as ``Opaque`` so fields defined by the test runner or backend
protocols survive a round trip through the supervisor untouched.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union


@dataclass(frozen=True)
class Request:
    """``{"cmd": ..., "arguments": {...}}``"""

    cmd: str
    arguments: dict[str, Any] = field(default_factory=dict)
    extra: dict[str, Any] = field(default_factory=dict)

    def to_wire(self) -> dict[str, Any]:
        return {**self.extra, "cmd": self.cmd, "arguments": self.arguments}


@dataclass(frozen=True)
class Response:
    """``{"ret": ...}``: answer to a request, as seen by the requester."""

    ret: Any = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_wire(self) -> dict[str, Any]:
        return {**self.extra, "ret": self.ret}


@dataclass(frozen=True)
class BackendReply:
    """``{"rsp": ...}``: answer written by the backend process."""

    rsp: Any = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_wire(self) -> dict[str, Any]:
        return {**self.extra, "rsp": self.rsp}


@dataclass(frozen=True)
class ScreenCheckResult:
    """Outcome of one ``check_asserted_screen`` round."""

    found: Any = None
    timeout: bool = False
    tags: list[str] | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def conclusive(self) -> bool:
        """A match was found or the check ran out of time."""
        return bool(self.found) or bool(self.timeout)

    def with_tags(self, tags: list[str] | None) -> ScreenCheckResult:
        return ScreenCheckResult(self.found, self.timeout, tags, self.extra)

    def to_wire(self) -> dict[str, Any]:
        data = dict(self.extra)
        if self.found is not None:
            data["found"] = self.found
        if self.timeout:
            data["timeout"] = self.timeout
        if self.tags is not None:
            data["tags"] = self.tags
        return data


@dataclass(frozen=True)
class Opaque:
    """Any record the supervisor does not interpret."""

    data: dict[str, Any] = field(default_factory=dict)

    def to_wire(self) -> dict[str, Any]:
        return dict(self.data)


Message = Union[Request, Response, BackendReply, ScreenCheckResult, Opaque]


def _rest(data: dict[str, Any], *keys: str) -> dict[str, Any]:
    return {k: v for k, v in data.items() if k not in keys}


def parse_message(data: dict[str, Any]) -> Message:
    """Classify a decoded record. Never drops fields."""
    if isinstance(data.get("cmd"), str):
        arguments = data.get("arguments")
        if not isinstance(arguments, dict):
            arguments = {}
        return Request(data["cmd"], arguments, _rest(data, "cmd", "arguments"))
    if "ret" in data:
        return Response(data["ret"], _rest(data, "ret"))
    if "rsp" in data:
        return BackendReply(data["rsp"], _rest(data, "rsp"))
    if "found" in data or "timeout" in data:
        return parse_screen_check(data)
    return Opaque(dict(data))


def parse_screen_check(data: Any) -> ScreenCheckResult:
    """Build a ScreenCheckResult from whatever the backend answered."""
    if not isinstance(data, dict):
        return ScreenCheckResult()
    tags = data.get("tags")
    return ScreenCheckResult(
        found=data.get("found"),
        timeout=bool(data.get("timeout")),
        tags=list(tags) if isinstance(tags, (list, tuple)) else None,
        extra=_rest(data, "found", "timeout", "tags"),
    )
