"""frp server-plugin message definitions.

frps posts one JSON envelope per control event::

    {"version": "0.1.0", "op": "Login", "content": {...}}

and expects a JSON response telling it whether to reject the operation.
Each supported ``op`` has its own content model; the envelope is parsed as a
discriminated union on ``op``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

REQUEST_ID_HEADER = "x-frp-reqid"
UNKNOWN_REQUEST_ID = "unknown"


class EventError(Exception):
    """Base class for control events that cannot be evaluated."""


class UnknownOperationError(EventError):
    """The envelope names an operation this gateway does not handle."""

    def __init__(self, op: Any) -> None:
        super().__init__(f"unknown operation: {op}")
        self.op = op


class EventValidationError(EventError):
    """The content of a known operation has the wrong shape."""

    def __init__(self, op: str, detail: str) -> None:
        super().__init__(f"invalid {op} content")
        self.op = op
        self.detail = detail


class _Content(BaseModel):
    model_config = ConfigDict(extra="allow")


class UserInfo(_Content):
    """Identity block frps embeds in every post-login operation."""

    user: str | None = None
    metas: dict[str, str] | None = None
    run_id: str | None = None


class LoginContent(_Content):
    version: str | None = None
    hostname: str | None = None
    os: str | None = None
    arch: str | None = None
    user: str | None = None
    timestamp: int | None = None
    privilege_key: str | None = None
    run_id: str | None = None
    pool_count: int | None = None
    metas: dict[str, str] | None = None
    client_address: str | None = None

    @property
    def token(self) -> str | None:
        return (self.metas or {}).get("token")


class NewProxyContent(_Content):
    user: UserInfo | None = None
    proxy_name: str | None = None
    proxy_type: str | None = None
    subdomain: str | None = None
    custom_domains: list[str] | None = None
    remote_port: int | None = None
    metas: dict[str, str] | None = None


class CloseProxyContent(_Content):
    user: UserInfo | None = None
    proxy_name: str | None = None


class PingContent(_Content):
    user: UserInfo | None = None
    timestamp: int | None = None
    privilege_key: str | None = None


class NewWorkConnContent(_Content):
    user: UserInfo | None = None
    run_id: str | None = None
    timestamp: int | None = None
    privilege_key: str | None = None


class NewUserConnContent(_Content):
    user: UserInfo | None = None
    proxy_name: str | None = None
    proxy_type: str | None = None
    remote_addr: str | None = None


class _Event(BaseModel):
    model_config = ConfigDict(extra="allow")

    version: str | None = None

    @property
    def user(self) -> str | None:
        """User id of the session this event belongs to."""
        info = getattr(self.content, "user", None)
        return info.user if isinstance(info, UserInfo) else None


class LoginEvent(_Event):
    op: Literal["Login"] = "Login"
    content: LoginContent = Field(default_factory=LoginContent)

    @property
    def user(self) -> str | None:
        return self.content.user


class NewProxyEvent(_Event):
    op: Literal["NewProxy"] = "NewProxy"
    content: NewProxyContent = Field(default_factory=NewProxyContent)


class CloseProxyEvent(_Event):
    op: Literal["CloseProxy"] = "CloseProxy"
    content: CloseProxyContent = Field(default_factory=CloseProxyContent)


class PingEvent(_Event):
    op: Literal["Ping"] = "Ping"
    content: PingContent = Field(default_factory=PingContent)


class NewWorkConnEvent(_Event):
    op: Literal["NewWorkConn"] = "NewWorkConn"
    content: NewWorkConnContent = Field(default_factory=NewWorkConnContent)


class NewUserConnEvent(_Event):
    op: Literal["NewUserConn"] = "NewUserConn"
    content: NewUserConnContent = Field(default_factory=NewUserConnContent)


ControlEvent = Annotated[
    LoginEvent
    | NewProxyEvent
    | CloseProxyEvent
    | PingEvent
    | NewWorkConnEvent
    | NewUserConnEvent,
    Field(discriminator="op"),
]

OPERATIONS = frozenset(
    {"Login", "NewProxy", "CloseProxy", "Ping", "NewWorkConn", "NewUserConn"}
)

_event_adapter: TypeAdapter[ControlEvent] = TypeAdapter(ControlEvent)


def parse_event(body: Any) -> ControlEvent:
    """Parse a plugin request body into a typed control event.

    A missing or null ``content`` is treated as an empty object so that the
    per-operation rules report what is missing.

    Raises:
        UnknownOperationError: If ``op`` is not one of the six operations.
        EventValidationError: If the content does not fit the operation.
    """
    if not isinstance(body, dict):
        raise UnknownOperationError(None)
    op = body.get("op")
    if not isinstance(op, str) or op not in OPERATIONS:
        raise UnknownOperationError(op)

    data = dict(body)
    if data.get("content") is None:
        data.pop("content", None)
    try:
        return _event_adapter.validate_python(data)
    except ValidationError as e:
        raise EventValidationError(op, str(e)) from e


@dataclass(frozen=True)
class Verdict:
    """Accept/reject decision for one control event."""

    accept: bool
    reason: str | None = None

    @classmethod
    def allow(cls) -> Verdict:
        return cls(accept=True)

    @classmethod
    def reject(cls, reason: str) -> Verdict:
        return cls(accept=False, reason=reason)

    def to_dict(self) -> dict[str, Any]:
        """Encode as the plugin response body.

        ``unchange`` tells frps to keep the event content as sent; this
        gateway only gates operations, it never rewrites them.
        """
        if self.accept:
            return {"reject": False, "unchange": True}
        return {"reject": True, "reject_reason": self.reason}
