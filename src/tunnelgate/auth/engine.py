"""Authorization of frp control events.

``AuthorizationEngine.evaluate`` is a synchronous decision over one
configuration snapshot: it never awaits, so concurrent control events cannot
interleave partial validation. The only side effect, recording a successful
login, is returned as data and applied by ``authorize``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import structlog

from tunnelgate.core.store import ConfigError
from tunnelgate.protocol.messages import (
    CloseProxyEvent,
    ControlEvent,
    EventError,
    LoginEvent,
    NewProxyEvent,
    NewUserConnEvent,
    NewWorkConnEvent,
    PingEvent,
    Verdict,
    parse_event,
)

if TYPE_CHECKING:
    from tunnelgate.core.config import Configuration
    from tunnelgate.core.store import ConfigStore

logger = structlog.get_logger()

UNKNOWN_IP = "unknown"


def extract_ip(client_address: str | None) -> str:
    """Strip the port from a client address.

    Handles ``host:port``, bracketed IPv6 (``[::1]:7000``) and bare IPv6
    addresses, which contain colons but no port.
    """
    if not client_address:
        return UNKNOWN_IP
    if client_address.startswith("["):
        host, sep, _ = client_address[1:].partition("]")
        return host if sep else client_address
    if client_address.count(":") == 1:
        return client_address.split(":", 1)[0]
    return client_address


@dataclass(frozen=True)
class ActivityUpdate:
    """Request to record a successful login."""

    user: str
    ip: str
    at: datetime


@dataclass(frozen=True)
class Decision:
    """Verdict plus the activity update it requires, if any."""

    verdict: Verdict
    activity: ActivityUpdate | None = None


class AuthorizationEngine:
    """Decides whether frps may proceed with a control event."""

    def __init__(self, store: ConfigStore) -> None:
        self._store = store

    def evaluate(self, event: ControlEvent, req_id: str, now: datetime | None = None) -> Decision:
        config = self._store.config
        if isinstance(event, LoginEvent):
            return self._login(config, event, req_id, now or datetime.now(UTC))
        if isinstance(event, NewProxyEvent):
            return Decision(self._new_proxy(config, event, req_id))
        if isinstance(event, CloseProxyEvent):
            logger.info(
                "Proxy closed",
                user=event.user,
                proxy=event.content.proxy_name,
                req_id=req_id,
            )
        elif isinstance(event, PingEvent):
            logger.debug("Ping", user=event.user, req_id=req_id)
        elif isinstance(event, NewWorkConnEvent):
            logger.debug(
                "New work connection",
                user=event.user,
                run_id=event.content.run_id,
                req_id=req_id,
            )
        elif isinstance(event, NewUserConnEvent):
            logger.info(
                "New user connection",
                user=event.user,
                proxy=event.content.proxy_name,
                remote_addr=event.content.remote_addr,
                req_id=req_id,
            )
        return Decision(Verdict.allow())

    def _login(
        self,
        config: Configuration,
        event: LoginEvent,
        req_id: str,
        now: datetime,
    ) -> Decision:
        content = event.content
        user = content.user
        token = content.token
        logger.info("Login", user=user, client_address=content.client_address, req_id=req_id)

        if not user:
            logger.info("Login rejected, missing user", req_id=req_id)
            return Decision(Verdict.reject("missing user"))
        if not token:
            logger.info("Login rejected, missing token", user=user, req_id=req_id)
            return Decision(Verdict.reject("missing token"))

        record = config.users.get(user)
        if record is None:
            logger.debug("User not found in config", user=user)
            logger.info("Login rejected, invalid credentials", user=user, req_id=req_id)
            return Decision(Verdict.reject("invalid credentials"))
        if record.token != token:
            logger.debug("Invalid token for user", user=user)
            logger.info("Login rejected, invalid credentials", user=user, req_id=req_id)
            return Decision(Verdict.reject("invalid credentials"))

        ip = extract_ip(content.client_address)
        logger.info("Login accepted", user=user, ip=ip, req_id=req_id)
        return Decision(Verdict.allow(), ActivityUpdate(user=user, ip=ip, at=now))

    def _new_proxy(self, config: Configuration, event: NewProxyEvent, req_id: str) -> Verdict:
        content = event.content
        user = event.user
        logger.info(
            "New proxy",
            user=user,
            proxy=content.proxy_name,
            proxy_type=content.proxy_type,
            req_id=req_id,
        )

        if not user:
            logger.info("New proxy rejected, missing user info", req_id=req_id)
            return Verdict.reject("missing user info")

        if content.subdomain:
            allowed = config.subdomain_for(user)
            if allowed != content.subdomain:
                logger.info(
                    "New proxy rejected, subdomain not allowed",
                    user=user,
                    subdomain=content.subdomain,
                    allowed=allowed,
                    req_id=req_id,
                )
                return Verdict.reject(f"subdomain '{content.subdomain}' not allowed for this user")
            logger.debug("Subdomain allowed", user=user, subdomain=content.subdomain)

        # Custom domains are not restricted yet, only surfaced in debug logs.
        for domain in content.custom_domains or []:
            logger.debug("Custom domain", user=user, domain=domain)

        logger.info("New proxy accepted", user=user, proxy=content.proxy_name, req_id=req_id)
        return Verdict.allow()

    async def authorize(self, body: Any, req_id: str) -> Verdict:
        """Parse, evaluate and apply the side effects of one plugin request.

        Malformed events become rejections. A failed activity save is
        logged; the login itself stays accepted.
        """
        try:
            event = parse_event(body)
        except EventError as e:
            logger.info("Control event rejected", reason=str(e), req_id=req_id)
            return Verdict.reject(str(e))

        decision = self.evaluate(event, req_id)
        if decision.activity is not None:
            update = decision.activity
            try:
                await self._store.record_activity(update.user, update.ip, update.at)
            except ConfigError as e:
                logger.error("Failed to persist login activity", user=update.user, error=str(e))
        return decision.verdict
