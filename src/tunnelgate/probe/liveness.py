"""Tunnel liveness probing.

A tunnel is probed at ``https://<subdomain>.<tunnel_domain>``:

1. ``GET /static_data``. A 2xx JSON object carrying a string ``tunerName``
   means the expected application is online. A 404 is ambiguous: frps
   answers 404 both for a dead tunnel and for a live tunnel whose
   application lacks the endpoint, so it triggers step 2.
2. ``GET /``. A second 404 (or no answer at all) means the tunnel is down;
   anything else means something other than the expected application is
   serving.

Probe failures are folded into a ``LivenessResult``; ``check`` never raises
for network problems.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any

import httpx
import structlog

logger = structlog.get_logger()

DEFAULT_PROBE_TIMEOUT = 5.0
STATIC_DATA_PATH = "/static_data"
PROBE_HEADERS = {
    "Accept": "application/json, text/html, */*",
    "User-Agent": "tunnelgate/1.0",
}


class LivenessStatus(Enum):
    """Top-level classification of a tunnel."""

    ONLINE = "online"
    WARNING = "warning"
    OFFLINE = "offline"
    ERROR = "error"


class LivenessKind(Enum):
    """Detailed reason behind a classification."""

    EXPECTED_APP = "expected_app"
    NOT_EXPECTED_APP = "not_expected_app"
    TUNNEL_DOWN = "tunnel_down"
    TIMEOUT = "timeout"
    CONNECTION_ERROR = "connection_error"
    HTTP_ERROR = "http_error"


@dataclass(frozen=True)
class LivenessResult:
    """Outcome of probing one subdomain."""

    status: LivenessStatus
    kind: LivenessKind
    message: str | None = None
    http_status: int | None = None
    tuner_name: str | None = None
    tuner_desc: Any = None
    qth_latitude: Any = None
    qth_longitude: Any = None
    subdomain: str | None = None
    checked_at: datetime | None = None

    @classmethod
    def online(
        cls,
        tuner_name: str,
        tuner_desc: Any = None,
        qth_latitude: Any = None,
        qth_longitude: Any = None,
    ) -> LivenessResult:
        return cls(
            status=LivenessStatus.ONLINE,
            kind=LivenessKind.EXPECTED_APP,
            tuner_name=tuner_name,
            tuner_desc=tuner_desc,
            qth_latitude=qth_latitude,
            qth_longitude=qth_longitude,
        )

    @classmethod
    def warning(cls, message: str) -> LivenessResult:
        return cls(status=LivenessStatus.WARNING, kind=LivenessKind.NOT_EXPECTED_APP, message=message)

    @classmethod
    def offline(cls, kind: LivenessKind, message: str) -> LivenessResult:
        return cls(status=LivenessStatus.OFFLINE, kind=kind, message=message)

    @classmethod
    def http_error(cls, status: int) -> LivenessResult:
        return cls(
            status=LivenessStatus.ERROR,
            kind=LivenessKind.HTTP_ERROR,
            http_status=status,
            message=f"HTTP {status}",
        )

    def stamped(self, subdomain: str, checked_at: datetime | None = None) -> LivenessResult:
        """Copy with the subdomain and check time attached."""
        return replace(self, subdomain=subdomain, checked_at=checked_at or datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        """Convert to the JSON shape served to the operator UI."""
        data: dict[str, Any] = {"status": self.status.value, "type": self.kind.value}
        if self.status is LivenessStatus.ONLINE:
            data.update(
                tunerName=self.tuner_name,
                tunerDesc=self.tuner_desc,
                qthLatitude=self.qth_latitude,
                qthLongitude=self.qth_longitude,
            )
        else:
            data["message"] = self.message
        if self.http_status is not None:
            data["httpStatus"] = self.http_status
        if self.subdomain is not None:
            data["subdomain"] = self.subdomain
        if self.checked_at is not None:
            data["checkedAt"] = self.checked_at.isoformat()
        return data


TUNNEL_DOWN = LivenessResult.offline(LivenessKind.TUNNEL_DOWN, "Tunnel not connected")


class LivenessProber:
    """Classifies tunnels by probing them over HTTPS."""

    def __init__(
        self,
        tunnel_domain: str,
        timeout: float = DEFAULT_PROBE_TIMEOUT,
        client: httpx.AsyncClient | None = None,
        scheme: str = "https",
    ) -> None:
        """Initialize the prober.

        Args:
            tunnel_domain: Base domain the tunnels are served under.
            timeout: Per-probe timeout in seconds.
            client: HTTP client to use; one is created lazily when omitted.
            scheme: URL scheme of the probed tunnels.
        """
        self.tunnel_domain = tunnel_domain
        self.timeout = timeout
        self.scheme = scheme
        self._http_client = client
        self._owns_client = client is None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=self.timeout,
                headers=PROBE_HEADERS,
                follow_redirects=True,
            )
        return self._http_client

    async def close(self) -> None:
        """Close the HTTP client if this prober created it."""
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    def base_url(self, subdomain: str) -> str:
        return f"{self.scheme}://{subdomain}.{self.tunnel_domain}"

    async def _fetch(self, url: str) -> httpx.Response:
        client = await self._get_client()
        async with asyncio.timeout(self.timeout):
            return await client.get(url, headers=PROBE_HEADERS)

    async def check(self, subdomain: str) -> LivenessResult:
        """Probe one subdomain and classify the result."""
        base = self.base_url(subdomain)
        try:
            response = await self._fetch(base + STATIC_DATA_PATH)
        except (TimeoutError, httpx.TimeoutException):
            return LivenessResult.offline(LivenessKind.TIMEOUT, "Connection timeout")
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            return LivenessResult.offline(
                LivenessKind.CONNECTION_ERROR, str(e) or "Connection failed"
            )

        if response.status_code == 404:
            logger.debug("Static data returned 404, checking root", subdomain=subdomain)
            return await self._check_root(base)

        if not response.is_success:
            return LivenessResult.http_error(response.status_code)

        try:
            data = response.json()
        except ValueError:
            return LivenessResult.warning(
                "Response is not valid JSON - not the expected application"
            )

        if isinstance(data, dict) and isinstance(data.get("tunerName"), str):
            return LivenessResult.online(
                tuner_name=data["tunerName"],
                tuner_desc=data.get("tunerDesc"),
                qth_latitude=data.get("qthLatitude"),
                qth_longitude=data.get("qthLongitude"),
            )
        return LivenessResult.warning(
            "Valid JSON but missing tunerName - probably not the expected application"
        )

    async def _check_root(self, base: str) -> LivenessResult:
        try:
            response = await self._fetch(base)
        except (TimeoutError, httpx.HTTPError, httpx.InvalidURL):
            return TUNNEL_DOWN

        if response.status_code == 404:
            return TUNNEL_DOWN
        if response.is_success:
            return LivenessResult.warning(
                f"Not the expected application (no {STATIC_DATA_PATH} endpoint)"
            )
        return LivenessResult.warning(
            f"Not the expected application (root: HTTP {response.status_code})"
        )

    async def check_many(self, subdomains: Mapping[str, str]) -> dict[str, LivenessResult]:
        """Probe many tunnels concurrently.

        Args:
            subdomains: Mapping of user id to the subdomain to probe.

        Returns:
            Mapping of user id to its stamped result. A probe that fails
            unexpectedly or is cancelled yields a connection error result for
            that user only.
        """
        users = list(subdomains)
        outcomes = await asyncio.gather(
            *(self.check(subdomains[user]) for user in users),
            return_exceptions=True,
        )

        results: dict[str, LivenessResult] = {}
        for user, outcome in zip(users, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                logger.error("Liveness probe failed", user=user, error=repr(outcome))
                outcome = LivenessResult.offline(
                    LivenessKind.CONNECTION_ERROR, str(outcome) or "Probe failed"
                )
            results[user] = outcome.stamped(subdomains[user])
        return results
