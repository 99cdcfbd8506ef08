from __future__ import annotations

import asyncio
import time
from datetime import UTC, datetime
from typing import Any

import structlog
from aiohttp import web

from tunnelgate.admin.tokens import TokenError, TokenService, TokenValidationError, generate_token
from tunnelgate.auth.engine import AuthorizationEngine
from tunnelgate.core.config import GatewaySettings
from tunnelgate.core.store import ConfigError, ConfigStore
from tunnelgate.core.watcher import ConfigWatcher
from tunnelgate.probe.liveness import LivenessProber
from tunnelgate.protocol.messages import REQUEST_ID_HEADER, UNKNOWN_REQUEST_ID, Verdict
from tunnelgate.security.basicauth import (
    ADMIN_REALM,
    AUTH_CHALLENGE,
    AUTH_HEADER,
    create_basic_authenticator,
)

logger = structlog.get_logger()

HIDDEN_TOKEN = "***hidden***"
ADMIN_PREFIXES = ("/api", "/debug")
INTERNAL_ERROR = Verdict.reject("internal server error")


def _is_admin_path(path: str) -> bool:
    return any(path == prefix or path.startswith(prefix + "/") for prefix in ADMIN_PREFIXES)


class GatewayServer:
    """HTTP front of the gateway: frp plugin hook, admin API and probes."""

    def __init__(
        self,
        store: ConfigStore,
        settings: GatewaySettings,
        prober: LivenessProber | None = None,
        watch: bool = True,
    ) -> None:
        self.store = store
        self.settings = settings
        self.engine = AuthorizationEngine(store)
        self.tokens = TokenService(store)
        self.prober = prober or LivenessProber(
            settings.tunnel_domain, timeout=settings.probe_timeout
        )
        self._watch = watch
        self._watcher: ConfigWatcher | None = None
        self._runner: web.AppRunner | None = None

    def is_debug(self) -> bool:
        return self.store.loaded and self.store.config.debug

    def build_app(self) -> web.Application:
        """Create the aiohttp application.

        The control-event path is taken from the configuration loaded at
        build time; changing it requires a restart.
        """
        app = web.Application(
            middlewares=[self._error_middleware, self._access_log_middleware, self._admin_middleware]
        )
        app.router.add_post(self.store.config.server.path, self._handle_control_event)
        app.router.add_get("/health", self._handle_health)
        app.router.add_get("/api/tokens", self._handle_list_tokens)
        app.router.add_post("/api/tokens", self._handle_add_token)
        app.router.add_put("/api/tokens/{username}", self._handle_update_token)
        app.router.add_delete("/api/tokens/{username}", self._handle_delete_token)
        app.router.add_get("/api/generate-token", self._handle_generate_token)
        app.router.add_get("/api/config", self._handle_frontend_config)
        app.router.add_get("/api/tunnel-status", self._handle_tunnel_status_all)
        app.router.add_get("/api/tunnel-status/{subdomain}", self._handle_tunnel_status)
        app.router.add_get("/debug/config", self._handle_debug_config)
        app.router.add_get("/debug/users", self._handle_debug_users)
        app.on_cleanup.append(self._on_cleanup)
        return app

    async def _on_cleanup(self, app: web.Application) -> None:
        await self.prober.close()

    async def start(self) -> None:
        """Start watching the config file and serving HTTP."""
        config = self.store.config
        if self._watch:
            self._watcher = ConfigWatcher(self.store, delay=self.settings.reload_debounce)
            self._watcher.start()

        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.settings.bind_host, config.server.port)
        await site.start()

        logger.info(
            "Gateway started",
            host=self.settings.bind_host,
            port=config.server.port,
            handler_path=config.server.path,
            tunnel_domain=self.settings.tunnel_domain,
            debug=config.debug,
        )
        if not config.admin_enabled:
            logger.warning("No admin credentials configured, admin API is open")

    async def stop(self) -> None:
        logger.info("Stopping gateway...")
        if self._watcher is not None:
            await self._watcher.stop()
            self._watcher = None
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        logger.info("Gateway stopped")

    @web.middleware
    async def _error_middleware(self, request: web.Request, handler: Any) -> web.StreamResponse:
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Unhandled error", path=request.path, error=str(e))
            return web.json_response(INTERNAL_ERROR.to_dict(), status=500)

    @web.middleware
    async def _access_log_middleware(self, request: web.Request, handler: Any) -> web.StreamResponse:
        started = time.perf_counter()
        status = 500
        try:
            response = await handler(request)
            status = response.status
            return response
        except web.HTTPException as e:
            status = e.status
            raise
        finally:
            logger.debug(
                "Request",
                method=request.method,
                path=request.path_qs,
                status=status,
                duration_ms=round((time.perf_counter() - started) * 1000, 1),
            )

    @web.middleware
    async def _admin_middleware(self, request: web.Request, handler: Any) -> web.StreamResponse:
        if auth_error := self._check_admin_auth(request):
            return auth_error
        return await handler(request)

    def _check_admin_auth(self, request: web.Request) -> web.Response | None:
        """Check auth for /api and /debug. Returns error response or None if OK.

        Without configured admin credentials the gate is open.
        """
        if not _is_admin_path(request.path):
            return None
        config = self.store.config
        if not config.admin_enabled:
            return None

        admin = config.admin
        authenticator = create_basic_authenticator(admin.username, admin.password)
        result = authenticator.check(request.headers.get(AUTH_HEADER))
        if result.allowed:
            return None
        return web.Response(text=result.reason, status=401, headers={AUTH_CHALLENGE: ADMIN_REALM})

    async def _handle_control_event(self, request: web.Request) -> web.Response:
        req_id = request.headers.get(REQUEST_ID_HEADER, UNKNOWN_REQUEST_ID)
        try:
            body = await request.json()
        except ValueError:
            logger.info("Control event rejected, body is not JSON", req_id=req_id)
            return web.json_response(Verdict.reject("invalid request body").to_dict())

        if isinstance(body, dict):
            logger.debug(
                "Incoming request",
                version=body.get("version"),
                op=body.get("op"),
                req_id=req_id,
                body=body,
            )
        verdict = await self.engine.authorize(body, req_id)
        response = verdict.to_dict()
        logger.debug("Response", req_id=req_id, response=response)
        return web.json_response(response)

    async def _handle_health(self, request: web.Request) -> web.Response:
        last_reload = self.store.last_reload
        return web.json_response(
            {
                "status": "ok",
                "debug": self.is_debug(),
                "users": len(self.store.config.users),
                "lastConfigReload": last_reload.isoformat() if last_reload else None,
            }
        )

    async def _handle_list_tokens(self, request: web.Request) -> web.Response:
        return web.json_response({"users": [entry.to_dict() for entry in self.tokens.list_tokens()]})

    async def _read_json_object(self, request: web.Request) -> dict[str, Any]:
        try:
            body = await request.json()
        except ValueError as e:
            raise TokenValidationError("Request body must be JSON") from e
        if not isinstance(body, dict):
            raise TokenValidationError("Request body must be a JSON object")
        return body

    @staticmethod
    def _optional_str(body: dict[str, Any], key: str) -> str | None:
        value = body.get(key)
        if value is not None and not isinstance(value, str):
            raise TokenValidationError(f"{key} must be a string")
        return value

    async def _token_operation(self, operation: Any, success_message: str) -> web.Response:
        try:
            await operation
        except TokenError as e:
            return web.json_response({"error": str(e)}, status=e.status)
        except ConfigError:
            return web.json_response({"error": "Failed to save configuration"}, status=500)
        return web.json_response({"success": True, "message": success_message})

    async def _handle_add_token(self, request: web.Request) -> web.Response:
        try:
            body = await self._read_json_object(request)
            username = self._optional_str(body, "username")
            token = self._optional_str(body, "token")
        except TokenError as e:
            return web.json_response({"error": str(e)}, status=e.status)
        return await self._token_operation(
            self.tokens.add(username, token), "Token added successfully"
        )

    async def _handle_update_token(self, request: web.Request) -> web.Response:
        username = request.match_info["username"]
        try:
            body = await self._read_json_object(request)
            token = self._optional_str(body, "token")
        except TokenError as e:
            return web.json_response({"error": str(e)}, status=e.status)
        return await self._token_operation(
            self.tokens.update(username, token), "Token updated successfully"
        )

    async def _handle_delete_token(self, request: web.Request) -> web.Response:
        username = request.match_info["username"]
        return await self._token_operation(
            self.tokens.delete(username), "Token deleted successfully"
        )

    async def _handle_generate_token(self, request: web.Request) -> web.Response:
        return web.json_response({"token": generate_token()})

    async def _handle_frontend_config(self, request: web.Request) -> web.Response:
        return web.json_response({"tunnelDomain": self.settings.tunnel_domain})

    async def _handle_tunnel_status(self, request: web.Request) -> web.Response:
        subdomain = request.match_info["subdomain"]
        logger.debug("Checking tunnel status", subdomain=subdomain)
        result = (await self.prober.check(subdomain)).stamped(subdomain)
        logger.debug("Tunnel status", subdomain=subdomain, status=result.status.value)
        return web.json_response(result.to_dict())

    async def _handle_tunnel_status_all(self, request: web.Request) -> web.Response:
        subdomains = self.store.config.subdomains()
        logger.debug("Checking tunnel status for all users", users=len(subdomains))
        results = await self.prober.check_many(subdomains)
        return web.json_response(
            {
                "results": {user: result.to_dict() for user, result in results.items()},
                "checkedAt": datetime.now(UTC).isoformat(),
            }
        )

    def _debug_disabled(self) -> web.Response | None:
        if self.is_debug():
            return None
        return web.json_response({"error": "debug mode disabled"}, status=403)

    async def _handle_debug_config(self, request: web.Request) -> web.Response:
        if denied := self._debug_disabled():
            return denied
        safe_config = self.store.config.to_dict()
        for record in safe_config.get("users", {}).values():
            record["token"] = HIDDEN_TOKEN
        if "password" in safe_config.get("admin", {}):
            safe_config["admin"]["password"] = HIDDEN_TOKEN
        return web.json_response(safe_config)

    async def _handle_debug_users(self, request: web.Request) -> web.Response:
        if denied := self._debug_disabled():
            return denied
        return web.json_response(
            [
                {"user": user, "subdomain": subdomain}
                for user, subdomain in self.store.config.subdomains().items()
            ]
        )
