"""Proxmox VE user and resource pool per lab."""
from __future__ import annotations

import logging
import secrets
from typing import Any, Dict, List, Optional

import httpx

from ..config import ProxmoxConfig
from ..errors import CleanupFailed, SetupFailed
from ..models import ServiceConfig, StepStatus
from ..orchestration.plugin import CleanupContext, ServicePlugin, SetupContext

LOGGER = logging.getLogger(__name__)

STEP_CONNECT = "Connecting to Proxmox"
STEP_USER = "Creating User Account"
STEP_POOL = "Creating Resource Pool"
STEP_ACL = "Granting Pool Access"

PASSWORD_BYTES = 12


class ProxmoxError(Exception):
    """A Proxmox API call returned an unexpected response."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ProxmoxClient:
    """Minimal Proxmox VE API client using ticket authentication."""

    def __init__(
        self,
        base_url: str,
        verify: bool = True,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self._client = httpx.Client(
            base_url=f"{base_url.rstrip('/')}/api2/json",
            verify=verify,
            timeout=timeout,
            transport=transport,
        )

    def __enter__(self) -> "ProxmoxClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    def _request(self, method: str, path: str, data: Optional[Dict[str, Any]] = None) -> httpx.Response:
        try:
            response = self._client.request(method, path, data=data)
        except httpx.HTTPError as exc:
            raise ProxmoxError(f"{method} {path} failed: {exc}") from exc
        if response.status_code != 200:
            raise ProxmoxError(
                f"{method} {path} returned {response.status_code}: {response.text}",
                status_code=response.status_code,
            )
        return response

    def login(self, username: str, password: str) -> None:
        response = self._request("POST", "/access/ticket", {"username": username, "password": password})
        payload = (response.json() or {}).get("data") or {}
        ticket = payload.get("ticket")
        if not ticket:
            raise ProxmoxError("authentication response did not contain a ticket")
        self._client.headers["Cookie"] = f"PVEAuthCookie={ticket}"
        self._client.headers["CSRFPreventionToken"] = payload.get("CSRFPreventionToken", "")

    def create_user(self, userid: str, password: str, expire: Optional[int] = None, comment: str = "") -> None:
        data: Dict[str, Any] = {"userid": userid, "password": password, "comment": comment}
        if expire:
            data["expire"] = expire
        self._request("POST", "/access/users", data)

    def delete_user(self, userid: str) -> bool:
        """Delete ``userid``; returns ``False`` when it does not exist."""

        return self._delete(f"/access/users/{userid}")

    def create_pool(self, poolid: str, comment: str = "") -> None:
        self._request("POST", "/pools", {"poolid": poolid, "comment": comment})

    def delete_pool(self, poolid: str) -> bool:
        return self._delete(f"/pools/{poolid}")

    def grant_pool_access(self, poolid: str, userid: str, role: str) -> None:
        self._request("PUT", "/access/acl", {"path": f"/pool/{poolid}", "users": userid, "roles": role})

    def _delete(self, path: str) -> bool:
        try:
            self._request("DELETE", path)
        except ProxmoxError as exc:
            if exc.status_code == 404 or "does not exist" in str(exc):
                return False
            raise
        return True


class ProxmoxUserPlugin(ServicePlugin):
    """Create a Proxmox user with its own resource pool for each lab.

    Connection settings come from the application's ``proxmox`` section and can
    be overridden per service config with ``uri``, ``admin_user``,
    ``admin_pass`` and ``skip_tls_verify``. ``realm`` (default ``pve``) and
    ``role`` (default ``PVEVMUser``) shape the created account.
    """

    type_name = "proxmox_user"
    steps = (STEP_CONNECT, STEP_USER, STEP_POOL, STEP_ACL)

    def __init__(
        self,
        config: ServiceConfig,
        defaults: ProxmoxConfig,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        super().__init__(config)
        self._defaults = defaults
        self._transport = transport

    def _option(self, key: str) -> Any:
        value = self.config.config.get(key)
        return value if value not in (None, "") else getattr(self._defaults, key)

    def _connect(self) -> ProxmoxClient:
        uri = self._option("uri")
        admin_user = self._option("admin_user")
        admin_pass = self._option("admin_pass")
        if not (uri and admin_user and admin_pass):
            raise ProxmoxError("uri, admin_user and admin_pass must be configured")
        client = ProxmoxClient(
            uri,
            verify=not bool(self._option("skip_tls_verify")),
            timeout=self._defaults.request_timeout_seconds,
            transport=self._transport,
        )
        try:
            client.login(admin_user, admin_pass)
        except ProxmoxError:
            client.close()
            raise
        return client

    def execute_setup(self, ctx: SetupContext) -> None:
        realm = self.config.config.get("realm", "pve")
        username = f"lab-{ctx.lab_id}@{realm}"
        pool = f"lab-{ctx.lab_id}-pool"
        password = secrets.token_urlsafe(PASSWORD_BYTES)

        step = STEP_CONNECT
        ctx.update_progress(step, StepStatus.RUNNING, "Authenticating against Proxmox")
        try:
            client = self._connect()
        except ProxmoxError as exc:
            ctx.update_progress(step, StepStatus.FAILED, f"Failed to connect: {exc}")
            raise SetupFailed(self.name, cause=exc, message=f"failed to connect: {exc}") from exc
        ctx.update_progress(step, StepStatus.COMPLETED, "Connected to Proxmox")

        with client:
            try:
                step = STEP_USER
                ctx.raise_if_cancelled()
                ctx.update_progress(step, StepStatus.RUNNING, f"Creating {username}")
                expire = int(ctx.ends_at.timestamp()) if ctx.ends_at else None
                client.create_user(username, password, expire=expire, comment=f"Lab {ctx.lab_name}")
                ctx.service_data.set("username", username)
                ctx.update_progress(step, StepStatus.COMPLETED, "User account created")

                step = STEP_POOL
                ctx.raise_if_cancelled()
                ctx.update_progress(step, StepStatus.RUNNING, f"Creating {pool}")
                client.create_pool(pool, comment=f"Lab {ctx.lab_name}")
                ctx.service_data.set("pool", pool)
                ctx.update_progress(step, StepStatus.COMPLETED, "Resource pool created")

                step = STEP_ACL
                ctx.update_progress(step, StepStatus.RUNNING, "Granting pool permissions")
                client.grant_pool_access(pool, username, self.config.config.get("role", "PVEVMUser"))
                ctx.update_progress(step, StepStatus.COMPLETED, "Permissions granted")
            except ProxmoxError as exc:
                ctx.update_progress(step, StepStatus.FAILED, str(exc))
                raise SetupFailed(self.name, cause=exc, message=f"{step.lower()} failed: {exc}") from exc

        ctx.add_credential(
            label=self.display_name,
            username=username,
            password=password,
            url=self._option("uri"),
            notes=f"Resource pool: {pool}",
        )
        LOGGER.info("Proxmox user provisioned", extra={"lab_id": ctx.lab_id, "username": username})

    def execute_cleanup(self, ctx: CleanupContext) -> None:
        username = ctx.service_data.get("username")
        pool = ctx.service_data.get("pool")
        if not username and not pool:
            LOGGER.debug("No Proxmox resources recorded", extra={"lab_id": ctx.lab_id})
            return
        try:
            client = self._connect()
        except ProxmoxError as exc:
            raise CleanupFailed(self.name, cause=exc, message=f"failed to connect: {exc}") from exc

        errors: List[str] = []
        with client:
            if username:
                try:
                    if not client.delete_user(username):
                        LOGGER.info("Proxmox user already gone", extra={"username": username})
                except ProxmoxError as exc:
                    errors.append(f"delete user {username}: {exc}")
            if pool:
                try:
                    if not client.delete_pool(pool):
                        LOGGER.info("Proxmox pool already gone", extra={"pool": pool})
                except ProxmoxError as exc:
                    errors.append(f"delete pool {pool}: {exc}")
        if errors:
            raise CleanupFailed(self.name, message="; ".join(errors))


__all__ = ["ProxmoxClient", "ProxmoxError", "ProxmoxUserPlugin"]
