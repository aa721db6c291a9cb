from __future__ import annotations

from typing import List, Optional, Protocol, Sequence, Tuple

import httpx

from identifier.logging import get_logger

logger = get_logger(__name__)

RolesAndPermissions = Tuple[List[str], List[str]]


class RoleResolver(Protocol):
    async def resolve(self, external_user_id: str) -> RolesAndPermissions: ...

    async def close(self) -> None: ...


class StaticRoleResolver:
    """Returns the same roles and permissions for every identity."""

    def __init__(
        self,
        roles: Optional[Sequence[str]] = None,
        permissions: Optional[Sequence[str]] = None,
    ) -> None:
        self.roles = list(roles or [])
        self.permissions = list(permissions or [])

    async def resolve(self, external_user_id: str) -> RolesAndPermissions:
        return list(self.roles), list(self.permissions)

    async def close(self) -> None:
        return None


class HttpRoleResolver:
    """Looks up roles from the authorization service.

    ``GET {base_url}/auth/users/{user_id}/roles-with-permissions`` answers with
    ``{"success": true, "data": [{"role": "...", "permissions": [...]}]}``.
    Any failure is logged and degrades to ``([], [])``.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            follow_redirects=False,
            transport=transport,
            headers={"Accept": "application/json"},
        )

    async def resolve(self, external_user_id: str) -> RolesAndPermissions:
        try:
            response = await self._client.get(
                f"/auth/users/{external_user_id}/roles-with-permissions"
            )
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "role_lookup_http_error",
                user_id=external_user_id,
                status_code=exc.response.status_code,
            )
            return [], []
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning(
                "role_lookup_failed",
                user_id=external_user_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return [], []
        return self._flatten(external_user_id, body)

    @staticmethod
    def _flatten(external_user_id: str, body: object) -> RolesAndPermissions:
        if not isinstance(body, dict) or not body.get("success"):
            logger.warning("role_lookup_unsuccessful", user_id=external_user_id)
            return [], []
        entries = body.get("data") or []
        if not isinstance(entries, list):
            logger.warning("role_lookup_malformed", user_id=external_user_id)
            return [], []
        roles: List[str] = []
        permissions: List[str] = []
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            role = entry.get("role")
            if isinstance(role, str) and role and role not in roles:
                roles.append(role)
            for perm in entry.get("permissions") or []:
                if isinstance(perm, str) and perm not in permissions:
                    permissions.append(perm)
        return roles, permissions

    async def close(self) -> None:
        await self._client.aclose()
