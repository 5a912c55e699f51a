from __future__ import annotations

import logging
import secrets
from typing import Any, Dict, List, Optional

import httpx

from ..models.provisioning import (
    GatewayResult,
    InstanceRequest,
    InstanceResources,
    PanelAccount,
    PanelInstance,
)
from .base import ProvisioningGateway
from .cache import InstanceListCache


logger = logging.getLogger(__name__)

INVALID_RESPONSE = "Invalid response from panel"


class PterodactylGateway(ProvisioningGateway):
    """
    Provisioning gateway backed by the Pterodactyl application and client APIs.

    Transport errors, timeouts and non-2xx responses all come back as
    `GatewayResult.fail`; the panel's own `errors[0].detail` is used as the
    message when present.
    """

    def __init__(
        self,
        panel_url: str,
        api_key: str,
        client_key: Optional[str] = None,
        *,
        timeout: float = 15.0,
        instance_cache: Optional[InstanceListCache] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(instance_cache)
        base_url = panel_url.rstrip("/")
        self._application = httpx.AsyncClient(
            base_url=f"{base_url}/api/application",
            headers=self._headers(api_key),
            timeout=timeout,
            transport=transport,
        )
        self._client: Optional[httpx.AsyncClient] = None
        if client_key:
            self._client = httpx.AsyncClient(
                base_url=f"{base_url}/api/client",
                headers=self._headers(client_key),
                timeout=timeout,
                transport=transport,
            )

    @staticmethod
    def _headers(key: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {key}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }

    async def aclose(self) -> None:
        await self._application.aclose()
        if self._client is not None:
            await self._client.aclose()

    # ------------------------------------------------------------------ #
    # HTTP plumbing
    # ------------------------------------------------------------------ #

    async def _request(
        self,
        client: httpx.AsyncClient,
        method: str,
        path: str,
        **kwargs: Any,
    ) -> GatewayResult:
        try:
            response = await client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            error = self._error_detail(exc.response)
            logger.error("Panel API %s %s failed: %s", method, path, error)
            return GatewayResult.fail(error)
        except httpx.TimeoutException:
            logger.error("Panel API %s %s timed out", method, path)
            return GatewayResult.fail("Panel request timed out")
        except httpx.HTTPError as exc:
            logger.error("Panel API %s %s unreachable: %s", method, path, exc)
            return GatewayResult.fail(str(exc) or exc.__class__.__name__)

        if response.status_code == 204 or not response.content:
            return GatewayResult.ok(None)
        try:
            return GatewayResult.ok(response.json())
        except ValueError:
            logger.error("Panel API %s %s returned a non-JSON body", method, path)
            return GatewayResult.fail(INVALID_RESPONSE)

    @staticmethod
    def _error_detail(response: httpx.Response) -> str:
        try:
            body = response.json()
            detail = body["errors"][0]["detail"]
        except (ValueError, KeyError, IndexError, TypeError):
            return f"Panel returned HTTP {response.status_code}"
        return str(detail)

    @classmethod
    def _account_from(cls, attributes: Dict[str, Any]) -> Optional[PanelAccount]:
        try:
            return PanelAccount(
                id=attributes["id"],
                email=attributes["email"],
                username=attributes.get("username"),
                first_name=attributes.get("first_name"),
                last_name=attributes.get("last_name"),
            )
        except (KeyError, TypeError, ValueError):
            return None

    @classmethod
    def _instance_from(cls, attributes: Dict[str, Any]) -> Optional[PanelInstance]:
        try:
            suspended = bool(attributes.get("suspended", False))
            status = attributes.get("status") or ("suspended" if suspended else "running")
            return PanelInstance(
                id=attributes["id"],
                uuid=attributes.get("uuid"),
                identifier=attributes["identifier"],
                name=attributes.get("name") or "",
                description=attributes.get("description") or "",
                status=status,
                suspended=suspended,
                user=attributes.get("user"),
                limits=cls._int_values(attributes.get("limits")),
                feature_limits=cls._int_values(attributes.get("feature_limits")),
            )
        except (KeyError, TypeError, ValueError):
            return None

    @staticmethod
    def _int_values(values: Any) -> Dict[str, int]:
        if not isinstance(values, dict):
            return {}
        return {k: v for k, v in values.items() if isinstance(v, int)}

    @staticmethod
    def _attributes(data: Any) -> Dict[str, Any]:
        attributes = data.get("attributes") if isinstance(data, dict) else None
        return attributes if isinstance(attributes, dict) else {}

    @staticmethod
    def _items(data: Any) -> Optional[List[Any]]:
        items = data.get("data") if isinstance(data, dict) else None
        return items if isinstance(items, list) else None

    @staticmethod
    def _invalid(what: str) -> GatewayResult:
        logger.error("Panel returned an unreadable %s", what)
        return GatewayResult.fail(INVALID_RESPONSE)

    # ------------------------------------------------------------------ #
    # Accounts
    # ------------------------------------------------------------------ #

    async def get_account_by_email(self, email: str) -> GatewayResult:
        result = await self._request(
            self._application, "GET", "/users", params={"filter[email]": email}
        )
        if not result.success:
            return result
        items = self._items(result.data)
        if items is None:
            return self._invalid("user list")
        for item in items:
            attributes = self._attributes(item)
            if str(attributes.get("email", "")).lower() == email.lower():
                account = self._account_from(attributes)
                if account is None:
                    return self._invalid("user")
                return GatewayResult.ok(account)
        return GatewayResult.ok(None)

    async def create_account(
        self,
        email: str,
        password: str,
        first_name: str = "User",
        last_name: str = "Account",
    ) -> GatewayResult:
        local_part = email.split("@", 1)[0]
        payload = {
            "email": email,
            "username": f"{local_part}{secrets.randbelow(1000)}",
            "first_name": first_name,
            "last_name": last_name,
            "password": password,
        }
        result = await self._request(self._application, "POST", "/users", json=payload)
        if not result.success:
            return result
        account = self._account_from(self._attributes(result.data))
        if account is None:
            return self._invalid("new user")
        logger.info("Created panel account %s for %s", account.id, email)
        return GatewayResult.ok(account)

    async def update_account(
        self,
        account_id: int,
        email: Optional[str] = None,
        password: Optional[str] = None,
    ) -> GatewayResult:
        current = await self._request(self._application, "GET", f"/users/{account_id}")
        if not current.success:
            return current
        attributes = self._attributes(current.data)
        if not attributes:
            return self._invalid("user")

        # PATCH requires the full identity block, not only the changed fields.
        payload: Dict[str, Any] = {
            "email": email or attributes.get("email"),
            "username": attributes.get("username"),
            "first_name": attributes.get("first_name"),
            "last_name": attributes.get("last_name"),
        }
        if password:
            payload["password"] = password
        result = await self._request(
            self._application, "PATCH", f"/users/{account_id}", json=payload
        )
        if not result.success:
            return result
        account = self._account_from(self._attributes(result.data))
        if account is None:
            return self._invalid("updated user")
        return GatewayResult.ok(account)

    # ------------------------------------------------------------------ #
    # Servers
    # ------------------------------------------------------------------ #

    async def _create_instance(self, request: InstanceRequest) -> GatewayResult:
        result = await self._request(
            self._application,
            "POST",
            "/servers",
            json=request.model_dump(exclude_none=True),
        )
        if not result.success:
            return result
        attributes = self._attributes(result.data)
        if "id" not in attributes or "identifier" not in attributes:
            return GatewayResult.fail("Panel response did not include the new server")
        instance = self._instance_from(attributes)
        if instance is None:
            return self._invalid("new server")
        logger.info(
            "Created panel server %s (%s) for account %s",
            instance.id,
            instance.identifier,
            request.user,
        )
        return GatewayResult.ok(instance)

    async def get_instance(self, instance_id: int) -> GatewayResult:
        result = await self._request(self._application, "GET", f"/servers/{instance_id}")
        if not result.success:
            return result
        instance = self._instance_from(self._attributes(result.data))
        if instance is None:
            return self._invalid("server")
        return GatewayResult.ok(instance)

    async def _fetch_user_instances(self, account_id: int) -> GatewayResult:
        result = await self._request(
            self._application,
            "GET",
            f"/users/{account_id}",
            params={"include": "servers"},
        )
        if not result.success:
            return result
        relationships = self._attributes(result.data).get("relationships")
        servers = self._items(
            relationships.get("servers") if isinstance(relationships, dict) else None
        )
        if servers is None:
            return self._invalid("server list")
        instances = [self._instance_from(self._attributes(item)) for item in servers]
        if any(instance is None for instance in instances):
            return self._invalid("server list entry")
        return GatewayResult.ok(instances)

    async def _suspend_instance(self, instance_id: int) -> GatewayResult:
        return await self._request(
            self._application, "POST", f"/servers/{instance_id}/suspend"
        )

    async def _unsuspend_instance(self, instance_id: int) -> GatewayResult:
        return await self._request(
            self._application, "POST", f"/servers/{instance_id}/unsuspend"
        )

    async def _delete_instance(self, instance_id: int) -> GatewayResult:
        return await self._request(self._application, "DELETE", f"/servers/{instance_id}")

    async def get_instance_resources(self, identifier: str) -> GatewayResult:
        if self._client is None:
            return GatewayResult.fail("Panel client API key is not configured")
        result = await self._request(
            self._client, "GET", f"/servers/{identifier}/resources"
        )
        if not result.success:
            return result
        attributes = self._attributes(result.data)
        resources = attributes.get("resources")
        if not isinstance(resources, dict):
            return self._invalid("resource usage")
        try:
            usage = InstanceResources(
                memory_bytes=resources.get("memory_bytes", 0),
                cpu_absolute=resources.get("cpu_absolute", 0.0),
                disk_bytes=resources.get("disk_bytes", 0),
                network_rx_bytes=resources.get("network_rx_bytes", 0),
                network_tx_bytes=resources.get("network_tx_bytes", 0),
                uptime=resources.get("uptime", 0),
                state=attributes.get("current_state"),
            )
        except ValueError:
            return self._invalid("resource usage")
        return GatewayResult.ok(usage)

    async def test_connection(self) -> GatewayResult:
        result = await self._request(self._application, "GET", "/users", params={"per_page": 1})
        if not result.success:
            return result
        return GatewayResult.ok({"connected": True})
