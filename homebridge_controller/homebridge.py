"""Homebridge REST client for a single lightbulb accessory.

Talks to the Homebridge UI API (``/api/auth/login``, ``/api/accessories``)
with a shared ``aiohttp.ClientSession``. Every failure is mapped onto the
two device error kinds used by the scheduling engine:

* ``DeviceUnreachable``: connection errors, timeouts, 5xx responses
* ``DeviceRejected``: 4xx responses, auth failures, unknown accessory,
  unparsable payloads
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import aiohttp

from .configuration import DEFAULT_ACCESSORY_NAME
from .light_controller import (
    DeviceRejected,
    DeviceUnreachable,
    LightCommand,
    LightController,
    LightObservedState,
)

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 10.0  # seconds
# Renew the access token this long before the server says it expires
TOKEN_EXPIRY_MARGIN = timedelta(seconds=60)


class Homebridge(LightController):
    """Light controller backed by the Homebridge UI REST API."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        ip_address: str,
        username: str,
        password: str,
        accessory_name: str = DEFAULT_ACCESSORY_NAME,
    ):
        """Initialize the client.

        Args:
            session: Shared aiohttp session
            ip_address: Base URL of the Homebridge UI, e.g. ``http://10.0.0.2:8581``
            username: Homebridge UI user
            password: Homebridge UI password
            accessory_name: ``serviceName`` of the lightbulb accessory
        """
        self.session = session
        self.ip_address = ip_address.rstrip("/")
        self.username = username
        self.password = password
        self.accessory_name = accessory_name
        self.access_token: Optional[str] = None
        self.access_token_expiration: Optional[datetime] = None
        self.accessory_uuids: Dict[str, str] = {}

    # ------------------------------------------------------------------
    # HTTP plumbing
    # ------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        auth: bool = True,
    ) -> Any:
        """Send a request and return the decoded JSON body (or None)."""
        headers = {}
        if auth:
            headers["Authorization"] = f"Bearer {await self._get_access_token()}"

        url = f"{self.ip_address}{path}"
        try:
            async with self.session.request(
                method,
                url,
                json=json,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=REQUEST_TIMEOUT),
            ) as resp:
                if resp.status >= 500:
                    raise DeviceUnreachable(f"{method} {path} returned {resp.status}")
                if resp.status == 401 and auth:
                    # Token revoked server side; force a fresh login next time
                    self.access_token = None
                    self.access_token_expiration = None
                    raise DeviceUnreachable(f"{method} {path} unauthorized, token dropped")
                if resp.status >= 400:
                    raise DeviceRejected(f"{method} {path} returned {resp.status}")
                if resp.content_type != "application/json":
                    return None
                return await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise DeviceUnreachable(f"{method} {path} failed: {e}") from e
        except ValueError as e:
            raise DeviceRejected(f"Could not parse response from {path}: {e}") from e

    async def check_connection(self) -> bool:
        """Return True if the Homebridge UI answers at all."""
        try:
            async with self.session.get(
                self.ip_address, timeout=aiohttp.ClientTimeout(total=REQUEST_TIMEOUT)
            ):
                return True
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"Homebridge at {self.ip_address} not reachable: {e}")
            return False

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    async def _renew_access_token(self) -> None:
        logger.debug("Requesting a new Homebridge access token")
        body = await self._request(
            "POST",
            "/api/auth/login",
            json={"username": self.username, "password": self.password},
            auth=False,
        )
        try:
            token = body["access_token"]
            expires_in = int(body["expires_in"])
        except (TypeError, KeyError, ValueError) as e:
            raise DeviceRejected(f"Unexpected login response: {body!r}") from e

        self.access_token = token
        self.access_token_expiration = (
            datetime.now() + timedelta(seconds=expires_in) - TOKEN_EXPIRY_MARGIN
        )

    async def _get_access_token(self) -> str:
        if self.access_token is None or self.access_token_expiration is None:
            logger.debug("No access token, requesting one.")
            await self._renew_access_token()
        elif self.access_token_expiration < datetime.now():
            logger.debug("Access token expired, requesting new one.")
            await self._renew_access_token()
        return self.access_token

    # ------------------------------------------------------------------
    # Accessories
    # ------------------------------------------------------------------

    async def get_accessory_uuid(self, name: Optional[str] = None) -> str:
        """Resolve an accessory ``uniqueId`` by its service name (cached)."""
        name = name or self.accessory_name
        if name in self.accessory_uuids:
            return self.accessory_uuids[name]

        accessories = await self._request("GET", "/api/accessories")
        for accessory in accessories or []:
            if accessory.get("serviceName") == name:
                unique_id = accessory["uniqueId"]
                logger.debug(f"Adding UUID for '{name}' to accessory UUID table.")
                self.accessory_uuids[name] = unique_id
                return unique_id

        logger.error(f"Did not find an accessory with service name '{name}'.")
        raise DeviceRejected(f"No accessory registered for '{name}'.")

    async def _set_characteristic(self, characteristic: str, value: Any) -> None:
        uuid = await self.get_accessory_uuid()
        await self._request(
            "PUT",
            f"/api/accessories/{uuid}",
            json={"characteristicType": characteristic, "value": value},
        )

    async def set(self, command: LightCommand) -> None:
        """Write each populated field of ``command`` as one characteristic."""
        logger.debug(f"Setting {self.accessory_name}: {command}")
        if command.power is not None:
            await self._set_characteristic("On", "1" if command.power else "0")
        if command.brightness is not None:
            await self._set_characteristic("Brightness", int(command.brightness))
        if command.hue is not None:
            await self._set_characteristic("Hue", int(round(command.hue)))

    async def get(self) -> LightObservedState:
        uuid = await self.get_accessory_uuid()
        body = await self._request("GET", f"/api/accessories/{uuid}")
        try:
            return LightObservedState.from_values(body["values"])
        except (TypeError, KeyError, ValueError) as e:
            raise DeviceRejected(f"Error parsing accessory data: {e}") from e
