"""Thermostat cloud REST client.

Provides :class:`CloudApiPort` (Protocol) and two implementations:

- :class:`SmartherApi` — aiohttp client for the chronothermostat API
- :class:`MockSmartherApi` — in-memory double recording every call

Every operation takes the :class:`AuthorizationInfo` to use, so callers
always act with the credential they just obtained from the token
manager.  Each call carries the application subscription key and the
bearer token.  Timeouts are retried with a growing timeout; any other
failure surfaces as :class:`ApiError`.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol, Self, runtime_checkable

import aiohttp
from pydantic import SecretStr, TypeAdapter, ValidationError

from smarther_bridge._clock import ClockPort, SystemClock
from smarther_bridge._errors import ApiError
from smarther_bridge._models import (
    AuthorizationInfo,
    ModuleStatus,
    PlantDetail,
    SetStatusRequest,
    SubscriptionInfo,
)
from smarther_bridge._settings import ApiSettings

logger = logging.getLogger(__name__)

_PLANTS = TypeAdapter(list[PlantDetail])
_SUBSCRIPTIONS = TypeAdapter(list[SubscriptionInfo])

# ---------------------------------------------------------------------------
# Port (Protocol)
# ---------------------------------------------------------------------------


@runtime_checkable
class CloudApiPort(Protocol):
    """Cloud operations consumed by the bridge."""

    async def refresh_token(self, auth: AuthorizationInfo) -> AuthorizationInfo: ...

    async def get_plants(self, auth: AuthorizationInfo) -> list[PlantDetail]: ...

    async def get_topology(self, auth: AuthorizationInfo, plant_id: str) -> PlantDetail: ...

    async def get_device_status(
        self,
        auth: AuthorizationInfo,
        plant_id: str,
        module_id: str,
    ) -> ModuleStatus: ...

    async def set_device_status(
        self,
        auth: AuthorizationInfo,
        plant_id: str,
        module_id: str,
        request: SetStatusRequest,
    ) -> None: ...

    async def register_webhook(
        self,
        auth: AuthorizationInfo,
        plant_id: str,
        endpoint_url: str,
    ) -> SubscriptionInfo: ...

    async def unregister_webhook(
        self,
        auth: AuthorizationInfo,
        plant_id: str,
        subscription_id: str,
    ) -> None: ...

    async def list_webhooks(self, auth: AuthorizationInfo) -> list[SubscriptionInfo]: ...


# ---------------------------------------------------------------------------
# Real adapter
# ---------------------------------------------------------------------------


class SmartherApi:
    """aiohttp client for the chronothermostat cloud API.

    The HTTP session is created on first use and released by
    :meth:`close` (or by leaving ``async with``).
    """

    def __init__(self, settings: ApiSettings, *, clock: ClockPort | None = None) -> None:
        self._settings = settings
        self._clock = clock if clock is not None else SystemClock()
        self._session: aiohttp.ClientSession | None = None

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    # -- low level ----------------------------------------------------------

    @staticmethod
    def _headers(auth: AuthorizationInfo) -> dict[str, str]:
        return {
            "Ocp-Apim-Subscription-Key": auth.subscription_key.get_secret_value(),
            "Authorization": f"Bearer {auth.access_token.get_secret_value()}",
        }

    async def _request(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        json: dict[str, Any] | None = None,
        data: dict[str, str] | None = None,
    ) -> Any:
        """Send a request and return the decoded JSON body (``None`` if empty).

        Timeouts are retried up to ``attempts`` times, the timeout growing
        with each attempt.  Other errors are not retried.

        Raises:
            ApiError: On transport failure, exhausted retries or a non-2xx
                response.
        """
        attempts = self._settings.attempts
        for attempt in range(attempts):
            timeout = aiohttp.ClientTimeout(total=self._settings.timeout * (attempt + 1))
            try:
                async with self._get_session().request(
                    method,
                    url,
                    headers=headers,
                    json=json,
                    data=data,
                    timeout=timeout,
                ) as response:
                    return await self._process_response(method, url, response)
            except TimeoutError as exc:
                if attempt < attempts - 1:
                    logger.debug("Timeout on %s %s, retrying", method, url)
                    continue
                msg = f"Timeout on {method} {url} after {attempts} attempts"
                raise ApiError(msg) from exc
            except aiohttp.ClientError as exc:
                msg = f"{method} {url} failed: {exc}"
                raise ApiError(msg) from exc
        raise AssertionError("unreachable")  # attempts >= 1

    @staticmethod
    async def _process_response(
        method: str,
        url: str,
        response: aiohttp.ClientResponse,
    ) -> Any:
        body = await response.text()
        if response.status >= 300:
            msg = f"{method} {url} returned HTTP {response.status}"
            raise ApiError(msg, status=response.status, body=body[:500])
        if response.status == 204 or not body.strip():
            return None
        try:
            return await response.json(content_type=None)
        except ValueError as exc:
            msg = f"{method} {url} returned invalid JSON"
            raise ApiError(msg, status=response.status, body=body[:500]) from exc

    def _module_url(self, plant_id: str, module_id: str) -> str:
        return (
            f"{self._settings.base_uri}/chronothermostat/thermoregulation/"
            f"addressLocation/plants/{plant_id}/modules/parameter/id/value/{module_id}"
        )

    # -- credentials --------------------------------------------------------

    async def refresh_token(self, auth: AuthorizationInfo) -> AuthorizationInfo:
        """Exchange the refresh token for a new credential."""
        body = await self._request(
            "POST",
            self._settings.token_uri,
            data={
                "client_id": auth.client_id,
                "client_secret": auth.client_secret.get_secret_value(),
                "grant_type": "refresh_token",
                "refresh_token": auth.refresh_token.get_secret_value(),
            },
        )
        if not isinstance(body, dict) or "access_token" not in body:
            msg = "Token endpoint response lacks access_token"
            raise ApiError(msg)
        try:
            expires_on = _expiry(body, self._clock.now())
            access_token = SecretStr(str(body["access_token"]))
            refresh_token = SecretStr(
                str(body.get("refresh_token") or auth.refresh_token.get_secret_value())
            )
        except (KeyError, TypeError, ValueError, OverflowError, OSError) as exc:
            msg = f"Malformed token endpoint response: {exc}"
            raise ApiError(msg) from exc
        return auth.model_copy(
            update={
                "access_token": access_token,
                "refresh_token": refresh_token,
                "expires_on": expires_on,
            },
        )

    # -- topology -----------------------------------------------------------

    async def get_plants(self, auth: AuthorizationInfo) -> list[PlantDetail]:
        body = await self._request(
            "GET",
            f"{self._settings.base_uri}/plants",
            headers=self._headers(auth),
        )
        return _parse(_PLANTS, _member(body, "plants", []), "plants")

    async def get_topology(self, auth: AuthorizationInfo, plant_id: str) -> PlantDetail:
        body = await self._request(
            "GET",
            f"{self._settings.base_uri}/plants/{plant_id}/topology",
            headers=self._headers(auth),
        )
        return _parse(PlantDetail, _member(body, "plant", None), "topology")

    # -- device status ------------------------------------------------------

    async def get_device_status(
        self,
        auth: AuthorizationInfo,
        plant_id: str,
        module_id: str,
    ) -> ModuleStatus:
        body = await self._request(
            "GET",
            self._module_url(plant_id, module_id),
            headers=self._headers(auth),
        )
        return _parse(ModuleStatus, body or {}, "device status")

    async def set_device_status(
        self,
        auth: AuthorizationInfo,
        plant_id: str,
        module_id: str,
        request: SetStatusRequest,
    ) -> None:
        await self._request(
            "POST",
            self._module_url(plant_id, module_id),
            headers=self._headers(auth),
            json=request.to_wire(),
        )

    # -- webhooks -----------------------------------------------------------

    async def register_webhook(
        self,
        auth: AuthorizationInfo,
        plant_id: str,
        endpoint_url: str,
    ) -> SubscriptionInfo:
        body = await self._request(
            "POST",
            f"{self._settings.base_uri}/plants/{plant_id}/subscription",
            headers=self._headers(auth),
            json={"EndPointUrl": endpoint_url},
        )
        subscription = _parse(SubscriptionInfo, body, "subscription")
        # The platform does not always echo these back.
        return subscription.model_copy(
            update={
                "plant_id": subscription.plant_id or plant_id,
                "endpoint_url": subscription.endpoint_url or endpoint_url,
            },
        )

    async def unregister_webhook(
        self,
        auth: AuthorizationInfo,
        plant_id: str,
        subscription_id: str,
    ) -> None:
        await self._request(
            "DELETE",
            f"{self._settings.base_uri}/plants/{plant_id}/subscription/{subscription_id}",
            headers=self._headers(auth),
        )

    async def list_webhooks(self, auth: AuthorizationInfo) -> list[SubscriptionInfo]:
        body = await self._request(
            "GET",
            f"{self._settings.base_uri}/subscription",
            headers=self._headers(auth),
        )
        return _parse(_SUBSCRIPTIONS, body or [], "subscriptions")


def _parse(model: Any, raw: Any, what: str) -> Any:
    try:
        if isinstance(model, TypeAdapter):
            return model.validate_python(raw)
        return model.model_validate(raw)
    except ValidationError as exc:
        msg = f"Unexpected {what} payload: {exc}"
        raise ApiError(msg) from exc


def _member(body: Any, key: str, default: Any) -> Any:
    return body.get(key, default) if isinstance(body, dict) else default


def _expiry(body: dict[str, Any], now: datetime) -> datetime:
    """Absolute expiry from ``expires_on`` (epoch) or ``expires_in`` (seconds after *now*)."""
    if "expires_on" in body:
        return datetime.fromtimestamp(float(body["expires_on"]), tz=UTC)
    return now + timedelta(seconds=float(body.get("expires_in", 3600)))


# ---------------------------------------------------------------------------
# Mock / test-double adapter
# ---------------------------------------------------------------------------


@dataclass
class MockSmartherApi:
    """In-memory test double recording every cloud call.

    Failures are injected per operation:

    - ``fail_refresh`` — every refresh raises :class:`ApiError`
    - ``fail_register`` / ``fail_unregister`` — plant ids whose webhook
      (un)registration raises
    - ``fail_set_status`` — every set-status call raises
    - ``fail_list`` — listing webhooks raises

    ``refreshed_lifetime`` is the lifetime given to refreshed credentials.
    """

    plants: list[PlantDetail] = field(default_factory=list)
    statuses: dict[tuple[str, str], ModuleStatus] = field(default_factory=dict)
    webhooks: list[SubscriptionInfo] = field(default_factory=list)
    refreshed_lifetime: timedelta = timedelta(hours=1)
    fail_refresh: bool = False
    fail_register: set[str] = field(default_factory=set)
    fail_unregister: set[str] = field(default_factory=set)
    fail_set_status: bool = False
    fail_list: bool = False

    calls: list[tuple[str, tuple[Any, ...]]] = field(default_factory=list)
    refresh_count: int = 0
    _next_id: int = field(default=0, init=False, repr=False)

    def calls_to(self, operation: str) -> list[tuple[Any, ...]]:
        return [args for name, args in self.calls if name == operation]

    async def refresh_token(self, auth: AuthorizationInfo) -> AuthorizationInfo:
        self.calls.append(("refresh_token", (auth.refresh_token.get_secret_value(),)))
        await asyncio.sleep(0)
        if self.fail_refresh:
            msg = "simulated refresh failure"
            raise ApiError(msg, status=503)
        self.refresh_count += 1
        return auth.model_copy(
            update={
                "access_token": SecretStr(f"access-{self.refresh_count}"),
                "refresh_token": SecretStr(f"refresh-{self.refresh_count}"),
                "expires_on": datetime.now(UTC) + self.refreshed_lifetime,
            },
        )

    async def get_plants(self, auth: AuthorizationInfo) -> list[PlantDetail]:
        self.calls.append(("get_plants", ()))
        return [PlantDetail(id=plant.id, name=plant.name) for plant in self.plants]

    async def get_topology(self, auth: AuthorizationInfo, plant_id: str) -> PlantDetail:
        self.calls.append(("get_topology", (plant_id,)))
        for plant in self.plants:
            if plant.id == plant_id:
                return plant
        msg = f"unknown plant {plant_id}"
        raise ApiError(msg, status=404)

    async def get_device_status(
        self,
        auth: AuthorizationInfo,
        plant_id: str,
        module_id: str,
    ) -> ModuleStatus:
        self.calls.append(("get_device_status", (plant_id, module_id)))
        try:
            return self.statuses[(plant_id, module_id)]
        except KeyError:
            msg = f"no status for {plant_id}/{module_id}"
            raise ApiError(msg, status=404) from None

    async def set_device_status(
        self,
        auth: AuthorizationInfo,
        plant_id: str,
        module_id: str,
        request: SetStatusRequest,
    ) -> None:
        self.calls.append(("set_device_status", (plant_id, module_id, request)))
        if self.fail_set_status:
            msg = "simulated set-status failure"
            raise ApiError(msg, status=500)

    async def register_webhook(
        self,
        auth: AuthorizationInfo,
        plant_id: str,
        endpoint_url: str,
    ) -> SubscriptionInfo:
        self.calls.append(("register_webhook", (plant_id, endpoint_url)))
        if plant_id in self.fail_register:
            msg = f"simulated registration failure for {plant_id}"
            raise ApiError(msg, status=500)
        self._next_id += 1
        subscription = SubscriptionInfo(
            subscription_id=f"sub-{self._next_id}",
            plant_id=plant_id,
            endpoint_url=endpoint_url,
        )
        self.webhooks.append(subscription)
        return subscription

    async def unregister_webhook(
        self,
        auth: AuthorizationInfo,
        plant_id: str,
        subscription_id: str,
    ) -> None:
        self.calls.append(("unregister_webhook", (plant_id, subscription_id)))
        if plant_id in self.fail_unregister:
            msg = f"simulated unregistration failure for {plant_id}"
            raise ApiError(msg, status=500)
        self.webhooks = [
            sub for sub in self.webhooks if sub.subscription_id != subscription_id
        ]

    async def list_webhooks(self, auth: AuthorizationInfo) -> list[SubscriptionInfo]:
        self.calls.append(("list_webhooks", ()))
        if self.fail_list:
            msg = "simulated list failure"
            raise ApiError(msg, status=500)
        return list(self.webhooks)
