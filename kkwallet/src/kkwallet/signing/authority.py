"""
Signing authority transports.

A signing authority holds the private keys (a KeepKey) and answers one
protocol message at a time.
"""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod

import httpx
from loguru import logger
from pydantic import ValidationError

from kkwallet.errors import AuthorityUnavailable, UnexpectedAuthorityState
from kkwallet.signing.messages import (
    DEVICE_MESSAGE_ADAPTER,
    Cancel,
    DeviceMessage,
    HostMessage,
)


class SigningAuthority(ABC):
    @abstractmethod
    async def exchange(self, message: HostMessage, request_id: str) -> DeviceMessage:
        """Send one message and wait for the device's reply"""

    @abstractmethod
    async def cancel(self) -> None:
        """Ask the device to abort whatever it is waiting for"""

    async def close(self) -> None:
        """Release transport resources"""


class BridgeAuthority(SigningAuthority):
    """
    KeepKey reached through a local REST bridge.

    Each message is POSTed as JSON to ``<bridge_url>/exchange`` together with
    the request id of the signing attempt; the response body is the device's
    reply. Replies can take as long as the user needs to confirm on the
    device, so reads have no client-side timeout and the coordinator bounds
    the wait instead.
    """

    def __init__(
        self,
        bridge_url: str = "http://127.0.0.1:1646",
        connect_timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.bridge_url = bridge_url.rstrip("/")
        self.client = httpx.AsyncClient(
            timeout=httpx.Timeout(connect_timeout, read=None),
            transport=transport,
        )

    async def exchange(self, message: HostMessage, request_id: str) -> DeviceMessage:
        payload = {"request_id": request_id, "message": message.model_dump(mode="json")}
        logger.trace(f"-> {message.type} [{request_id}]")
        try:
            response = await self.client.post(f"{self.bridge_url}/exchange", json=payload)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"KeepKey bridge request failed: {e}")
            raise AuthorityUnavailable(f"KeepKey bridge unavailable: {e}") from e

        try:
            reply = DEVICE_MESSAGE_ADAPTER.validate_json(response.content)
        except ValidationError as e:
            logger.error(f"Undecodable reply from KeepKey bridge: {response.text[:200]}")
            raise UnexpectedAuthorityState(f"Undecodable device reply: {e}") from e

        logger.trace(f"<- {reply.type} [{request_id}]")
        return reply

    async def cancel(self) -> None:
        await self.exchange(Cancel(), f"cancel-{uuid.uuid4().hex}")

    async def close(self) -> None:
        await self.client.aclose()
