"""
Broker client for the Upstash Kafka REST API.

The broker is a black box offering two calls: publish a serialized payload to a
topic, and poll a topic on behalf of a consumer group instance. Both are
single-shot; retry policy belongs to the producer.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from bountyqueue.config import Settings, get_settings
from bountyqueue.constants import OFFSET_RESET_EARLIEST
from bountyqueue.exceptions import BrokerError

logger = logging.getLogger(__name__)


@dataclass
class ProduceAck:
    """Broker acknowledgement of a published record."""

    topic: str
    partition: int
    offset: int
    timestamp: int | None = None


@dataclass
class BrokerRecord:
    """A raw record returned by a consume call."""

    topic: str
    value: str
    partition: int = 0
    offset: int = 0
    timestamp: int | None = None
    key: str | None = None
    headers: list[dict[str, str]] = field(default_factory=list)


class BrokerClient(Protocol):
    """Single-shot publish/poll primitives of a log-structured broker."""

    async def produce(
        self,
        topic: str,
        value: str,
        *,
        key: str | None = None,
        partition: int | None = None,
        headers: dict[str, str] | None = None,
    ) -> ProduceAck:
        ...

    async def consume(
        self,
        *,
        group: str,
        instance: str,
        topics: list[str],
        offset_reset: str = OFFSET_RESET_EARLIEST,
    ) -> list[BrokerRecord]:
        ...

    async def aclose(self) -> None:
        ...


class UpstashRestBroker:
    """
    BrokerClient over the Upstash Kafka REST API.

    Each call is an independent HTTP request authenticated with basic auth,
    so instances can be shared across loops without locking.
    """

    def __init__(
        self,
        url: str,
        username: str,
        password: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Initialize the broker client.

        Args:
            url: REST endpoint of the Kafka cluster.
            username: REST username.
            password: REST password.
            timeout: Per-request timeout in seconds.
            transport: Optional httpx transport (used by tests).
        """
        self._client = httpx.AsyncClient(
            base_url=url.rstrip("/"),
            auth=(username, password),
            timeout=timeout,
            transport=transport,
        )

    async def produce(
        self,
        topic: str,
        value: str,
        *,
        key: str | None = None,
        partition: int | None = None,
        headers: dict[str, str] | None = None,
    ) -> ProduceAck:
        """
        Publish one record.

        Raises:
            BrokerError: On transport failure or a non-2xx response.
        """
        body: dict[str, Any] = {"topic": topic, "value": value}
        if key is not None:
            body["key"] = key
        if partition is not None:
            body["partition"] = partition
        if headers:
            body["headers"] = [{"key": k, "value": v} for k, v in headers.items()]

        data = await self._post("/produce", body)
        if isinstance(data, list):
            data = data[0] if data else {}
        if "error" in data:
            raise BrokerError(str(data["error"]))

        return ProduceAck(
            topic=data.get("topic", topic),
            partition=int(data.get("partition", 0)),
            offset=int(data.get("offset", 0)),
            timestamp=data.get("timestamp"),
        )

    async def consume(
        self,
        *,
        group: str,
        instance: str,
        topics: list[str],
        offset_reset: str = OFFSET_RESET_EARLIEST,
    ) -> list[BrokerRecord]:
        """
        Poll the given topics for a consumer group instance.

        Raises:
            BrokerError: On transport failure or a non-2xx response.
        """
        body = {"topics": topics, "autoOffsetReset": offset_reset}
        data = await self._post(f"/consume/{group}/{instance}", body)

        return [
            BrokerRecord(
                topic=item.get("topic", ""),
                value=item.get("value", ""),
                partition=int(item.get("partition", 0)),
                offset=int(item.get("offset", 0)),
                timestamp=item.get("timestamp"),
                key=item.get("key"),
                headers=item.get("headers") or [],
            )
            for item in data or []
        ]

    async def _post(self, path: str, body: dict[str, Any]) -> Any:
        try:
            response = await self._client.post(path, json=body)
        except httpx.HTTPError as e:
            raise BrokerError(f"Broker request failed: {e}") from e

        if not response.is_success:
            raise BrokerError(
                f"Broker returned HTTP {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )

        try:
            return response.json()
        except ValueError as e:
            raise BrokerError(f"Broker returned invalid JSON: {e}") from e

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()


def create_broker(settings: Settings | None = None) -> UpstashRestBroker | None:
    """
    Create a broker client from settings.

    Args:
        settings: Settings to read credentials from. Defaults to cached settings.

    Returns:
        The broker client, or None when credentials are missing.
    """
    settings = settings or get_settings()
    if not settings.broker_configured:
        logger.info("Broker credentials not configured; queue components are inert")
        return None

    return UpstashRestBroker(
        url=settings.upstash_kafka_rest_url,
        username=settings.upstash_kafka_rest_username,
        password=settings.upstash_kafka_rest_password,
        timeout=settings.broker_request_timeout_seconds,
    )
