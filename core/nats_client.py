"""
NATS JetStream Client for Python Microservices

Event bus over nats-py. Events are JSON envelopes published on a subject
equal to the event type; each subject prefix maps to one JetStream stream.
"""

import json
import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union, TYPE_CHECKING

import nats
from nats.aio.client import Client as NATS
from nats.aio.msg import Msg
from nats.js import JetStreamContext
from nats.js.errors import BadRequestError

if TYPE_CHECKING:
    from core.config_manager import ConfigManager


class DecimalEncoder(json.JSONEncoder):
    """Custom JSON encoder that handles Decimal and datetime types"""
    def default(self, obj):
        if isinstance(obj, Decimal):
            return str(obj)
        if isinstance(obj, datetime):
            return obj.isoformat()
        return super().default(obj)


logger = logging.getLogger(__name__)


EventHandler = Callable[["Event"], Awaitable[None]]


class Event:
    """Event envelope"""

    def __init__(
        self,
        event_type: Union[Enum, str],
        source: Union[Enum, str],
        data: Dict[str, Any],
        subject: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ):
        self.id = str(uuid.uuid4())
        self.type = event_type.value if isinstance(event_type, Enum) else event_type
        self.source = source.value if isinstance(source, Enum) else source
        self.data = data
        self.subject = subject
        self.timestamp = datetime.now(timezone.utc).isoformat()
        self.metadata = metadata or {}
        self.version = "1.0.0"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "source": self.source,
            "subject": self.subject,
            "timestamp": self.timestamp,
            "data": self.data,
            "metadata": self.metadata,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Event":
        event = cls.__new__(cls)
        event.id = data.get("id") or str(uuid.uuid4())
        event.type = data.get("type")
        event.source = data.get("source")
        event.subject = data.get("subject")
        event.timestamp = data.get("timestamp")
        event.data = data.get("data", {})
        event.metadata = data.get("metadata", {})
        event.version = data.get("version", "1.0.0")
        return event


class NATSEventBus:
    """NATS JetStream event bus"""

    def __init__(
        self,
        service_name: str,
        config: Optional["ConfigManager"] = None,
        url: Optional[str] = None,
    ):
        from core.config_manager import ConfigManager

        self.service_name = service_name

        # Priority: explicit url → environment variables → default fallback
        if config is None:
            config = ConfigManager(service_name)

        infra = config.settings.infrastructure
        if url or infra.nats_url:
            self.url = url or infra.nats_url
        else:
            host, port = config.discover_service(
                service_name="nats_service",
                default_host=infra.nats_host,
                default_port=infra.nats_port,
                env_host_key="NATS_HOST",
                env_port_key="NATS_PORT",
            )
            self.url = f"nats://{host}:{port}"

        self._nc: Optional[NATS] = None
        self._js: Optional[JetStreamContext] = None
        self._subscriptions: Dict[str, JetStreamContext.PushSubscription] = {}
        self._known_streams: Set[str] = set()

        logger.info(f"NATS EventBus initialized: {self.url}")

    async def connect(self):
        """Connect to NATS and open a JetStream context"""
        try:
            self._nc = await nats.connect(self.url, name=self.service_name)
            self._js = self._nc.jetstream()
            logger.info(f"Connected to NATS as {self.service_name}")
        except Exception as e:
            logger.error(f"Failed to connect to NATS at {self.url}: {e}")
            raise

    @staticmethod
    def _get_stream_name_for_event(event_type: str) -> str:
        """campaign.locked -> campaign-stream"""
        prefix = event_type.split('.')[0]
        return f"{prefix.replace('_', '-')}-stream"

    async def _ensure_stream(self, subject: str) -> str:
        prefix = subject.split('.')[0]
        stream_name = self._get_stream_name_for_event(prefix)
        if stream_name in self._known_streams:
            return stream_name

        try:
            await self._js.add_stream(name=stream_name, subjects=[f"{prefix}.>"])
        except BadRequestError as e:
            # Stream exists with a different configuration
            logger.debug(f"Stream creation note for {stream_name}: {e}")
        self._known_streams.add(stream_name)
        return stream_name

    async def publish_event(self, event: Event) -> bool:
        """Publish an event to its JetStream stream"""
        if not self.is_connected:
            logger.error("Not connected to NATS")
            return False

        try:
            stream_name = await self._ensure_stream(event.type)
            data = json.dumps(event.to_dict(), cls=DecimalEncoder).encode()
            ack = await self._js.publish(event.type, data, headers={"Nats-Msg-Id": event.id})
            logger.info(f"Published event {event.type} [{event.id}] to stream {stream_name}, seq={ack.seq}")
            return True
        except Exception as e:
            logger.error(f"Error publishing event {event.id}: {e}")
            return False

    async def subscribe_to_events(
        self, pattern: str, handler: EventHandler, durable: Optional[str] = None
    ) -> Optional[str]:
        """
        Subscribe to events with a pattern using a durable JetStream consumer.

        Messages are acknowledged after the handler returns and negatively
        acknowledged (redelivered) when it raises.
        """
        if not self.is_connected:
            logger.error("Not connected to NATS")
            return None

        await self._ensure_stream(pattern)

        async def _on_message(msg: Msg):
            try:
                payload = json.loads(msg.data.decode())
                if "type" in payload and "data" in payload:
                    event = Event.from_dict(payload)
                else:
                    event = Event(event_type=msg.subject, source="unknown", data=payload, subject=msg.subject)
                await handler(event)
                await msg.ack()
            except Exception as e:
                logger.error(f"Error processing message on {msg.subject}: {e}")
                await msg.nak()

        consumer = durable or f"{self.service_name}-{pattern.split('.')[0]}"
        sub = await self._js.subscribe(pattern, cb=_on_message, durable=consumer, manual_ack=True)
        self._subscriptions[pattern] = sub
        logger.info(f"Subscribed to {pattern} (durable={consumer})")
        return consumer

    async def unsubscribe(self, pattern: str) -> bool:
        sub = self._subscriptions.pop(pattern, None)
        if sub is None:
            return False
        await sub.unsubscribe()
        logger.info(f"Unsubscribed from {pattern}")
        return True

    async def close(self):
        """Drain subscriptions and close the connection"""
        for pattern in list(self._subscriptions.keys()):
            await self.unsubscribe(pattern)

        if self._nc is not None:
            await self._nc.drain()
            self._nc = None
            self._js = None

        logger.info("Disconnected from NATS")

    @property
    def is_connected(self) -> bool:
        return self._nc is not None and self._nc.is_connected

    @property
    def subscribed_patterns(self) -> List[str]:
        return list(self._subscriptions.keys())


# Singleton instance
_event_bus: Optional[NATSEventBus] = None


async def get_event_bus(
    service_name: str,
    config: Optional["ConfigManager"] = None,
) -> NATSEventBus:
    """Get or create the process event bus"""
    global _event_bus

    if _event_bus is None:
        _event_bus = NATSEventBus(service_name=service_name, config=config)
        await _event_bus.connect()

    return _event_bus
