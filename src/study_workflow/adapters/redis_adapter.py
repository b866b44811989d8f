"""Redis adapter for publishing workflow events to the notification transport."""

import json
import logging
from dataclasses import asdict
from datetime import datetime
from enum import Enum
import redis

from config import get_redis_host_and_port
from study_workflow.domain.events import Event
from study_workflow.service_layer.notifier import AbstractTransport

logger = logging.getLogger(__name__)

CHANNEL_PREFIX = "workflow"

r = redis.Redis(**get_redis_host_and_port())


def _serialize_event(event: Event, scope: str) -> str:
    """Serialize event to JSON, handling datetime and enum values."""
    event_dict = asdict(event)

    for key, value in event_dict.items():
        if isinstance(value, datetime):
            event_dict[key] = value.isoformat()
        elif isinstance(value, Enum):
            event_dict[key] = value.value

    return json.dumps({
        "type": type(event).__name__,
        "scope": scope,
        "data": event_dict,
    })


def publish(channel: str, event: Event, scope: str):
    """Publish event to Redis channel."""
    logger.info("publishing: channel=%s, event=%s", channel, event)
    message = _serialize_event(event, scope)
    r.publish(channel, message)


class RedisTransport(AbstractTransport):
    """Hands ``{event, scope}`` pairs to the socket gateway through Redis pub/sub."""

    def send(self, scope: str, event: Event):
        publish(f"{CHANNEL_PREFIX}:{scope}", event, scope)
