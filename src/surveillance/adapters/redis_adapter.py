"""Redis adapter for publishing surveillance events following Cosmic Python pattern."""

import json
import logging
from dataclasses import asdict
from datetime import date, datetime
from enum import Enum

import redis

from config import get_redis_host_and_port
from shared.domain.commands import Event

logger = logging.getLogger(__name__)

r = redis.Redis(**get_redis_host_and_port())

CASES_CHANNEL = "surveillance:cases"
REPORTS_CHANNEL = "surveillance:reports"
SYNC_CHANNEL = "surveillance:sync"
SYNC_REQUESTS_CHANNEL = "surveillance:sync-requests"


def _default(value):
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    raise TypeError(f"{type(value).__name__} is not JSON serializable")


def _serialize_event(event: Event) -> str:
    """Serialize event to JSON, tagging it with its type."""
    event_dict = asdict(event)
    event_dict["type"] = type(event).__name__
    return json.dumps(event_dict, default=_default)


def publish(channel: str, event: Event):
    """Publish event to Redis channel."""
    logger.info("publishing: channel=%s, event=%s", channel, event)
    message = _serialize_event(event)
    r.publish(channel, message)
