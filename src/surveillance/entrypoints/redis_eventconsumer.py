"""Redis sync worker - runs sync requests published on surveillance:sync-requests."""

import json
import logging
import redis
from sqlalchemy import create_engine

import config
from surveillance.service_layer import messagebus
from surveillance.domain import commands
from surveillance.service_layer.unit_of_work import SqlAlchemyUnitOfWork
from surveillance.adapters import orm
from surveillance.adapters.redis_adapter import SYNC_REQUESTS_CHANNEL

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

r = redis.Redis(**config.get_redis_host_and_port())


def main():
    """Main entry point for the sync worker."""
    logger.info("Surveillance sync worker starting")

    # Initialize database and ORM mappers (Cosmic Python pattern)
    engine = create_engine(config.get_postgres_uri())
    orm.metadata.create_all(engine)
    orm.start_mappers()
    logger.info("Database tables created and ORM mappers initialized")

    pubsub = r.pubsub(ignore_subscribe_messages=True)
    pubsub.subscribe(SYNC_REQUESTS_CHANNEL)

    logger.info(f"Subscribed to '{SYNC_REQUESTS_CHANNEL}' channel, waiting for messages...")

    for m in pubsub.listen():
        handle_sync_request(m)


def build_command(data):
    """
    Translate a sync request message into a command.

    Message shapes:
        {"action": "pull", "sourceId", "region", "startDate", "endDate", "pushTo"?}
        {"action": "push" | "acknowledge", "destinationSystem", "region"}
    """
    action = data.get("action")
    if action == "pull":
        return commands.RunPull(
            source_id=data.get("sourceId", "labware"),
            region=data["region"],
            start_date=data["startDate"],
            end_date=data["endDate"],
            requested_by=data.get("requestedBy"),
            push_to=data.get("pushTo"),
        )
    if action == "push":
        return commands.RunPush(
            destination_system=data["destinationSystem"],
            region=data["region"],
            requested_by=data.get("requestedBy"),
        )
    if action == "acknowledge":
        return commands.AcknowledgeSubmissions(
            destination_system=data["destinationSystem"],
            region=data["region"],
            requested_by=data.get("requestedBy"),
        )
    return None


def handle_sync_request(m, uow=None):
    """Handle one pubsub message; failures are logged, never raised into the listen loop."""
    logger.info("Received message: %s", m)

    try:
        data = json.loads(m["data"])
        command = build_command(data)
        if command is None:
            logger.error("Unknown sync request: %s", data)
            return

        results = messagebus.handle(command, uow or SqlAlchemyUnitOfWork())
        logger.info(f"Sync request {data.get('action')} finished, results: {results}")

    except json.JSONDecodeError as e:
        logger.error(f"Failed to parse JSON from message: {e}")
    except KeyError as e:
        logger.error(f"Sync request is missing {e}")
    except Exception as e:
        logger.error(f"Error handling sync request: {e}", exc_info=True)


if __name__ == "__main__":
    main()
