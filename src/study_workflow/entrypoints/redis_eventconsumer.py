"""Redis event consumer for the study workflow - listens to StudyStored events from the archive."""

import json
import logging
from datetime import datetime, timezone
import redis
from sqlalchemy import create_engine

import config
from study_workflow import bootstrap
from study_workflow.adapters import orm
from study_workflow.domain.exceptions import WorkflowError
from study_workflow.domain.model import Actor, Role

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

STUDIES_CHANNEL = "pacs:studies"
INGESTION_ACTOR = Actor(user_id="pacs-ingestion", role=Role.SYSTEM)

r = redis.Redis(**config.get_redis_host_and_port())


def main():
    """Main entry point for Redis event consumer."""
    logger.info("Study workflow Redis pubsub consumer starting")

    # Initialize database and ORM mappers (Cosmic Python pattern)
    logger.info("Initializing database schema and ORM mappers...")
    engine = create_engine(config.get_postgres_uri())
    orm.metadata.create_all(engine)
    service = bootstrap.bootstrap()
    logger.info("Database tables created and workflow service ready")

    pubsub = r.pubsub(ignore_subscribe_messages=True)
    pubsub.subscribe(STUDIES_CHANNEL)

    logger.info(f"Subscribed to '{STUDIES_CHANNEL}' channel, waiting for messages...")

    for m in pubsub.listen():
        handle_study_stored(m, service)


def parse_timestamp(value):
    """ISO-8601 timestamps from the archive, 'Z' suffix included. Naive ones are UTC."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def handle_study_stored(m, service):
    """
    Handle StudyStored event from Redis.

    The archive publishes one message per stored study, and repeats it for
    every additional series. Repeats are harmless: registering a known
    study is a no-op.

    Args:
        m: Redis message dictionary
        service: WorkflowService to register the study with
    """
    logger.info("Received message: %s", m)

    try:
        data = json.loads(m["data"])
        study_id = data.get("study_id")

        if not study_id:
            logger.error("No study_id in message: %s", data)
            return

        metadata = {
            "accession_number": data.get("accession_number"),
            "patient_id": data.get("patient_id"),
            "patient_name": data.get("patient_name"),
            "modality": data.get("modality"),
            "location_id": data.get("location_id"),
            "study_date": parse_timestamp(data.get("study_date")),
            "priority": data.get("priority"),
            "uploaded_at": parse_timestamp(data.get("stored_at")),
        }
        created = service.create_or_touch_study(study_id, metadata, INGESTION_ACTOR)

        logger.info(f"Processed StudyStored event for study {study_id}, created={created}")

    except json.JSONDecodeError as e:
        logger.error(f"Failed to parse JSON from message: {e}")
    except ValueError as e:
        logger.error(f"Malformed StudyStored event: {e}")
    except WorkflowError as e:
        logger.error(f"StudyStored event rejected: {e.kind.value}: {e}")


if __name__ == "__main__":
    main()
