"""Configuration settings for the study workflow service."""

import os


def get_postgres_uri():
    """Get PostgreSQL connection URI from environment variables."""
    host = os.environ.get("DB_HOST", "localhost")
    port = 5433 if host == "localhost" else 5432
    password = os.environ.get("DB_PASSWORD", "workflow_pass")
    user = os.environ.get("DB_USER", "workflow_user")
    db_name = os.environ.get("DB_NAME", "workflow_db")
    return f"postgresql://{user}:{password}@{host}:{port}/{db_name}"


def get_redis_host_and_port():
    """Get Redis connection details from environment variables."""
    host = os.environ.get("REDIS_HOST", "localhost")
    port = int(os.environ.get("REDIS_PORT", 6379))
    return dict(host=host, port=port)


def get_document_store_url():
    """Base URL of the report/document store collaborator."""
    host = os.environ.get("DOCUMENT_STORE_HOST", "localhost")
    port = int(os.environ.get("DOCUMENT_STORE_PORT", 8002))
    return f"http://{host}:{port}"


def get_collaborator_timeout_seconds():
    """Deadline for any single call into an external collaborator."""
    return float(os.environ.get("COLLABORATOR_TIMEOUT_SECONDS", "10"))


def get_bulk_max_workers():
    """Upper bound on concurrently running items of one bulk operation."""
    return int(os.environ.get("BULK_MAX_WORKERS", "8"))


def get_bulk_confirmation_threshold():
    """Batch size above which zip/export requests must be confirmed."""
    return int(os.environ.get("BULK_CONFIRMATION_THRESHOLD", "20"))


def get_assignment_settle_timeout_seconds():
    """How long an assignment waits for overlapping assignments to settle."""
    return float(os.environ.get("ASSIGNMENT_SETTLE_TIMEOUT_SECONDS", "5"))
