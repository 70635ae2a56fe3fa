"""Configuration settings for the LIMS lifecycle service."""

import os


def get_postgres_uri():
    """Get PostgreSQL connection URI from environment variables."""
    url = os.environ.get("DATABASE_URL")
    if url:
        return url
    host = os.environ.get("DB_HOST", "localhost")
    port = os.environ.get("DB_PORT", 5433 if host == "localhost" else 5432)
    password = os.environ.get("DB_PASSWORD", "lims_pass")
    user = os.environ.get("DB_USER", "lims_user")
    db_name = os.environ.get("DB_NAME", "lims_db")
    return f"postgresql://{user}:{password}@{host}:{port}/{db_name}"


def get_redis_host_and_port():
    """Get Redis connection details from environment variables."""
    host = os.environ.get("REDIS_HOST", "localhost")
    port = int(os.environ.get("REDIS_PORT", 6379))
    return dict(host=host, port=port)


def get_lab_timezone():
    """IANA timezone whose calendar day scopes identifier sequences."""
    return os.environ.get("LAB_TIMEZONE", "UTC")


def get_log_level():
    return os.environ.get("LOG_LEVEL", "INFO").upper()
