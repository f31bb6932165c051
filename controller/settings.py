"""
Controller configuration loaded from environment variables
"""

import os


class Config:
    """Controller configuration loaded from environment variables"""

    # Kubernetes settings
    NAMESPACE = os.getenv("NAMESPACE", "postgres")
    FIELD_MANAGER = os.getenv("FIELD_MANAGER", "postgrescluster-controller")
    EVENT_SOURCE = os.getenv("EVENT_SOURCE", "postgrescluster-controller")

    # Custom resource
    GROUP = "postgres-operator.pgreconciler.dev"
    VERSION = "v1beta1"
    PLURAL = "postgresclusters"
    KIND = "PostgresCluster"

    # Controller settings
    SYNC_INTERVAL = int(os.getenv("SYNC_INTERVAL", "30"))
    RECONCILE_TIMEOUT = float(os.getenv("RECONCILE_TIMEOUT", "120"))
    # Status writes get their own deadline so an expired pass can still record revisions
    STATUS_TIMEOUT = float(os.getenv("STATUS_TIMEOUT", "10"))
    DRY_RUN = os.getenv("DRY_RUN", "false").lower() == "true"
    MAX_RETRIES = int(os.getenv("MAX_RETRIES", "5"))
    RETRY_BACKOFF_BASE = float(os.getenv("RETRY_BACKOFF_BASE", "2.0"))
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    # When set, clusters are read from this YAML file instead of the API
    MANIFEST_FILE = os.getenv("MANIFEST_FILE", "")

    # PostgreSQL defaults
    DEFAULT_PORT = 5432
    DEFAULT_POSTGRES_VERSION = int(os.getenv("DEFAULT_POSTGRES_VERSION", "16"))
    GENERATED_PASSWORD_LENGTH = 24
    SCRAM_ITERATIONS = 4096
    SCRAM_SALT_LENGTH = 16
