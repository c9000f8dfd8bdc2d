"""Configuration settings for the surveillance sync core."""

import os


DEFAULT_REGION_CODES = (
    "TARRANT",
    "DALLAS",
    "DENTON",
    "COLLIN",
    "JOHNSON",
    "PARKER",
    "ELLIS",
    "KAUFMAN",
    "ROCKWALL",
    "WISE",
    "HOOD",
    "SOMERVELL",
)


def get_postgres_uri():
    """Get PostgreSQL connection URI for canonical storage."""
    url = os.environ.get("DATABASE_URL")
    if url:
        return url
    host = os.environ.get("DB_HOST", "localhost")
    port = os.environ.get("DB_PORT", 5433 if host == "localhost" else 5432)
    password = os.environ.get("DB_PASSWORD", "surveillance_pass")
    user = os.environ.get("DB_USER", "surveillance_user")
    db_name = os.environ.get("DB_NAME", "surveillance_db")
    return f"postgresql://{user}:{password}@{host}:{port}/{db_name}"


def get_redis_host_and_port():
    """Get Redis connection details from environment variables."""
    host = os.environ.get("REDIS_HOST", "localhost")
    port = int(os.environ.get("REDIS_PORT", 6379))
    return dict(host=host, port=port)


def get_redis_url():
    """Get Redis URL from environment variables."""
    redis_config = get_redis_host_and_port()
    return f"redis://{redis_config['host']}:{redis_config['port']}"


def get_minio_config():
    """Get MinIO connection configuration for rendered report documents."""
    host = os.environ.get("MINIO_HOST", "localhost")
    endpoint = f"{host}:9000"
    access_key = os.environ.get("MINIO_ACCESS_KEY", "minioadmin")
    secret_key = os.environ.get("MINIO_SECRET_KEY", "minioadmin123")
    bucket_name = os.environ.get("MINIO_BUCKET", "surveillance-reports")
    secure = os.environ.get("MINIO_SECURE", "false").lower() == "true"

    return dict(
        endpoint=endpoint,
        access_key=access_key,
        secret_key=secret_key,
        bucket_name=bucket_name,
        secure=secure
    )


def get_labware_connection():
    """Get LabWare LIMS credentials. Supplied by the deployment, never hard-coded."""
    return dict(
        server=os.environ.get("LABWARE_SERVER", "localhost"),
        database=os.environ.get("LABWARE_DATABASE", "LABWARE"),
        username=os.environ.get("LABWARE_USERNAME", ""),
        password=os.environ.get("LABWARE_PASSWORD", ""),
        port=int(os.environ.get("LABWARE_PORT", 1433)),
        timeout=int(os.environ.get("LABWARE_TIMEOUT_SECONDS", 30)),
    )


def get_nedss_config():
    """Get Texas NEDSS submission endpoint and credentials."""
    return dict(
        base_url=os.environ.get("NEDSS_URL", "https://nedss.dshs.texas.gov"),
        username=os.environ.get("NEDSS_USERNAME", ""),
        password=os.environ.get("NEDSS_PASSWORD", ""),
        timeout=int(os.environ.get("NEDSS_TIMEOUT_SECONDS", 30)),
    )


def get_arbonet_config():
    """Get CDC ArboNET upload endpoint and credentials."""
    return dict(
        base_url=os.environ.get("ARBONET_URL", "https://arbonet.cdc.gov"),
        username=os.environ.get("ARBONET_USERNAME", ""),
        password=os.environ.get("ARBONET_PASSWORD", ""),
        api_key=os.environ.get("ARBONET_API_KEY", ""),
        timeout=int(os.environ.get("ARBONET_TIMEOUT_SECONDS", 30)),
    )


def _parse_mapping(value):
    mapping = {}
    for item in value.split(","):
        if "=" in item:
            key, adapter = item.split("=", 1)
            mapping[key.strip()] = adapter.strip()
    return mapping


def get_source_adapters():
    """Map each sourceId to the adapter variant that serves it."""
    return _parse_mapping(os.environ.get("SURVEILLANCE_SOURCES", "labware=labware"))


def get_sink_adapters():
    """Map each destinationSystem to the adapter variant that serves it."""
    return _parse_mapping(
        os.environ.get("SURVEILLANCE_SINKS", "nedss=nedss,arbonet=arbonet")
    )


def get_case_destination_system():
    """Sink that newly promoted cases are addressed to."""
    return os.environ.get("CASE_DESTINATION_SYSTEM", "nedss")


def get_retry_policy():
    """Retry/backoff policy applied to adapter calls that raise AdapterUnavailable."""
    return dict(
        attempts=int(os.environ.get("ADAPTER_RETRY_ATTEMPTS", 3)),
        wait_min=float(os.environ.get("ADAPTER_RETRY_WAIT_MIN", 1)),
        wait_max=float(os.environ.get("ADAPTER_RETRY_WAIT_MAX", 30)),
        multiplier=float(os.environ.get("ADAPTER_RETRY_MULTIPLIER", 2)),
    )


def get_reportable_test_types():
    """Test types whose positive results are reportable. Empty means all of them."""
    raw = os.environ.get("REPORTABLE_TEST_TYPES", "")
    return frozenset(t.strip().upper() for t in raw.split(",") if t.strip())


def get_pull_batch_size():
    return int(os.environ.get("PULL_BATCH_SIZE", 500))


def get_push_batch_size():
    return int(os.environ.get("PUSH_BATCH_SIZE", 25))


def get_push_batch_delay_seconds():
    return float(os.environ.get("PUSH_BATCH_DELAY_SECONDS", 2))


def get_sync_lock_config():
    """Backend and lease TTL for the per-(source, region) sync lock."""
    return dict(
        backend=os.environ.get("SYNC_LOCK_BACKEND", "redis"),
        ttl_seconds=int(os.environ.get("SYNC_LOCK_TTL_SECONDS", 900)),
    )


def get_region_codes():
    """Known county/region codes accepted by validation."""
    extra = os.environ.get("SURVEILLANCE_REGION_CODES", "")
    codes = set(DEFAULT_REGION_CODES)
    codes.update(c.strip().upper() for c in extra.split(",") if c.strip())
    return frozenset(codes)
