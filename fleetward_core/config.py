import os
from dataclasses import dataclass
from functools import lru_cache

from fleetward_core.storage.paths import (
    backend_scheme,
    data_root,
    has_uri_scheme,
    join_uri,
    normalize_bucket_uri,
)

DEFAULT_STAGE_PERCENTAGES: tuple[int, ...] = (5, 25, 50, 100)
DEFAULT_EXPAND_AFTER_MINUTES = 30
DEFAULT_FAILURE_THRESHOLD = 10


@dataclass(frozen=True)
class Config:
    env: str
    log_level: str
    storage_backend: str
    local_data_root: str | None
    data_bucket: str
    data_prefix: str
    control_plane_store: str
    rollout_sqlite_path: str | None
    default_stage_percentages: tuple[int, ...]
    default_auto_expand: bool
    default_expand_after_minutes: int
    default_failure_threshold: int
    eval_interval_seconds: int
    scheduler_enabled: bool
    webhooks_enabled: bool
    webhook_timeout_s: float
    webhook_max_attempts: int

    def data_root_uri(self) -> str:
        if self.storage_backend == "local":
            if not self.local_data_root:
                raise ValueError("LOCAL_DATA_ROOT is required for local storage")
            return self.local_data_root
        return data_root(self.bucket_uri(self.data_bucket), self.data_prefix)

    def storage_scheme(self) -> str | None:
        return backend_scheme(self.storage_backend)

    def bucket_uri(self, bucket: str) -> str:
        scheme = self.storage_scheme()
        if self.storage_backend != "local" and scheme is None and not has_uri_scheme(
            bucket
        ):
            raise ValueError(
                "Bucket must include a URI scheme when STORAGE_BACKEND="
                f"{self.storage_backend} (example: s3://bucket)"
            )
        return normalize_bucket_uri(bucket, scheme=scheme)

    def sqlite_path(self) -> str:
        if self.rollout_sqlite_path:
            return self.rollout_sqlite_path
        if self.storage_backend != "local":
            raise ValueError("ROLLOUT_SQLITE_PATH is required for remote storage")
        return join_uri(self.data_root_uri(), "control", "rollouts.db")

    @classmethod
    def from_env(cls) -> "Config":
        missing: list[str] = []

        def require(name: str) -> str:
            value = os.getenv(name)
            if value is None or value == "":
                missing.append(name)
                return ""
            return value

        storage_backend = os.getenv("STORAGE_BACKEND", "local").strip().lower()
        allowed_backends = {"local", "gcs", "gs", "s3", "remote", "azure"}
        if storage_backend not in allowed_backends:
            allowed = ", ".join(sorted(allowed_backends))
            raise ValueError(f"STORAGE_BACKEND must be one of: {allowed}")

        remote_required = storage_backend != "local"
        data_bucket = require("DATA_BUCKET") if remote_required else os.getenv(
            "DATA_BUCKET", ""
        )
        data_prefix = os.getenv("DATA_PREFIX", "fleetward").strip("/")
        local_data_root = os.getenv("LOCAL_DATA_ROOT")
        if storage_backend == "local" and not local_data_root:
            missing.append("LOCAL_DATA_ROOT")
        env = require("ENV")
        log_level = os.getenv("LOG_LEVEL", "INFO").strip().upper()

        control_plane_store = os.getenv("CONTROL_PLANE_STORE", "json").strip().lower()
        if control_plane_store not in {"json", "sqlite"}:
            raise ValueError("CONTROL_PLANE_STORE must be one of: json, sqlite")
        rollout_sqlite_path = os.getenv("ROLLOUT_SQLITE_PATH") or None

        default_stage_percentages = _parse_int_list(
            os.getenv("ROLLOUT_DEFAULT_STAGES"),
            DEFAULT_STAGE_PERCENTAGES,
        )
        default_auto_expand = _parse_bool(os.getenv("ROLLOUT_DEFAULT_AUTO_EXPAND"), True)
        default_expand_after_minutes = _parse_int(
            "ROLLOUT_DEFAULT_EXPAND_MINUTES",
            DEFAULT_EXPAND_AFTER_MINUTES,
        )
        default_failure_threshold = _parse_int(
            "ROLLOUT_DEFAULT_FAILURE_THRESHOLD",
            DEFAULT_FAILURE_THRESHOLD,
        )
        if not 0 <= default_failure_threshold <= 100:
            raise ValueError("ROLLOUT_DEFAULT_FAILURE_THRESHOLD must be in 0-100")
        eval_interval_seconds = max(1, _parse_int("ROLLOUT_EVAL_INTERVAL_SECONDS", 60))
        scheduler_enabled = _parse_bool(os.getenv("ROLLOUT_SCHEDULER_ENABLED"), False)
        webhooks_enabled = _parse_bool(os.getenv("ROLLOUT_WEBHOOKS_ENABLED"), False)
        webhook_timeout_s = _parse_float(os.getenv("WEBHOOK_TIMEOUT_S", "10"))
        webhook_max_attempts = _parse_int("WEBHOOK_MAX_ATTEMPTS", 3)

        if remote_required and backend_scheme(storage_backend) is None:
            if data_bucket and not has_uri_scheme(data_bucket):
                raise ValueError(
                    "DATA_BUCKET must include a URI scheme when STORAGE_BACKEND="
                    f"{storage_backend} (example: s3://bucket)"
                )

        if missing:
            missing_str = ", ".join(missing)
            raise ValueError(f"Missing required env vars: {missing_str}")

        return cls(
            env=env,
            log_level=log_level,
            storage_backend=storage_backend,
            local_data_root=local_data_root,
            data_bucket=data_bucket,
            data_prefix=data_prefix,
            control_plane_store=control_plane_store,
            rollout_sqlite_path=rollout_sqlite_path,
            default_stage_percentages=default_stage_percentages,
            default_auto_expand=default_auto_expand,
            default_expand_after_minutes=default_expand_after_minutes,
            default_failure_threshold=default_failure_threshold,
            eval_interval_seconds=eval_interval_seconds,
            scheduler_enabled=scheduler_enabled,
            webhooks_enabled=webhooks_enabled,
            webhook_timeout_s=webhook_timeout_s,
            webhook_max_attempts=webhook_max_attempts,
        )


def _parse_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc


def _parse_int_list(value: str | None, default: tuple[int, ...]) -> tuple[int, ...]:
    if not value:
        return default
    items: list[int] = []
    for raw in value.split(","):
        cleaned = raw.strip()
        if not cleaned:
            continue
        try:
            items.append(int(cleaned))
        except ValueError as exc:
            raise ValueError(f"Invalid integer in list: {cleaned}") from exc
    return tuple(items) or default


def _parse_float(value: str) -> float:
    try:
        return float(value)
    except ValueError as exc:
        raise ValueError(f"Invalid float value: {value}") from exc


def _parse_bool(value: str | None, default: bool) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() in {"1", "true", "yes", "y", "on"}


@lru_cache(maxsize=1)
def get_config() -> Config:
    return Config.from_env()
