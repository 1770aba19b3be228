from functools import lru_cache
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from pydantic import AnyUrl, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

HOUR_MS = 60 * 60 * 1000
DAY_MS = 24 * HOUR_MS

_COMMITMENT_LEVELS = {"processed", "confirmed", "finalized"}


def _ensure_sqlalchemy_postgres_scheme(value: str) -> str:
    if not value.lower().startswith("postgres"):
        return value

    parsed = urlparse(value)
    scheme = parsed.scheme.lower()

    if scheme in {"postgres", "postgresql"}:
        scheme = "postgresql+psycopg"

    query_params = dict(parse_qsl(parsed.query, keep_blank_values=True))
    query_params.setdefault("target_session_attrs", "read-write")
    new_query = urlencode(query_params, doseq=True)

    return urlunparse(parsed._replace(scheme=scheme, query=new_query))


class Settings(BaseSettings):
    """Process-wide orchestrator configuration.

    Built once at process start and handed to every component explicitly;
    instances are frozen so nothing can mutate thresholds mid-run.
    """

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore", frozen=True
    )

    debug: bool = Field(False, description="Enable verbose SQL echo and FastAPI debug mode")
    environment: str = Field(
        default="development",
        description="Runtime environment (development|staging|production)",
    )
    log_level: str = Field(default="INFO", description="Minimum loguru level for the stderr sink")
    database_url: AnyUrl | str = Field(
        default="sqlite:///../data/orchestrator.db",
        description="SQLAlchemy compatible database URL holding votes and the market mirror",
    )

    # Chain access
    solana_rpc_url: str = Field(
        default="http://127.0.0.1:8899",
        description="JSON-RPC endpoint of the Solana cluster",
    )
    program_id: str = Field(
        default="7h3gXfBfYFueFVLYyfL5Qo1QGsf4GQUfW96FKVgnUsJS",
        description="Base58 address of the prediction market program",
    )
    backend_authority_private_key: str | None = Field(
        default=None,
        description="Base58 encoded 64-byte secret key of the backend authority",
        repr=False,
    )
    commitment: str = Field(default="confirmed", description="Commitment level for reads and confirmations")
    confirmation_timeout_seconds: float = Field(
        default=60.0,
        description="Upper bound spent waiting for a sent transaction to confirm",
        gt=0,
    )

    # Scheduling
    poll_interval_ms: int = Field(
        default=5 * 60 * 1000,
        description="Interval between vote aggregation runs",
        gt=0,
    )
    monitor_poll_interval_ms: int = Field(
        default=5 * 60 * 1000,
        description="Interval between market monitor runs",
        gt=0,
    )
    shutdown_timeout_seconds: float = Field(
        default=60.0,
        description="Maximum time graceful shutdown waits for an in-flight run",
        ge=0,
    )

    # Thresholds
    proposal_approval_bps: int = Field(
        default=7000,
        description="Share of likes (basis points) required to approve a proposal",
        ge=1,
        le=10_000,
    )
    dispute_overturn_bps: int = Field(
        default=6000,
        description="Share of agree votes (basis points) required to overturn a disputed outcome",
        ge=1,
        le=10_000,
    )
    min_votes_required: int = Field(
        default=10,
        description="Minimum number of votes before any threshold is evaluated",
        ge=1,
    )
    proposal_expiry_ms: int | None = Field(
        default=None,
        description=(
            "Age after which a proposal that never reached the approval threshold is "
            "rejected; unset keeps such proposals pending indefinitely"
        ),
        gt=0,
    )

    # Lifecycle windows
    dispute_window_ms: int = Field(
        default=48 * HOUR_MS,
        description="Time after a resolution proposal during which a dispute may be raised",
        gt=0,
    )
    dispute_voting_period_ms: int = Field(
        default=3 * DAY_MS,
        description="Length of dispute voting after a dispute is initiated",
        gt=0,
    )
    finalization_safety_buffer_ms: int = Field(
        default=60 * 1000,
        description="Extra delay added to the dispute window to absorb clock skew with the cluster",
        ge=0,
    )
    stuck_threshold_ms: int = Field(
        default=7 * DAY_MS,
        description="Age of the last transition after which a non-terminal market is reported as stuck",
        gt=0,
    )

    # Submission engine
    max_retries: int = Field(default=3, description="Retries per transaction after the first attempt", ge=0)
    retry_backoff_base_ms: int = Field(
        default=1000,
        description="Base delay multiplied by the attempt number between retries",
        ge=0,
    )
    batch_size: int = Field(default=25, description="Transactions submitted in parallel per batch", ge=1)
    batch_delay_ms: int = Field(default=500, description="Pause between executor batches", ge=0)
    vote_fetch_limit: int = Field(
        default=500,
        description="Maximum pending vote rows read per vote kind and run",
        ge=1,
    )
    monitor_batch_size: int = Field(
        default=10,
        description="Maximum markets finalized per monitor run",
        ge=1,
    )
    dry_run: bool = Field(
        default=False,
        description="Log intended transactions without sending them or writing to the store",
    )

    # Coordination
    redis_url: str | None = Field(
        default=None,
        description="Redis URL used to publish transition events; in-memory when unset",
    )
    event_channel: str = Field(
        default="market-transitions",
        description="Pub/sub channel receiving one message per confirmed transition",
    )
    distributed_locking: bool = Field(
        default=True,
        description="Serialize per-market submissions across instances through the market_locks table",
    )
    lock_ttl_seconds: float = Field(
        default=300.0,
        description="Lifetime of a per-market lock claim before another instance may take it",
        gt=0,
    )
    instance_id: str | None = Field(
        default=None,
        description="Owner name written into lock claims; derived from host and pid when unset",
    )
    status_api_port: int | None = Field(
        default=8080,
        description="Port for the /healthz and /status API; unset disables it",
    )

    @field_validator("commitment")
    @classmethod
    def _validate_commitment(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in _COMMITMENT_LEVELS:
            raise ValueError(
                "commitment must be one of: " + ", ".join(sorted(_COMMITMENT_LEVELS))
            )
        return normalized

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, value: str) -> str:
        return value.strip().upper() or "INFO"

    @field_validator("database_url", mode="before")
    @classmethod
    def _normalize_postgres_urls(cls, value: Any) -> Any:
        if value is None or not isinstance(value, str):
            return value
        if value.startswith("postgres://"):
            return "postgresql://" + value[len("postgres://") :]
        return value

    @field_validator(
        "redis_url",
        "instance_id",
        "backend_authority_private_key",
        "proposal_expiry_ms",
        "status_api_port",
        mode="before",
    )
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @model_validator(mode="after")
    def _validate_windows(self) -> "Settings":
        if self.confirmation_timeout_seconds > self.lock_ttl_seconds:
            raise ValueError(
                "lock_ttl_seconds must exceed confirmation_timeout_seconds so a claim "
                "outlives the submission it protects"
            )
        return self

    @property
    def resolved_database_url(self) -> str:
        return _ensure_sqlalchemy_postgres_scheme(str(self.database_url))

    @property
    def retry_backoff_seconds(self) -> float:
        return self.retry_backoff_base_ms / 1000

    @property
    def batch_delay_seconds(self) -> float:
        return self.batch_delay_ms / 1000


@lru_cache
def get_settings() -> Settings:
    return Settings()
