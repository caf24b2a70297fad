"""
Configuration management (SSOT).

This module defines ALL configuration for the invoice intake pipeline.
All config keys are defined here; no other module should invent config keys.

Key invariants:
- Secrets (API keys, webhook URLs) may come from the environment and
  always win over the YAML file
- Lease and health thresholds are read once at startup; changing them
  requires a restart of the poller/daemon
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml


class ConfigValidationError(Exception):
    """Raised when configuration validation fails."""

    pass


@dataclass
class ExtractionServiceConfig:
    """External classification/extraction service (OpenAI-compatible API).

    The service is consumed as an opaque capability: text and/or a PDF
    go in, structured JSON comes out.
    """

    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    model: str = "gpt-4o"
    # Read timeout for a single completion call (seconds)
    timeout_seconds: int = 60
    connect_timeout_seconds: int = 10
    # Reject documents whose combined text exceeds this many characters
    max_text_length: int = 100_000

    def is_local(self) -> bool:
        """Check if the service URL points at the local machine."""
        url_lower = self.base_url.lower()
        return any(local in url_lower for local in ["localhost", "127.0.0.1", "::1"])


@dataclass
class NotificationConfig:
    """Outbound webhook notifications (Slack-compatible)."""

    enabled: bool = False
    webhook_url: str | None = None
    timeout_seconds: int = 10
    # Retries on top of the first attempt; failures are never fatal
    max_retries: int = 2


@dataclass
class RetryConfig:
    """Backoff policy for calls to flaky external dependencies."""

    max_retries: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0


@dataclass
class LeaseConfig:
    """Intake lease settings."""

    # Lease TTL for polled/processing items
    lease_minutes: int = 30
    # Attempt budget before an item is dead-lettered
    max_attempts: int = 5
    # Max rows an operator retry may reset in one call
    reset_batch_limit: int = 100
    # Max items discovered per connection per poll
    claim_batch_size: int = 10


@dataclass
class DuplicateConfig:
    """Duplicate detection settings."""

    # Half-width of the fuzzy-match date window (days)
    window_days: int = 30
    # Confidence reported for an exact reference match when the vendor
    # could not be resolved (tenant-wide match)
    unresolved_reference_confidence: float = 1.0


@dataclass
class ValidationConfig:
    """Record validation settings."""

    # Max allowed difference between subtotal + tax and total
    math_tolerance: float = 0.01


@dataclass
class HealthConfig:
    """Health monitor thresholds."""

    interval_minutes: int = 15
    degraded_after_minutes: int = 30
    down_after_minutes: int = 120
    dead_letter_threshold: int = 10
    connection_failure_threshold: int = 5
    error_rate_threshold: float = 0.5
    error_rate_min_sample: int = 5
    error_rate_window_minutes: int = 60
    recent_alerts_limit: int = 50


@dataclass
class Config:
    """Application configuration (SSOT).

    All configuration is centralized here. No other module should define
    configuration keys or defaults.
    """

    extraction: ExtractionServiceConfig = field(default_factory=ExtractionServiceConfig)
    notification: NotificationConfig = field(default_factory=NotificationConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    lease: LeaseConfig = field(default_factory=LeaseConfig)
    duplicates: DuplicateConfig = field(default_factory=DuplicateConfig)
    validation: ValidationConfig = field(default_factory=ValidationConfig)
    health: HealthConfig = field(default_factory=HealthConfig)
    state_db_path: Path = field(default_factory=lambda: Path("data/state.db"))
    # Poll interval used by the daemon (minutes)
    poll_interval_minutes: int = 5

    def validate(self) -> list[str]:
        """Validate configuration completeness and consistency.

        Returns:
            List of validation errors (empty if valid)
        """
        errors: list[str] = []

        if not self.extraction.base_url:
            errors.append("extraction.base_url is required")
        if not self.extraction.api_key and not self.extraction.is_local():
            errors.append("extraction.api_key is required for a remote service")

        if self.notification.enabled and not self.notification.webhook_url:
            errors.append("notification.webhook_url is required when notifications are enabled")

        if self.retry.max_retries < 0:
            errors.append("retry.max_retries must be >= 0")
        if self.retry.base_delay_seconds > self.retry.max_delay_seconds:
            errors.append("retry.base_delay_seconds must be <= retry.max_delay_seconds")

        if self.lease.lease_minutes <= 0:
            errors.append("lease.lease_minutes must be > 0")
        if self.lease.max_attempts < 1:
            errors.append("lease.max_attempts must be >= 1")

        if not 0.0 <= self.duplicates.unresolved_reference_confidence <= 1.0:
            errors.append("duplicates.unresolved_reference_confidence must be within [0, 1]")

        # Thresholds must be sensible
        if self.health.degraded_after_minutes >= self.health.down_after_minutes:
            errors.append("health.degraded_after_minutes must be < health.down_after_minutes")

        return errors


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name, "")
    if value:
        try:
            return int(value)
        except ValueError:
            pass  # Keep default
    return default


def load_config(config_path: Path) -> Config:
    """
    Load configuration from YAML file.

    Environment variables can override config values:
    - EXTRACTION_URL
    - EXTRACTION_API_KEY (falls back to OPENAI_API_KEY)
    - EXTRACTION_MODEL
    - EXTRACTION_TIMEOUT (read timeout in seconds)
    - SLACK_WEBHOOK_URL (also enables notifications)
    - INTAKE_STATE_DB (state database path)
    """
    if config_path.exists():
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    else:
        data = {}

    # Extraction service
    ext_data = data.get("extraction", {})
    extraction = ExtractionServiceConfig(
        base_url=os.environ.get(
            "EXTRACTION_URL", ext_data.get("base_url", "https://api.openai.com/v1")
        ),
        api_key=os.environ.get(
            "EXTRACTION_API_KEY",
            os.environ.get("OPENAI_API_KEY", ext_data.get("api_key", "")),
        ),
        model=os.environ.get("EXTRACTION_MODEL", ext_data.get("model", "gpt-4o")),
        timeout_seconds=_env_int("EXTRACTION_TIMEOUT", ext_data.get("timeout_seconds", 60)),
        connect_timeout_seconds=ext_data.get("connect_timeout_seconds", 10),
        max_text_length=ext_data.get("max_text_length", 100_000),
    )

    # Notifications
    notify_data = data.get("notification", {})
    webhook_url = os.environ.get("SLACK_WEBHOOK_URL", notify_data.get("webhook_url"))
    notify_enabled = notify_data.get("enabled", False)
    if os.environ.get("SLACK_WEBHOOK_URL"):
        notify_enabled = True
    notification = NotificationConfig(
        enabled=notify_enabled,
        webhook_url=webhook_url,
        timeout_seconds=notify_data.get("timeout_seconds", 10),
        max_retries=notify_data.get("max_retries", 2),
    )

    retry_data = data.get("retry", {})
    retry = RetryConfig(
        max_retries=retry_data.get("max_retries", 3),
        base_delay_seconds=retry_data.get("base_delay_seconds", 1.0),
        max_delay_seconds=retry_data.get("max_delay_seconds", 30.0),
    )

    lease_data = data.get("lease", {})
    lease = LeaseConfig(
        lease_minutes=lease_data.get("lease_minutes", 30),
        max_attempts=lease_data.get("max_attempts", 5),
        reset_batch_limit=lease_data.get("reset_batch_limit", 100),
        claim_batch_size=lease_data.get("claim_batch_size", 10),
    )

    dup_data = data.get("duplicates", {})
    duplicates = DuplicateConfig(
        window_days=dup_data.get("window_days", 30),
        unresolved_reference_confidence=dup_data.get("unresolved_reference_confidence", 1.0),
    )

    val_data = data.get("validation", {})
    validation = ValidationConfig(
        math_tolerance=val_data.get("math_tolerance", 0.01),
    )

    health_data = data.get("health", {})
    health = HealthConfig(
        interval_minutes=health_data.get("interval_minutes", 15),
        degraded_after_minutes=health_data.get("degraded_after_minutes", 30),
        down_after_minutes=health_data.get("down_after_minutes", 120),
        dead_letter_threshold=health_data.get("dead_letter_threshold", 10),
        connection_failure_threshold=health_data.get("connection_failure_threshold", 5),
        error_rate_threshold=health_data.get("error_rate_threshold", 0.5),
        error_rate_min_sample=health_data.get("error_rate_min_sample", 5),
        error_rate_window_minutes=health_data.get("error_rate_window_minutes", 60),
        recent_alerts_limit=health_data.get("recent_alerts_limit", 50),
    )

    # State DB
    state_db = os.environ.get("INTAKE_STATE_DB", data.get("state_db_path", "data/state.db"))

    return Config(
        extraction=extraction,
        notification=notification,
        retry=retry,
        lease=lease,
        duplicates=duplicates,
        validation=validation,
        health=health,
        state_db_path=Path(state_db),
        poll_interval_minutes=data.get("poll_interval_minutes", 5),
    )


def create_default_config(config_path: Path) -> None:
    """Create a default configuration file."""
    default_config = """# Invoice Intake Pipeline Configuration
#
# Secrets can be supplied through the environment instead:
# EXTRACTION_API_KEY, SLACK_WEBHOOK_URL

extraction:
  base_url: "https://api.openai.com/v1"   # Any OpenAI-compatible endpoint
  api_key: "YOUR_API_KEY"
  model: "gpt-4o"
  timeout_seconds: 60                     # Read timeout per call
  connect_timeout_seconds: 10
  max_text_length: 100000                 # Reject larger documents

notification:
  enabled: false
  webhook_url: null                       # Slack incoming webhook
  timeout_seconds: 10
  max_retries: 2                          # Failures are logged, never fatal

retry:
  max_retries: 3
  base_delay_seconds: 1.0
  max_delay_seconds: 30.0

lease:
  lease_minutes: 30                       # Lease TTL for claimed items
  max_attempts: 5                         # Dead-letter after this many attempts
  reset_batch_limit: 100                  # Max rows per operator retry
  claim_batch_size: 10                    # Items per connection per poll

duplicates:
  window_days: 30                         # Fuzzy match window (+/- days)
  unresolved_reference_confidence: 1.0    # Exact ref match, vendor unknown

validation:
  math_tolerance: 0.01

health:
  interval_minutes: 15
  degraded_after_minutes: 30
  down_after_minutes: 120
  dead_letter_threshold: 10
  connection_failure_threshold: 5
  error_rate_threshold: 0.5
  error_rate_min_sample: 5
  error_rate_window_minutes: 60
  recent_alerts_limit: 50

# State database path
state_db_path: "data/state.db"

# Daemon poll interval (minutes)
poll_interval_minutes: 5
"""

    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w") as f:
        f.write(default_config)
