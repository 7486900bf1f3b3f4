"""
Test-bench configuration loaded from environment variables.

Uses Pydantic BaseSettings for automatic env var loading and validation.
Every variable carries the ``BENCH_`` prefix and may also come from a
``.env`` file in the working directory.

CHANGELOG:
- 2026-10-06: Add SNMP community and port settings (STORY-006)
- 2026-10-02: Initial creation (STORY-001)

TODO:
- None
"""

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class BenchSettings(BaseSettings):
    """Test-bench configuration.

    Attributes:
        db_path: SQLite file backing test runs and readings.
        poll_interval_ms: Readings collector cadence in milliseconds.
        reading_check_interval_ms: Safety monitor reading-check cadence.
        spike_window_ms: How long watts must stay at or above the spike
            threshold before an emergency shutdown.
        health_check_interval_s: Safety monitor controller health cadence.
        read_timeout_s: Timeout for a single metering request.
        health_timeout_s: Timeout for health checks and turn-off commands.
        snmp_read_community: SNMP v2c community for GET requests.
        snmp_write_community: SNMP v2c community for SET requests.
        snmp_port: UDP port of PDU SNMP agents.
        log_level: Root logger level name.
        log_json: Emit structured JSON log lines instead of plain text.
    """

    model_config = SettingsConfigDict(
        env_prefix="BENCH_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    db_path: str = "bench.db"
    poll_interval_ms: int = 1000
    reading_check_interval_ms: int = 250
    spike_window_ms: int = 250
    health_check_interval_s: float = 30.0
    read_timeout_s: float = 3.0
    health_timeout_s: float = 5.0
    snmp_read_community: str = "public"
    snmp_write_community: str = "private"
    snmp_port: int = 161
    log_level: str = "INFO"
    log_json: bool = True

    @field_validator("poll_interval_ms")
    @classmethod
    def poll_interval_must_be_reasonable(cls, v: int) -> int:
        """Reject sub-100 ms polling, which controllers cannot sustain."""
        if v < 100:
            raise ValueError("BENCH_POLL_INTERVAL_MS must be >= 100")
        return v

    @field_validator("reading_check_interval_ms", "spike_window_ms")
    @classmethod
    def window_must_be_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("safety check intervals must be > 0")
        return v

    @field_validator("health_check_interval_s")
    @classmethod
    def health_interval_must_be_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("BENCH_HEALTH_CHECK_INTERVAL_S must be > 0")
        return v

    @field_validator("read_timeout_s", "health_timeout_s")
    @classmethod
    def timeout_must_be_short(cls, v: float) -> float:
        """Hardware timeouts stay in single-digit seconds.

        A longer timeout would let a hung controller delay spike and health
        detection beyond the bounded shutdown window.
        """
        if v <= 0 or v >= 10:
            raise ValueError("adapter timeouts must be > 0 and < 10 seconds")
        return v

    @field_validator("snmp_port")
    @classmethod
    def snmp_port_must_be_valid(cls, v: int) -> int:
        if v < 1 or v > 65535:
            raise ValueError("BENCH_SNMP_PORT must be between 1 and 65535")
        return v

    @field_validator("log_level")
    @classmethod
    def log_level_must_be_known(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown BENCH_LOG_LEVEL: {v}")
        return level
