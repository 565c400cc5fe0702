"""Runtime configuration for races, workloads and the job store."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_COMMAND_TEMPLATE = "./createXcrunch create3 -m {pattern} -c {deployer}"
DEFAULT_IMAGE_HASH = "01e6bdd087a22f7b9f4c824f54b5599a0db6847dc2cb9a3f3055eef8"


@dataclass(slots=True)
class RaceSettings:
    """Redundant execution settings."""

    replication_factor: int = 3
    race_timeout_seconds: float = 1_800.0
    cancel_timeout_seconds: float = 5.0
    poll_interval_seconds: float = 0.1


@dataclass(slots=True)
class WorkloadSettings:
    """Workload descriptor sent to every worker of a race."""

    command_template: str = DEFAULT_COMMAND_TEMPLATE
    image_hash: str = DEFAULT_IMAGE_HASH
    rent_hours: float = 0.5
    attempt_timeout_seconds: int = 1_800


@dataclass(slots=True)
class PersistenceSettings:
    """Job store write policy."""

    busy_timeout_ms: int = 5_000
    write_retries: int = 3
    write_retry_backoff_seconds: float = 0.5


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".create3_race.db")
    race: RaceSettings = field(default_factory=RaceSettings)
    workload: WorkloadSettings = field(default_factory=WorkloadSettings)
    persistence: PersistenceSettings = field(default_factory=PersistenceSettings)
    shutdown_timeout_seconds: float = 10.0

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("CREATE3_RACE_DB_PATH", ".create3_race.db")),
            race=RaceSettings(
                replication_factor=int(os.getenv("CREATE3_RACE_REPLICATION_FACTOR", "3")),
                race_timeout_seconds=float(
                    os.getenv("CREATE3_RACE_RACE_TIMEOUT_SECONDS", "1800"),
                ),
                cancel_timeout_seconds=float(
                    os.getenv("CREATE3_RACE_CANCEL_TIMEOUT_SECONDS", "5"),
                ),
                poll_interval_seconds=float(
                    os.getenv("CREATE3_RACE_POLL_INTERVAL_SECONDS", "0.1"),
                ),
            ),
            workload=WorkloadSettings(
                command_template=os.getenv(
                    "CREATE3_RACE_COMMAND_TEMPLATE",
                    DEFAULT_COMMAND_TEMPLATE,
                ),
                image_hash=os.getenv("CREATE3_RACE_IMAGE_HASH", DEFAULT_IMAGE_HASH),
                rent_hours=float(os.getenv("CREATE3_RACE_RENT_HOURS", "0.5")),
                attempt_timeout_seconds=int(
                    os.getenv("CREATE3_RACE_ATTEMPT_TIMEOUT_SECONDS", "1800"),
                ),
            ),
            persistence=PersistenceSettings(
                busy_timeout_ms=int(os.getenv("CREATE3_RACE_SQLITE_BUSY_TIMEOUT_MS", "5000")),
                write_retries=int(os.getenv("CREATE3_RACE_WRITE_RETRIES", "3")),
                write_retry_backoff_seconds=float(
                    os.getenv("CREATE3_RACE_WRITE_RETRY_BACKOFF_SECONDS", "0.5"),
                ),
            ),
            shutdown_timeout_seconds=float(
                os.getenv("CREATE3_RACE_SHUTDOWN_TIMEOUT_SECONDS", "10"),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error if any setting is out of range."""

        if self.race.replication_factor < 1:
            raise ValueError("CREATE3_RACE_REPLICATION_FACTOR must be >= 1.")
        if self.race.race_timeout_seconds <= 0:
            raise ValueError("CREATE3_RACE_RACE_TIMEOUT_SECONDS must be > 0.")
        if self.race.cancel_timeout_seconds <= 0:
            raise ValueError("CREATE3_RACE_CANCEL_TIMEOUT_SECONDS must be > 0.")
        if self.race.poll_interval_seconds <= 0:
            raise ValueError("CREATE3_RACE_POLL_INTERVAL_SECONDS must be > 0.")
        if self.workload.attempt_timeout_seconds <= 0:
            raise ValueError("CREATE3_RACE_ATTEMPT_TIMEOUT_SECONDS must be > 0.")
        for placeholder in ("{pattern}", "{deployer}"):
            if placeholder not in self.workload.command_template:
                raise ValueError(
                    f"CREATE3_RACE_COMMAND_TEMPLATE must include {placeholder}.",
                )
        if self.persistence.write_retries < 1:
            raise ValueError("CREATE3_RACE_WRITE_RETRIES must be >= 1.")
        if self.persistence.write_retry_backoff_seconds < 0:
            raise ValueError("CREATE3_RACE_WRITE_RETRY_BACKOFF_SECONDS must be >= 0.")
