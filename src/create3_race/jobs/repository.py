"""Persistent job store with write-if-non-terminal updates."""

from __future__ import annotations

import json
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from uuid import uuid4

from sqlalchemy import update as sa_update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from create3_race.errors import JobNotFoundError, PersistenceError
from create3_race.jobs.models import (
    NON_TERMINAL_JOB_STATES,
    JobEventView,
    JobPatch,
    JobRequest,
    JobState,
    JobView,
)
from create3_race.storage.alembic_runner import upgrade_head
from create3_race.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from create3_race.storage.sqlmodel_models import JobEventRecord, JobRecord

_NON_TERMINAL_VALUES = tuple(state.value for state in NON_TERMINAL_JOB_STATES)


class JobRepository:
    """Job persistence facade backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)
        self._locks_guard = threading.Lock()
        self._job_locks: dict[str, threading.Lock] = {}

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        with _persistence_errors("migrate schema"):
            upgrade_head(self.db_path)

    def create_job(self, request: JobRequest) -> JobView:
        """Insert a job in state created."""

        now = utc_now()
        job_id = str(uuid4())
        with _persistence_errors(f"create job for owner {request.owner}"), Session(
            self.engine,
        ) as session:
            row = JobRecord(
                id=job_id,
                owner=request.owner,
                pattern=request.pattern,
                deployer=request.deployer,
                state=JobState.CREATED.value,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.flush()
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="created",
                state_from=None,
                state_to=JobState.CREATED,
                details={"pattern": request.pattern, "deployer": request.deployer},
            )
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def get_job(self, job_id: str) -> JobView | None:
        with _persistence_errors(f"read job {job_id}"), Session(self.engine) as session:
            row = session.exec(select(JobRecord).where(JobRecord.id == job_id)).one_or_none()
            return _to_job_view(row) if row is not None else None

    def list_jobs_by_owner(self, owner: str, *, limit: int | None = None) -> list[JobView]:
        """List jobs of one owner, newest first."""

        with _persistence_errors(f"list jobs of owner {owner}"), Session(self.engine) as session:
            statement = (
                select(JobRecord)
                .where(JobRecord.owner == owner)
                .order_by(col(JobRecord.created_at).desc())
            )
            if limit is not None:
                statement = statement.limit(limit)
            rows = session.exec(statement).all()
            return [_to_job_view(row) for row in rows]

    def update_if_non_terminal(
        self,
        job_id: str,
        patch: JobPatch,
        *,
        details: dict[str, object] | None = None,
    ) -> bool:
        """Apply ``patch`` unless the job already reached done/failed.

        Returns False (and writes nothing) for a terminal job or a patch that
        would not change the state. ``finished_at`` is stamped exactly when the
        patch moves the job into a terminal state.
        """

        with self._job_lock(job_id), _persistence_errors(f"update job {job_id}"):
            now = utc_now()
            with Session(self.engine) as session:
                row = session.exec(select(JobRecord).where(JobRecord.id == job_id)).one_or_none()
                if row is None:
                    self._forget_job_lock(job_id)
                    raise JobNotFoundError(job_id)
                previous = JobState(row.state)
                if previous.is_terminal:
                    self._forget_job_lock(job_id)
                    return False
                if previous is patch.state:
                    return False

                result = session.exec(
                    sa_update(JobRecord)
                    .where(
                        col(JobRecord.id) == job_id,
                        col(JobRecord.state) == previous.value,
                        col(JobRecord.state).in_(_NON_TERMINAL_VALUES),
                    )
                    .values(
                        state=patch.state.value,
                        salt=patch.salt,
                        address=patch.address,
                        finished_at=to_db_datetime(now) if patch.state.is_terminal else None,
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    return False
                event_details: dict[str, object] = dict(details or {})
                if patch.state is JobState.DONE:
                    event_details.update({"salt": patch.salt, "address": patch.address})
                self._add_event(
                    session=session,
                    job_id=job_id,
                    event_type=patch.state.value,
                    state_from=previous,
                    state_to=patch.state,
                    details=event_details,
                )
                session.commit()
                if patch.state.is_terminal:
                    self._forget_job_lock(job_id)
                return True

    def list_job_events(self, job_id: str) -> list[JobEventView]:
        """Return the transition audit trail of one job, oldest first."""

        with _persistence_errors(f"list events of job {job_id}"), Session(self.engine) as session:
            rows = session.exec(
                select(JobEventRecord)
                .where(JobEventRecord.job_id == job_id)
                .order_by(col(JobEventRecord.created_at).asc(), col(JobEventRecord.id).asc()),
            ).all()

            events: list[JobEventView] = []
            for row in rows:
                details = {}
                if row.details_json:
                    parsed = json.loads(row.details_json)
                    if isinstance(parsed, dict):
                        details = parsed
                events.append(
                    JobEventView(
                        event_id=row.id or 0,
                        job_id=row.job_id,
                        event_type=row.event_type,
                        state_from=JobState(row.state_from) if row.state_from else None,
                        state_to=JobState(row.state_to) if row.state_to else None,
                        created_at=to_utc_aware_datetime(row.created_at),
                        details=details,
                    ),
                )
            return events

    @contextmanager
    def _job_lock(self, job_id: str) -> Iterator[None]:
        with self._locks_guard:
            lock = self._job_locks.setdefault(job_id, threading.Lock())
        with lock:
            yield

    def _forget_job_lock(self, job_id: str) -> None:
        # Terminal jobs never take the write path again.
        with self._locks_guard:
            self._job_locks.pop(job_id, None)

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        job_id: str,
        event_type: str,
        state_from: JobState | None,
        state_to: JobState | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            JobEventRecord(
                job_id=job_id,
                event_type=event_type,
                state_from=state_from.value if state_from is not None else None,
                state_to=state_to.value if state_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=utc_now(),
            ),
        )


@contextmanager
def _persistence_errors(action: str) -> Iterator[None]:
    try:
        yield
    except SQLAlchemyError as error:
        raise PersistenceError(f"Failed to {action}: {error}") from error


def _to_job_view(row: JobRecord) -> JobView:
    return JobView(
        id=row.id,
        owner=row.owner,
        pattern=row.pattern,
        deployer=row.deployer,
        state=JobState(row.state),
        salt=row.salt,
        address=row.address,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        finished_at=(
            to_utc_aware_datetime(row.finished_at) if row.finished_at is not None else None
        ),
    )
