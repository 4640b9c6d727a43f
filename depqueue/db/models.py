import hashlib
import json
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, JSON, String, Table, Text
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.exc import NoInspectionAvailable
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from depqueue.db.session import Base
from depqueue.domain.errors import DependencyCycleError, InvalidJobStateError, JobError, RelatedEntityError
from depqueue.domain.states import (
    ALLOWED_TRANSITIONS,
    DEFAULT_QUEUE,
    FINAL_STATES,
    NON_SUCCESSFUL_STATES,
    JobEvent,
    JobState,
)
from depqueue.utils.clock import as_utc, utcnow

JsonType = JSON().with_variant(JSONB(), "postgresql")

# source_job depends on dest_job
job_dependencies = Table(
    "job_dependencies",
    Base.metadata,
    Column("source_job_id", Integer, ForeignKey("jobs.id", ondelete="CASCADE"), primary_key=True),
    Column("dest_job_id", Integer, ForeignKey("jobs.id", ondelete="CASCADE"), primary_key=True),
)

def args_hash(args) -> str:
    canonical = json.dumps([str(a) for a in args], separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

def entity_type_tag(cls) -> str:
    return f"{cls.__module__}.{cls.__qualname__}"

def entity_identity(entity) -> list[Any]:
    """
    Identity of an external entity as stored in a related-entity reference.

    Mapped entities use their SQLAlchemy identity key, anything else must
    expose an ``id`` attribute.
    """
    try:
        identity = sa_inspect(entity).identity
    except NoInspectionAvailable:
        ident = getattr(entity, "id", None)
        identity = None if ident is None else (ident,)

    if identity is None:
        raise RelatedEntityError(f"{entity!r} has no identity yet, persist it before relating it to a job")
    return list(identity)

def related_entity_key(entity) -> tuple[str, str]:
    return entity_type_tag(type(entity)), json.dumps(entity_identity(entity), default=str)

class Job(Base):
    __tablename__ = "jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Core scheduling fields
    state: Mapped[str] = mapped_column(String(15), default=JobState.PENDING, index=True)
    queue: Mapped[str] = mapped_column(String(50), default=DEFAULT_QUEUE)
    priority: Mapped[int] = mapped_column(Integer, default=0)
    worker_name: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    # Identity key: (command, args)
    command: Mapped[str] = mapped_column(String(255), nullable=False)
    args: Mapped[list[str]] = mapped_column(JsonType, default=list)
    args_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    # Timestamps (UTC)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    checked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    execute_after: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    closed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Limits; 0 means "no limit" for runtime and "no retries" for retries
    max_runtime: Mapped[int] = mapped_column(Integer, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, default=0)
    original_job_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("jobs.id"), nullable=True, index=True)

    # Results reported by the worker
    output: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_output: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    stack_trace: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    exit_code: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    runtime: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Relationships
    dependencies: Mapped[list["Job"]] = relationship(
        "Job",
        secondary=job_dependencies,
        primaryjoin=lambda: Job.id == job_dependencies.c.source_job_id,
        secondaryjoin=lambda: Job.id == job_dependencies.c.dest_job_id,
    )
    original_job: Mapped[Optional["Job"]] = relationship(
        "Job", back_populates="retry_jobs", remote_side=lambda: [Job.id]
    )
    retry_jobs: Mapped[list["Job"]] = relationship(
        "Job", back_populates="original_job", order_by=lambda: Job.id
    )
    related_entities: Mapped[list["RelatedEntity"]] = relationship(
        "RelatedEntity", back_populates="job", cascade="all, delete-orphan", lazy="selectin"
    )
    events: Mapped[list["JobEventLog"]] = relationship(
        "JobEventLog", back_populates="job", cascade="all, delete-orphan"
    )

    __table_args__ = (
        # Exact (command, args) lookups
        Index("ix_jobs_command_args", "command", "args_hash"),
        # Optimization for the startable scan: state=pending ordered by priority
        Index("ix_jobs_poll", "state", "queue", "priority", "execute_after"),
    )

    def __init__(
        self,
        command: str,
        args: Optional[list[str]] = None,
        confirmed: bool = True,
        queue: str = DEFAULT_QUEUE,
        priority: int = 0,
        **kwargs
    ):
        now = utcnow()
        kwargs.setdefault("max_runtime", 0)
        kwargs.setdefault("max_retries", 0)
        kwargs.setdefault("execute_after", now)
        super().__init__(
            command=command,
            args=list(args or []),
            state=JobState.PENDING if confirmed else JobState.NEW,
            queue=queue,
            priority=priority,
            created_at=now,
            **kwargs
        )

    def __repr__(self) -> str:
        return f"<Job id={self.id} command={self.command!r} state={self.state}>"

    @validates("args")
    def _hash_args(self, key, value):
        value = [str(a) for a in value]
        self.args_hash = args_hash(value)
        return value

    # --- State machine ---

    def set_state(self, new_state: str) -> None:
        """Validated state transition; setting the current state again is a no-op."""
        new_state = JobState(new_state)
        if new_state == self.state:
            return

        allowed = ALLOWED_TRANSITIONS.get(JobState(self.state), frozenset())
        if new_state not in allowed:
            raise InvalidJobStateError(self.state, new_state)

        now = utcnow()
        if new_state == JobState.RUNNING:
            self.started_at = now
            self.checked_at = now
        elif new_state in FINAL_STATES:
            self.closed_at = now
            if self.started_at is not None:
                self.runtime = int((now - as_utc(self.started_at)).total_seconds())

        self.state = new_state

    def is_new(self) -> bool:
        return self.state == JobState.NEW

    def is_pending(self) -> bool:
        return self.state == JobState.PENDING

    def is_running(self) -> bool:
        return self.state == JobState.RUNNING

    def is_finished(self) -> bool:
        return self.state == JobState.FINISHED

    def is_in_final_state(self) -> bool:
        return self.state in FINAL_STATES

    def is_closed_non_successful(self) -> bool:
        return self.state in NON_SUCCESSFUL_STATES

    def is_startable(self) -> bool:
        """All dependencies finished. The dependencies collection must be loaded."""
        return all(dep.is_finished() for dep in self.dependencies)

    # --- Retries ---

    def is_retry_job(self) -> bool:
        return self.original_job_id is not None

    def is_retry_allowed(self) -> bool:
        """The retry_jobs collection must be loaded unless max_retries is 0."""
        if self.max_retries == 0:
            return False
        return len(self.retry_jobs) < self.max_retries

    # --- Dependencies ---

    def add_dependency(self, job: "Job") -> None:
        if self.id is not None:
            raise JobError("Dependencies can only be added to a job before it is persisted")
        if job is self:
            raise DependencyCycleError(f"{self!r} cannot depend on itself")
        if self._is_reachable_from(job):
            raise DependencyCycleError(f"Adding {job!r} as dependency of {self!r} creates a cycle")

        if job not in self.dependencies:
            self.dependencies.append(job)

    def has_dependency(self, job: "Job") -> bool:
        return job in self.dependencies

    def _is_reachable_from(self, job: "Job") -> bool:
        # Persisted jobs cannot gain dependencies, so a path back to this
        # (unpersisted) job can only run through other unpersisted jobs.
        stack = [job]
        seen = set()
        while stack:
            current = stack.pop()
            if current is self:
                return True
            if id(current) in seen or current.id is not None:
                continue
            seen.add(id(current))
            stack.extend(current.dependencies)
        return False

    # --- Related entities ---

    def add_related_entity(self, entity) -> None:
        related_class, related_id = related_entity_key(entity)
        for existing in self.related_entities:
            if existing.related_class == related_class and existing.related_id == related_id:
                return
        self.related_entities.append(RelatedEntity(related_class=related_class, related_id=related_id))

    def find_related_entity(self, cls) -> Optional["RelatedEntity"]:
        tag = entity_type_tag(cls)
        for ref in self.related_entities:
            if ref.related_class == tag:
                return ref
        return None

    # --- Worker output ---

    def add_output(self, output: str) -> None:
        self.output = (self.output or "") + output

    def add_error_output(self, output: str) -> None:
        self.error_output = (self.error_output or "") + output

class RelatedEntity(Base):
    __tablename__ = "job_related_entities"

    job_id: Mapped[int] = mapped_column(Integer, ForeignKey("jobs.id", ondelete="CASCADE"), primary_key=True)
    related_class: Mapped[str] = mapped_column(String(150), primary_key=True)
    related_id: Mapped[str] = mapped_column(String(100), primary_key=True)

    job: Mapped["Job"] = relationship("Job", back_populates="related_entities")

    @property
    def identity(self) -> list[Any]:
        return json.loads(self.related_id)

class JobEventLog(Base):
    __tablename__ = "job_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[int] = mapped_column(Integer, ForeignKey("jobs.id", ondelete="CASCADE"), index=True)

    event_type: Mapped[JobEvent] = mapped_column(String(20), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    # Context (e.g. worker name, new state, retry job id)
    meta: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)

    job: Mapped["Job"] = relationship("Job", back_populates="events")

def new_job(
    command: str,
    args: Optional[list[str]] = None,
    confirmed: bool = True,
    queue: str = DEFAULT_QUEUE,
    priority: int = 0
) -> Job:
    """Producer-facing constructor; the job still has to be added to a session."""
    return Job(command, args, confirmed=confirmed, queue=queue, priority=priority)
