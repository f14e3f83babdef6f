from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import List, Optional

import sqlalchemy as sa
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship, sessionmaker
from sqlalchemy.pool import StaticPool

from .model import Run
from .schemas import RunOut


class Base(DeclarativeBase):
    pass


class RunRow(Base):
    __tablename__ = "runs"
    id: Mapped[str] = mapped_column(sa.String(64), primary_key=True)
    pipeline: Mapped[str] = mapped_column(sa.Text, nullable=False)
    status: Mapped[str] = mapped_column(sa.String(16), nullable=False, index=True)
    group_key: Mapped[str] = mapped_column(sa.Text, nullable=False, index=True)
    event: Mapped[str] = mapped_column(sa.String(32), nullable=False)
    ref: Mapped[str] = mapped_column(sa.Text, nullable=False)
    sha: Mapped[str] = mapped_column(sa.Text, nullable=False, default="")
    pr_number: Mapped[Optional[int]] = mapped_column(sa.Integer, nullable=True)
    started_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)
    finished_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    payload_json: Mapped[dict] = mapped_column(sa.JSON, nullable=False)

    jobs: Mapped[List["JobRow"]] = relationship(back_populates="run", cascade="all, delete-orphan")
    annotations: Mapped[List["AnnotationRow"]] = relationship(
        back_populates="run", cascade="all, delete-orphan"
    )


class JobRow(Base):
    __tablename__ = "jobs"
    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(sa.ForeignKey("runs.id", ondelete="CASCADE"), nullable=False, index=True)
    job_name: Mapped[str] = mapped_column(sa.Text, nullable=False)
    outcome: Mapped[str] = mapped_column(sa.String(16), nullable=False)
    failure_kind: Mapped[Optional[str]] = mapped_column(sa.String(32), nullable=True)
    reason: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)

    run: Mapped[RunRow] = relationship(back_populates="jobs")


class AnnotationRow(Base):
    __tablename__ = "annotations"
    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(sa.ForeignKey("runs.id", ondelete="CASCADE"), nullable=False, index=True)
    job_name: Mapped[str] = mapped_column(sa.Text, nullable=False)
    step_name: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    severity: Mapped[str] = mapped_column(sa.String(16), nullable=False)
    message: Mapped[str] = mapped_column(sa.Text, nullable=False)
    file: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    line: Mapped[Optional[int]] = mapped_column(sa.Integer, nullable=True)

    run: Mapped[RunRow] = relationship(back_populates="annotations")


def _engine(url: str) -> sa.Engine:
    if url.startswith("sqlite"):
        kwargs: dict = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url in ("sqlite://", "sqlite:///"):
            kwargs["poolclass"] = StaticPool
        else:
            Path(url.split("///", 1)[-1]).parent.mkdir(parents=True, exist_ok=True)
        return sa.create_engine(url, **kwargs)
    return sa.create_engine(url, pool_pre_ping=True)


class RunArchive:
    """Finished runs, one row per run plus its jobs and annotations."""

    def __init__(self, url: str = "sqlite:///.fleetci/runs.db"):
        self.engine = _engine(url)
        Base.metadata.create_all(self.engine)
        self._session = sessionmaker(self.engine, expire_on_commit=False)

    def record(self, run: Run) -> None:
        report = RunOut.from_run(run)
        row = RunRow(
            id=run.id,
            pipeline=run.pipeline,
            status=run.status.value,
            group_key=run.group_key,
            event=run.trigger.kind.value,
            ref=run.trigger.ref_name,
            sha=run.trigger.sha,
            pr_number=run.trigger.pr_number,
            started_at=run.started_at,
            finished_at=run.finished_at,
            payload_json=report.model_dump(mode="json"),
        )
        row.jobs = [
            JobRow(
                job_name=j.name,
                outcome=j.outcome,
                failure_kind=j.failure_kind,
                reason=j.reason,
            )
            for j in report.jobs
        ]
        row.annotations = [
            AnnotationRow(
                job_name=a.job,
                step_name=a.step,
                severity=a.severity,
                message=a.message,
                file=a.file,
                line=a.line,
            )
            for a in report.annotations
        ]
        with self._session.begin() as s:
            existing = s.get(RunRow, run.id)
            if existing is not None:
                s.delete(existing)
                s.flush()
            s.add(row)

    def get(self, run_id: str) -> Optional[RunOut]:
        with self._session() as s:
            row = s.get(RunRow, run_id)
            if row is None:
                return None
            return RunOut.model_validate(row.payload_json)

    def list(self, *, limit: int = 50, status: str | None = None) -> List[RunOut]:
        q = sa.select(RunRow).order_by(RunRow.started_at.desc()).limit(limit)
        if status is not None:
            q = q.where(RunRow.status == status)
        with self._session() as s:
            return [RunOut.model_validate(r.payload_json) for r in s.scalars(q)]

    def failed_jobs(self, run_id: str) -> List[str]:
        q = sa.select(JobRow.job_name).where(JobRow.run_id == run_id, JobRow.outcome == "failure")
        with self._session() as s:
            return list(s.scalars(q))

    def annotation_messages(self, run_id: str) -> List[str]:
        q = sa.select(AnnotationRow.message).where(AnnotationRow.run_id == run_id).order_by(AnnotationRow.id)
        with self._session() as s:
            return list(s.scalars(q))
