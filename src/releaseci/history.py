from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, relationship, sessionmaker
from sqlalchemy.pool import StaticPool

from .scheduler import Run


class Base(DeclarativeBase):
    pass


class RunRecord(Base):
    __tablename__ = "runs"
    id: Mapped[str] = mapped_column(sa.String(32), primary_key=True)
    workflow: Mapped[str] = mapped_column(sa.Text, nullable=False)
    ref: Mapped[str] = mapped_column(sa.Text, nullable=False)
    event_kind: Mapped[str] = mapped_column(sa.Text, nullable=False)
    concurrency_key: Mapped[str] = mapped_column(sa.Text, nullable=False, index=True)
    is_tag_ref: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=False)
    outcome: Mapped[str] = mapped_column(sa.Text, nullable=False)
    failed_at: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    published: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=False)
    superseded_by: Mapped[Optional[str]] = mapped_column(sa.String(32), nullable=True)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)
    finished_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True), nullable=True)

    jobs: Mapped[list["JobRecord"]] = relationship(
        back_populates="run", cascade="all, delete-orphan", order_by="JobRecord.position"
    )


class JobRecord(Base):
    __tablename__ = "jobs"
    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(sa.String(32), sa.ForeignKey("runs.id", ondelete="CASCADE"), nullable=False)
    position: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    instance_id: Mapped[str] = mapped_column(sa.Text, nullable=False)
    job_name: Mapped[str] = mapped_column(sa.Text, nullable=False)
    display_name: Mapped[str] = mapped_column(sa.Text, nullable=False)
    axis_binding: Mapped[dict] = mapped_column(sa.JSON, nullable=False, default=dict)
    platform_tag: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    status: Mapped[str] = mapped_column(sa.Text, nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    exit_code: Mapped[Optional[int]] = mapped_column(sa.Integer, nullable=True)
    detail: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)

    run: Mapped[RunRecord] = relationship(back_populates="jobs")


def _summary(rec: RunRecord) -> dict:
    return {
        "run_id": rec.id,
        "workflow": rec.workflow,
        "ref": rec.ref,
        "event_kind": rec.event_kind,
        "concurrency_key": rec.concurrency_key,
        "is_tag_ref": rec.is_tag_ref,
        "outcome": rec.outcome,
        "failed_at": rec.failed_at,
        "published": rec.published,
        "superseded_by": rec.superseded_by,
        "created_at": rec.created_at.isoformat() if rec.created_at else None,
        "finished_at": rec.finished_at.isoformat() if rec.finished_at else None,
    }


class RunHistory:
    """Persists finished runs (one row per run, one per job instance)."""

    def __init__(self, database_url: str = "sqlite:///:memory:"):
        if database_url.startswith("sqlite:///") and ":memory:" not in database_url:
            Path(database_url[len("sqlite:///"):]).parent.mkdir(parents=True, exist_ok=True)
        kwargs = {}
        if database_url.startswith("sqlite"):
            # the service records from background threads
            kwargs["connect_args"] = {"check_same_thread": False}
            if ":memory:" in database_url:
                kwargs["poolclass"] = StaticPool
        self.engine = sa.create_engine(database_url, **kwargs)
        self.SessionLocal = sessionmaker(self.engine, class_=Session, expire_on_commit=False)
        Base.metadata.create_all(self.engine)

    def record(self, run: Run) -> None:
        data = run.to_dict()
        outcome = data["outcome"] or {}
        with self.SessionLocal() as s:
            with s.begin():
                existing = s.get(RunRecord, run.run_id)
                if existing is not None:
                    s.delete(existing)
                    s.flush()
                rec = RunRecord(
                    id=run.run_id,
                    workflow=data["workflow"],
                    ref=data["ref"],
                    event_kind=data["event_kind"],
                    concurrency_key=data["concurrency_key"],
                    is_tag_ref=data["is_tag_ref"],
                    outcome=outcome.get("summary", "Pending"),
                    failed_at=outcome.get("failed_at"),
                    published=bool(outcome.get("published")),
                    superseded_by=data["superseded_by"],
                    created_at=run.created_at,
                    finished_at=run.finished_at or datetime.now(timezone.utc),
                )
                for pos, j in enumerate(data["jobs"]):
                    rec.jobs.append(
                        JobRecord(
                            position=pos,
                            instance_id=j["instance_id"],
                            job_name=j["job"],
                            display_name=j["name"],
                            axis_binding=j["axis_binding"],
                            platform_tag=j["platform_tag"],
                            status=j["status"],
                            reason=j["reason"],
                            exit_code=j["exit_code"],
                            detail=j["detail"] or None,
                        )
                    )
                s.add(rec)

    def get(self, run_id: str) -> Optional[dict]:
        with self.SessionLocal() as s:
            rec = s.get(RunRecord, run_id)
            if rec is None:
                return None
            out = _summary(rec)
            out["jobs"] = [
                {
                    "instance_id": j.instance_id,
                    "job": j.job_name,
                    "name": j.display_name,
                    "axis_binding": j.axis_binding,
                    "platform_tag": j.platform_tag,
                    "status": j.status,
                    "reason": j.reason,
                    "exit_code": j.exit_code,
                    "detail": j.detail or "",
                }
                for j in rec.jobs
            ]
            return out

    def list_runs(self, concurrency_key: Optional[str] = None, limit: int = 50) -> list[dict]:
        q = sa.select(RunRecord).order_by(RunRecord.created_at.desc()).limit(limit)
        if concurrency_key is not None:
            q = q.where(RunRecord.concurrency_key == concurrency_key)
        with self.SessionLocal() as s:
            return [_summary(r) for r in s.execute(q).scalars()]
