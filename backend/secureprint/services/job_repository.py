from typing import Iterable

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from secureprint.errors import Conflict
from secureprint.models.document import Document, DocumentAnalysis
from secureprint.models.job import LIVE_STATUSES, PENDING, Job
from secureprint.models.view import JobView


class JobRepository:
    """Row-level access to jobs and their dependents.

    Methods never commit on their own; the caller owns the transaction so a
    multi-row effect lands or rolls back as one unit. ``insert_job`` is the
    exception, since a primary key clash must surface as :class:`Conflict`.
    """

    def __init__(self, db: Session):
        self.db = db

    def insert_job(
        self,
        job: Job,
        document: Document | None = None,
        analyses: Iterable[DocumentAnalysis] = (),
    ) -> Job:
        if self.db.get(Job, job.id) is not None:
            raise Conflict(f"Job {job.id} already exists")
        self.db.add(job)
        if document is not None:
            self.db.add(document)
        for analysis in analyses:
            self.db.add(analysis)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise Conflict(f"Job {job.id} already exists") from None
        return job

    def get_job(self, job_id: str) -> Job | None:
        return self.db.get(Job, job_id)

    def list_jobs(self, user_id: str | None = None) -> list[Job]:
        stmt = select(Job)
        if user_id:
            stmt = stmt.where(Job.user_id == user_id)
        stmt = stmt.order_by(Job.submitted_at.desc(), Job.id)
        return list(self.db.scalars(stmt))

    def get_status(self, job_id: str) -> str | None:
        return self.db.scalar(select(Job.status).where(Job.id == job_id))

    def list_live_expired(self, now_iso: str) -> list[Job]:
        stmt = select(Job).where(Job.status.in_(LIVE_STATUSES), Job.expires_at <= now_iso)
        return list(self.db.scalars(stmt))

    def update_status(self, job_id: str, from_set: Iterable[str], to: str, **extra_fields) -> bool:
        """Move ``job_id`` to ``to`` only if its current status is in ``from_set``."""
        result = self.db.execute(
            update(Job)
            .where(Job.id == job_id, Job.status.in_(tuple(from_set)))
            .values(status=to, **extra_fields)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def increment_views(self, job_id: str, viewed_at: str) -> bool:
        """Count one view on a pending job; sets ``first_viewed_at`` only once."""
        result = self.db.execute(
            update(Job)
            .where(Job.id == job_id, Job.status == PENDING)
            .values(
                view_count=Job.view_count + 1,
                first_viewed_at=func.coalesce(Job.first_viewed_at, viewed_at),
                last_viewed_at=viewed_at,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def get_document(self, job_id: str) -> Document | None:
        return self.db.scalars(select(Document).where(Document.job_id == job_id)).first()

    def get_analyses(self, document_id: str) -> list[DocumentAnalysis]:
        stmt = (
            select(DocumentAnalysis)
            .where(DocumentAnalysis.document_id == document_id)
            .order_by(DocumentAnalysis.created_at)
        )
        return list(self.db.scalars(stmt))

    def delete_document(self, job_id: str) -> bool:
        # Analysis rows go with it through ON DELETE CASCADE.
        result = self.db.execute(
            delete(Document)
            .where(Document.job_id == job_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    def insert_view(self, view: JobView) -> JobView:
        self.db.add(view)
        self.db.flush()
        return view

    def count_views(self, job_id: str) -> int:
        return self.db.scalar(select(func.count(JobView.id)).where(JobView.job_id == job_id)) or 0

    def view_count(self, job_id: str) -> int:
        return self.db.scalar(select(Job.view_count).where(Job.id == job_id)) or 0
