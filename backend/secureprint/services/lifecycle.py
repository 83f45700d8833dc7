"""Print job lifecycle: submit, view, release, complete, expire.

The manager is the only writer of a job's row, document, blob and expiry
entry. Status changes go through conditional updates so two racing
requests can never both move the same job.

    submit -> pending --release--> released --complete--> completed
                 \\____________________\\______expire______> deleted
"""

import json
import logging
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from secureprint.config import settings
from secureprint.errors import (
    AlreadyReleased,
    BlobNotFound,
    EmptyBlob,
    FileTooLarge,
    IllegalTransition,
    InvalidPrintToken,
    InvalidToken,
    JobNotFound,
    LinkExpired,
    PrintLinkError,
    RateLimited,
    StorageError,
    Tampered,
    ValidationError,
)
from secureprint.models.document import Document
from secureprint.models.job import COMPLETED, DELETED, LIVE_STATUSES, PENDING, RELEASED, Job
from secureprint.models.view import JobView
from secureprint.services import envelope
from secureprint.services.analysis_service import build_analysis
from secureprint.services.blob_store import BlobStore
from secureprint.services.expiry_index import ExpiryEntry, ExpiryIndex
from secureprint.services.job_repository import JobRepository
from secureprint.services.print_tokens import PrintGrant, PrintTokenStore
from secureprint.utils.security import generate_envelope_secret, generate_token, tokens_match, token_prefix
from secureprint.utils.timestamps import from_iso, to_iso

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


@dataclass
class PrintOptions:
    pages: int = 1
    copies: int = 1
    color: bool = False
    duplex: bool = False
    stapling: bool = False
    priority: str = "normal"
    notes: str = ""


@dataclass
class Upload:
    filename: str | None
    mime_type: str | None
    content: bytes


@dataclass
class FetchedDocument:
    content: bytes
    mime_type: str
    name: str
    size: int


@dataclass
class JobDetail:
    job: Job
    document: FetchedDocument | None
    analysis: dict | None


@dataclass
class ViewResult:
    job: Job
    document: FetchedDocument | None
    view_count: int
    viewed_at: str


def compute_cost(pages: int, copies: int, color: bool, duplex: bool, base_cost: Decimal | None = None) -> Decimal:
    base = Decimal(str(base_cost if base_cost is not None else settings.base_cost))
    cost = base * pages * copies * (2 if color else 1) * (Decimal("0.8") if duplex else 1)
    return cost.quantize(CENTS, rounding=ROUND_HALF_UP)


def resolve_public_base(forwarded_host: str | None, forwarded_proto: str | None, request_base: str) -> str:
    """Origin for release links: configured URL, then proxy headers, then the request itself."""
    if settings.public_base_url:
        return settings.public_base_url.rstrip("/")
    if forwarded_host:
        host = forwarded_host.split(",")[0].strip()
        proto = (forwarded_proto or "http").split(",")[0].strip()
        return f"{proto}://{host}"
    return request_base.rstrip("/")


def build_release_link(public_base: str, job_id: str, token: str) -> str:
    return f"{public_base.rstrip('/')}/release/{job_id}?token={token}"


class LifecycleManager:
    def __init__(
        self,
        blob_store: BlobStore | None = None,
        index: ExpiryIndex | None = None,
        clock: Callable[[], float] = time.time,
        print_tokens: PrintTokenStore | None = None,
    ):
        self.blobs = blob_store if blob_store is not None else BlobStore()
        self.index = index if index is not None else ExpiryIndex()
        self.clock = clock
        self.print_tokens = print_tokens if print_tokens is not None else PrintTokenStore()

    # ------------------------------------------------------------------
    # submit
    # ------------------------------------------------------------------

    def submit(
        self,
        db: Session,
        user_id: str | None,
        document_name: str | None,
        upload: Upload | None,
        public_base: str,
        options: PrintOptions | None = None,
        expiration_minutes: int | None = None,
    ) -> tuple[Job, str]:
        options = options or PrintOptions()
        user_id = (user_id or "").strip()
        document_name = (document_name or (upload.filename if upload else None) or "").strip()
        if not user_id or not document_name or upload is None:
            raise ValidationError()
        if not upload.content:
            raise ValidationError("Empty file")
        if len(upload.content) > settings.max_upload_bytes:
            raise FileTooLarge(f"File size exceeds limit (max {settings.max_upload_bytes} bytes)")
        self._check_options(options)
        minutes = expiration_minutes if expiration_minutes is not None else settings.default_expiration_minutes
        if not 1 <= minutes <= settings.max_expiration_minutes:
            raise ValidationError(
                f"expiration_duration_minutes must be between 1 and {settings.max_expiration_minutes}"
            )

        now = self.clock()
        now_iso = to_iso(now)
        job_id = str(uuid.uuid4())
        token = generate_token()
        expires_at = now + minutes * 60
        release_link = build_release_link(public_base, job_id, token)
        cost = compute_cost(options.pages, options.copies, options.color, options.duplex)

        with self.index.hold(job_id):
            sealed = envelope.encrypt(upload.content, generate_envelope_secret())
            stored_path = self.blobs.put(job_id, sealed.ciphertext)
            try:
                job = Job(
                    id=job_id,
                    user_id=user_id,
                    document_name=document_name,
                    pages=options.pages,
                    copies=options.copies,
                    color=options.color,
                    duplex=options.duplex,
                    stapling=options.stapling,
                    priority=options.priority or "normal",
                    notes=options.notes or "",
                    status=PENDING,
                    cost=float(cost),
                    submitted_at=now_iso,
                    secure_token=token,
                    release_link=release_link,
                    expires_at=to_iso(expires_at),
                    view_count=0,
                )
                document = Document(
                    id=str(uuid.uuid4()),
                    job_id=job_id,
                    content=sealed.ciphertext,
                    mime_type=upload.mime_type or "application/octet-stream",
                    filename=upload.filename or document_name,
                    size=len(upload.content),
                    stored_path=stored_path,
                    encryption_metadata=sealed.metadata_json(),
                    created_at=now_iso,
                )
                analysis = build_analysis(document.id, upload.content, upload.mime_type, now_iso)
                JobRepository(db).insert_job(job, document, [analysis])
            except PrintLinkError:
                db.rollback()
                self._discard_blob(job_id, stored_path)
                raise
            except SQLAlchemyError as exc:
                db.rollback()
                self._discard_blob(job_id, stored_path)
                logger.exception("Could not persist job %s", job_id)
                raise StorageError("Failed to process print job") from exc

            self.index.register(
                job_id,
                ExpiryEntry(
                    expires_at=expires_at,
                    token=token,
                    file_path=stored_path,
                    mime_type=document.mime_type,
                    original_name=document.filename,
                ),
            )
        logger.info("Job %s submitted by %s, expires in %d min", job_id, user_id, minutes)
        return job, release_link

    @staticmethod
    def _check_options(options: PrintOptions) -> None:
        if options.pages < 1 or options.copies < 1:
            raise ValidationError("pages and copies must be positive integers")

    def _discard_blob(self, job_id: str, stored_path: str) -> None:
        try:
            self.blobs.remove(stored_path)
        except StorageError:
            logger.exception("Could not remove blob for failed submission %s", job_id)

    # ------------------------------------------------------------------
    # validation and reads
    # ------------------------------------------------------------------

    def validate(self, db: Session, job_id: str, token: str | None) -> Job:
        entry = self.index.get(job_id)
        if entry is not None and not tokens_match(entry.token, token):
            raise InvalidToken()
        job = JobRepository(db).get_job(job_id)
        if job is None:
            raise JobNotFound()
        if not tokens_match(job.secure_token, token):
            raise InvalidToken()
        return self._ensure_live(db, job)

    def _ensure_live(self, db: Session, job: Job) -> Job:
        now = self.clock()
        entry = self.index.get(job.id)
        if entry is not None and now >= entry.expires_at:
            self._expire_inline(db, job.id)
            raise LinkExpired()
        if job.status == DELETED:
            raise LinkExpired()
        if now >= from_iso(job.expires_at):
            if job.status in LIVE_STATUSES:
                self._expire_inline(db, job.id)
            raise LinkExpired()
        return job

    def inspect(self, db: Session, job_id: str, token: str | None) -> JobDetail:
        """Job, decrypted document and analysis for a token holder."""
        with self.index.hold(job_id):
            job = self.validate(db, job_id, token)
            if job.status != PENDING:
                return JobDetail(job=job, document=None, analysis=None)
            try:
                document = self._read_document(db, job_id)
            except AlreadyReleased:
                # released between validation and the read
                db.refresh(job)
                return JobDetail(job=job, document=None, analysis=None)
            return JobDetail(job=job, document=document, analysis=self._latest_analysis(db, job_id))

    def fetch_document(self, db: Session, job_id: str, token: str | None) -> FetchedDocument:
        with self.index.hold(job_id):
            job = self.validate(db, job_id, token)
            if job.status != PENDING:
                raise AlreadyReleased()
            return self._read_document(db, job_id)

    def issue_print_token(self, db: Session, job_id: str, token: str | None, client_ip: str) -> PrintGrant:
        """Mint a short-lived, single-use token for the plaintext stream."""
        with self.index.hold(job_id):
            job = self.validate(db, job_id, token)
            if job.status != PENDING:
                raise AlreadyReleased()
            try:
                grant = self.print_tokens.issue(job_id, client_ip or "unknown", self.clock())
            except RateLimited:
                logger.warning("Print token rate limit hit by %s", client_ip)
                raise
        logger.info("Print token issued for job %s", job_id)
        return grant

    def redeem_print_token(self, db: Session, job_id: str, print_token: str | None) -> FetchedDocument:
        """Plaintext for the holder of a live print token; the token is burnt either way."""
        if not print_token:
            raise ValidationError("Print token is required")
        with self.index.hold(job_id):
            try:
                self.print_tokens.consume(job_id, print_token, self.clock())
            except InvalidPrintToken as exc:
                logger.warning("Rejected print token for job %s: %s", job_id, exc.message)
                raise
            job = JobRepository(db).get_job(job_id)
            if job is None:
                self.print_tokens.discard(job_id)
                raise JobNotFound()
            self._ensure_live(db, job)
            if job.status != PENDING:
                raise AlreadyReleased()
            document = self._read_document(db, job_id)
        logger.info("Document for job %s streamed with a print token", job_id)
        return document

    def _missing_document_error(self, db: Session, job_id: str) -> PrintLinkError:
        if JobRepository(db).get_status(job_id) == PENDING:
            logger.error("Pending job %s has no document row", job_id)
            return StorageError()
        return self._transition_error(db, job_id)

    def _read_document(self, db: Session, job_id: str) -> FetchedDocument:
        document = JobRepository(db).get_document(job_id)
        if document is None:
            raise self._missing_document_error(db, job_id)

        ciphertext = None
        if document.stored_path:
            try:
                ciphertext = self.blobs.get(document.stored_path)
            except (BlobNotFound, EmptyBlob):
                logger.warning("Blob for job %s unreadable, serving stored ciphertext", job_id)
        if ciphertext is None:
            ciphertext = document.content

        try:
            plaintext = envelope.open_envelope(ciphertext, document.encryption_metadata)
        except Tampered:
            logger.error("Envelope for job %s failed authentication, quarantining", job_id)
            self._expire_inline(db, job_id)
            raise
        return FetchedDocument(
            content=plaintext,
            mime_type=document.mime_type or "application/octet-stream",
            name=document.filename,
            size=document.size,
        )

    def _latest_analysis(self, db: Session, job_id: str) -> dict | None:
        repo = JobRepository(db)
        document = repo.get_document(job_id)
        if document is None:
            return None
        analyses = repo.get_analyses(document.id)
        if not analyses:
            return None
        try:
            return json.loads(analyses[-1].result)
        except ValueError:
            logger.warning("Unreadable analysis %s for job %s", analyses[-1].id, job_id)
            return None

    def list_jobs(self, db: Session, user_id: str | None = None) -> list[Job]:
        return JobRepository(db).list_jobs(user_id)

    # ------------------------------------------------------------------
    # transitions
    # ------------------------------------------------------------------

    @contextmanager
    def _writing(self, db: Session, job_id: str):
        try:
            yield
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.exception("Database error on job %s", job_id)
            raise StorageError() from exc
        except Exception:
            db.rollback()
            raise

    def _transition_error(self, db: Session, job_id: str) -> PrintLinkError:
        status = JobRepository(db).get_status(job_id)
        if status is None:
            return JobNotFound()
        if status == DELETED:
            return LinkExpired()
        return AlreadyReleased()

    def record_view(
        self,
        db: Session,
        job_id: str,
        token: str | None,
        user_id: str | None = None,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> ViewResult:
        with self.index.hold(job_id):
            self.validate(db, job_id, token)
            repo = JobRepository(db)
            viewed_at = to_iso(self.clock())
            with self._writing(db, job_id):
                if not repo.increment_views(job_id, viewed_at):
                    raise self._transition_error(db, job_id)
                repo.insert_view(
                    JobView(
                        id=str(uuid.uuid4()),
                        job_id=job_id,
                        user_id=user_id or "anonymous",
                        viewed_at=viewed_at,
                        user_agent=user_agent or "",
                        ip_address=ip_address or "",
                    )
                )
                view_count = repo.view_count(job_id)

            job = repo.get_job(job_id)
            document = None
            if job.status == PENDING:
                try:
                    document = self._read_document(db, job_id)
                except (AlreadyReleased, LinkExpired):
                    # the view is already counted; the document went away after it
                    db.refresh(job)
        logger.info("Job %s viewed by %s (view %d)", job_id, user_id or "anonymous", view_count)
        return ViewResult(job=job, document=document, view_count=view_count, viewed_at=viewed_at)

    def release(
        self,
        db: Session,
        job_id: str,
        token: str | None,
        printer_id: str | None = None,
        released_by: str | None = None,
    ) -> Job:
        with self.index.hold(job_id):
            job = self.validate(db, job_id, token)
            if job.status != PENDING:
                raise self._transition_error(db, job_id)
            repo = JobRepository(db)
            document = repo.get_document(job_id)
            paths = self._blob_paths(job_id, document)
            with self._writing(db, job_id):
                released = repo.update_status(
                    job_id,
                    [PENDING],
                    RELEASED,
                    released_at=to_iso(self.clock()),
                    printer_id=printer_id,
                    released_by=released_by,
                )
                if not released:
                    raise self._transition_error(db, job_id)
                repo.delete_document(job_id)
            self.print_tokens.discard(job_id)

            for path in paths:
                try:
                    self.blobs.remove(path)
                except StorageError:
                    # The expiry entry still points at the blob; sweep or complete retries.
                    logger.exception("Could not remove blob for released job %s", job_id)
            job = repo.get_job(job_id)
        logger.info("Job %s released on printer %s by %s", job_id, printer_id, released_by)
        return job

    def complete(self, db: Session, job_id: str) -> Job:
        with self.index.hold(job_id):
            repo = JobRepository(db)
            job = repo.get_job(job_id)
            if job is None:
                raise JobNotFound()
            with self._writing(db, job_id):
                if not repo.update_status(job_id, [RELEASED], COMPLETED, completed_at=to_iso(self.clock())):
                    status = repo.get_status(job_id)
                    raise IllegalTransition(
                        f"Job must be released before marking as completed (status: {status})"
                    )
            self.print_tokens.discard(job_id)
            entry = self.index.get(job_id)
            try:
                if entry is not None and entry.file_path:
                    self.blobs.remove(entry.file_path)
            except StorageError:
                logger.exception("Could not remove blob for completed job %s", job_id)
            else:
                self.index.remove(job_id)
            job = repo.get_job(job_id)
        logger.info("Job %s marked as completed", job_id)
        return job

    # ------------------------------------------------------------------
    # expiry
    # ------------------------------------------------------------------

    def _blob_paths(self, job_id: str, document: Document | None) -> list[str]:
        paths = []
        entry = self.index.get(job_id)
        if entry is not None and entry.file_path:
            paths.append(entry.file_path)
        if document is not None and document.stored_path and document.stored_path not in paths:
            paths.append(document.stored_path)
        return paths

    def expire(self, db: Session, job_id: str, force: bool = False) -> bool:
        """Delete the blob and document, mark the row deleted, drop the index entry.

        Returns False without touching anything if a request holds the job
        (unless ``force``). Storage failures propagate and leave the index
        entry in place so the next sweep retries.
        """
        if not force and self.index.is_active(job_id):
            return False

        repo = JobRepository(db)
        document = repo.get_document(job_id)
        for path in self._blob_paths(job_id, document):
            self.blobs.remove(path)

        marked = False
        if repo.get_job(job_id) is not None:
            with self._writing(db, job_id):
                repo.delete_document(job_id)
                marked = repo.update_status(job_id, LIVE_STATUSES, DELETED, deleted_at=to_iso(self.clock()))
        self.index.remove(job_id)
        self.print_tokens.discard(job_id)
        if marked:
            logger.info("Job %s expired, document and blob removed", job_id)
        return True

    def _expire_inline(self, db: Session, job_id: str) -> None:
        try:
            self.expire(db, job_id, force=True)
        except StorageError:
            logger.exception("Inline cleanup of job %s failed, sweeper will retry", job_id)

    def reap_expired_rows(self, db: Session) -> int:
        """Expire live rows whose deadline passed while no index entry tracked them."""
        reaped = 0
        for job in JobRepository(db).list_live_expired(to_iso(self.clock())):
            if job.id in self.index:
                continue
            try:
                self.expire(db, job.id, force=True)
            except StorageError:
                logger.exception("Could not reap expired job %s", job.id)
                continue
            reaped += 1
        if reaped:
            logger.info("Reaped %d expired job(s) left over from a previous run", reaped)
        return reaped

    def pending_expirations(self) -> list[dict]:
        """Index entries past their deadline that have not been swept yet."""
        return [
            {
                "id": job_id,
                "expired_at": to_iso(entry.expires_at),
                "token_prefix": token_prefix(entry.token),
            }
            for job_id, entry in self.index.expired_entries(self.clock())
        ]


lifecycle_manager = LifecycleManager()
