import base64
from urllib.parse import quote

from fastapi import APIRouter, Depends, File, Form, Request, Response, UploadFile
from sqlalchemy.orm import Session

from secureprint.config import settings
from secureprint.database import get_db
from secureprint.dependencies import get_lifecycle
from secureprint.errors import FileTooLarge, ValidationError
from secureprint.models.job import Job
from secureprint.schemas.document import DocumentPayload, JobDetailResponse, ViewResponse
from secureprint.schemas.job import (
    ExpiredLinksResponse,
    JobListResponse,
    JobResponse,
    PrintTokenRequest,
    PrintTokenResponse,
    ReleaseRequest,
    SubmitResponse,
    TransitionResponse,
    ViewRequest,
)
from secureprint.services.lifecycle import (
    FetchedDocument,
    LifecycleManager,
    PrintOptions,
    Upload,
    resolve_public_base,
)

router = APIRouter(prefix="/jobs", tags=["jobs"])

_TRUE = {"true", "1", "yes", "on"}
_FALSE = {"false", "0", "no", "off", ""}


def _as_bool(value: str | None, field: str) -> bool:
    if value is None:
        return False
    lowered = value.strip().lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise ValidationError(f"Invalid boolean for {field}")


def _as_int(value: str | None, field: str, default: int | None) -> int | None:
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        raise ValidationError(f"Invalid integer for {field}") from None


def _job_to_response(job: Job, include_secrets: bool = True, include_link: bool = True) -> JobResponse:
    return JobResponse(
        id=job.id,
        user_id=job.user_id,
        document_name=job.document_name,
        pages=job.pages,
        copies=job.copies,
        color=bool(job.color),
        duplex=bool(job.duplex),
        stapling=bool(job.stapling),
        priority=job.priority,
        notes=job.notes,
        status=job.status,
        cost=job.cost,
        submitted_at=job.submitted_at,
        released_at=job.released_at,
        completed_at=job.completed_at,
        deleted_at=job.deleted_at,
        expires_at=job.expires_at,
        view_count=job.view_count,
        first_viewed_at=job.first_viewed_at,
        last_viewed_at=job.last_viewed_at,
        printer_id=job.printer_id,
        released_by=job.released_by,
        secure_token=job.secure_token if include_secrets else None,
        release_link=job.release_link if include_link else None,
    )


def _document_payload(document: FetchedDocument | None) -> DocumentPayload | None:
    if document is None:
        return None
    encoded = base64.b64encode(document.content).decode("ascii")
    return DocumentPayload(
        data_url=f"data:{document.mime_type};base64,{encoded}",
        mime_type=document.mime_type,
        name=document.name,
        size=document.size,
    )


def _read_upload(file: UploadFile) -> bytes:
    max_bytes = settings.max_upload_bytes
    size = 0
    chunks: list[bytes] = []
    while True:
        chunk = file.file.read(1024 * 1024)
        if not chunk:
            break
        size += len(chunk)
        if size > max_bytes:
            raise FileTooLarge(f"File size exceeds limit (max {max_bytes} bytes)")
        chunks.append(chunk)
    return b"".join(chunks)


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else ""


@router.post("", response_model=SubmitResponse)
def submit_job(
    request: Request,
    file: UploadFile | None = File(None),
    user_id: str | None = Form(None),
    document_name: str | None = Form(None),
    pages: str | None = Form(None),
    copies: str | None = Form(None),
    color: str | None = Form(None),
    duplex: str | None = Form(None),
    stapling: str | None = Form(None),
    priority: str | None = Form(None),
    notes: str | None = Form(None),
    expiration_duration_minutes: str | None = Form(None),
    db: Session = Depends(get_db),
    lifecycle: LifecycleManager = Depends(get_lifecycle),
):
    upload = None
    if file is not None:
        upload = Upload(filename=file.filename, mime_type=file.content_type, content=_read_upload(file))

    options = PrintOptions(
        pages=_as_int(pages, "pages", 1),
        copies=_as_int(copies, "copies", 1),
        color=_as_bool(color, "color"),
        duplex=_as_bool(duplex, "duplex"),
        stapling=_as_bool(stapling, "stapling"),
        priority=priority or "normal",
        notes=notes or "",
    )
    minutes = _as_int(expiration_duration_minutes, "expiration_duration_minutes", settings.default_expiration_minutes)
    public_base = resolve_public_base(
        request.headers.get("x-forwarded-host"),
        request.headers.get("x-forwarded-proto"),
        str(request.base_url),
    )

    job, _release_link = lifecycle.submit(
        db,
        user_id=user_id,
        document_name=document_name,
        upload=upload,
        public_base=public_base,
        options=options,
        expiration_minutes=minutes,
    )
    return SubmitResponse(job=_job_to_response(job), expiration_duration_minutes=minutes)


@router.get("", response_model=JobListResponse)
def list_jobs(
    user_id: str | None = None,
    db: Session = Depends(get_db),
    lifecycle: LifecycleManager = Depends(get_lifecycle),
):
    jobs = lifecycle.list_jobs(db, user_id)
    return JobListResponse(
        jobs=[_job_to_response(j, include_secrets=False, include_link=bool(user_id)) for j in jobs]
    )


@router.get("/cleanup/expired", response_model=ExpiredLinksResponse)
def expired_links(lifecycle: LifecycleManager = Depends(get_lifecycle)):
    """Links past their deadline that the sweeper has not removed yet."""
    return ExpiredLinksResponse(expired=lifecycle.pending_expirations())


@router.get("/{job_id}", response_model=JobDetailResponse)
def get_job(
    job_id: str,
    token: str | None = None,
    db: Session = Depends(get_db),
    lifecycle: LifecycleManager = Depends(get_lifecycle),
):
    detail = lifecycle.inspect(db, job_id, token)
    return JobDetailResponse(
        job=_job_to_response(detail.job),
        document_available=detail.document is not None,
        document=_document_payload(detail.document),
        analysis=detail.analysis,
    )


@router.post("/{job_id}/print-token", response_model=PrintTokenResponse)
def issue_print_token(
    job_id: str,
    req: PrintTokenRequest,
    request: Request,
    db: Session = Depends(get_db),
    lifecycle: LifecycleManager = Depends(get_lifecycle),
):
    grant = lifecycle.issue_print_token(db, job_id, req.token, _client_ip(request))
    return PrintTokenResponse(
        print_token=grant.token,
        expires_in_seconds=lifecycle.print_tokens.ttl_seconds,
    )


@router.get("/{job_id}/document")
def stream_document(
    job_id: str,
    print_token: str | None = None,
    db: Session = Depends(get_db),
    lifecycle: LifecycleManager = Depends(get_lifecycle),
):
    """Plaintext stream for the printer. Each print token opens it once."""
    document = lifecycle.redeem_print_token(db, job_id, print_token)
    return Response(
        content=document.content,
        media_type=document.mime_type,
        headers={
            "Content-Disposition": f'inline; filename="{quote(document.name)}"',
            "Cache-Control": "no-store",
            "Pragma": "no-cache",
            "Expires": "0",
        },
    )


@router.post("/{job_id}/view", response_model=ViewResponse)
def view_job(
    job_id: str,
    req: ViewRequest,
    request: Request,
    db: Session = Depends(get_db),
    lifecycle: LifecycleManager = Depends(get_lifecycle),
):
    result = lifecycle.record_view(
        db,
        job_id,
        req.token,
        user_id=req.user_id,
        user_agent=request.headers.get("user-agent"),
        ip_address=_client_ip(request),
    )
    return ViewResponse(
        document=_document_payload(result.document),
        view_count=result.view_count,
        viewed_at=result.viewed_at,
        message="Document preview opened. The link stays valid until it is released or expires.",
    )


@router.post("/{job_id}/release", response_model=TransitionResponse)
def release_job(
    job_id: str,
    req: ReleaseRequest,
    db: Session = Depends(get_db),
    lifecycle: LifecycleManager = Depends(get_lifecycle),
):
    job = lifecycle.release(db, job_id, req.token, printer_id=req.printer_id, released_by=req.released_by)
    return TransitionResponse(status=job.status, message="Print job released successfully!")


@router.post("/{job_id}/complete", response_model=TransitionResponse)
def complete_job(
    job_id: str,
    db: Session = Depends(get_db),
    lifecycle: LifecycleManager = Depends(get_lifecycle),
):
    job = lifecycle.complete(db, job_id)
    return TransitionResponse(status=job.status, message="Job marked as completed")
