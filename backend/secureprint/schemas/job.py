from pydantic import BaseModel


class JobResponse(BaseModel):
    id: str
    user_id: str
    document_name: str
    pages: int
    copies: int
    color: bool
    duplex: bool
    stapling: bool
    priority: str
    notes: str | None
    status: str
    cost: float
    submitted_at: str
    released_at: str | None = None
    completed_at: str | None = None
    deleted_at: str | None = None
    expires_at: str
    view_count: int = 0
    first_viewed_at: str | None = None
    last_viewed_at: str | None = None
    printer_id: str | None = None
    released_by: str | None = None
    secure_token: str | None = None
    release_link: str | None = None


class SubmitResponse(BaseModel):
    success: bool = True
    job: JobResponse
    expiration_duration_minutes: int


class JobListResponse(BaseModel):
    jobs: list[JobResponse]


class ViewRequest(BaseModel):
    token: str | None = None
    user_id: str | None = None


class ReleaseRequest(BaseModel):
    token: str | None = None
    printer_id: str | None = None
    released_by: str | None = None


class TransitionResponse(BaseModel):
    success: bool = True
    status: str
    message: str


class ExpiredLink(BaseModel):
    id: str
    expired_at: str
    token_prefix: str


class ExpiredLinksResponse(BaseModel):
    expired: list[ExpiredLink]


class PrintTokenRequest(BaseModel):
    token: str | None = None


class PrintTokenResponse(BaseModel):
    success: bool = True
    print_token: str
    expires_in_seconds: int
