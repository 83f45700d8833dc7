from pydantic import BaseModel

from secureprint.schemas.job import JobResponse


class DocumentPayload(BaseModel):
    data_url: str
    mime_type: str
    name: str
    size: int


class JobDetailResponse(BaseModel):
    job: JobResponse
    document_available: bool
    document: DocumentPayload | None = None
    analysis: dict | None = None


class ViewResponse(BaseModel):
    success: bool = True
    document: DocumentPayload | None = None
    view_count: int
    viewed_at: str
    message: str
