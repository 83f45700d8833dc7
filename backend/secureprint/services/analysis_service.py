import hashlib
import json
import uuid

from secureprint.models.document import DocumentAnalysis

BASIC_METRICS = "basic_metrics"


def is_pdf(content: bytes) -> bool:
    return content[:4] == b"%PDF"


def basic_metrics(content: bytes, mime_type: str | None, processed_at: str) -> dict:
    """Cheap metrics computed on the plaintext before it is sealed."""
    looks_like_pdf = None
    if mime_type and "pdf" in mime_type:
        looks_like_pdf = is_pdf(content)
    return {
        "word_count": len(content) // 6,
        "byte_size": len(content),
        "sha256": hashlib.sha256(content).hexdigest(),
        "pdf_header_valid": looks_like_pdf,
        "features": ["text-extraction", "metadata-analysis"],
        "processed_at": processed_at,
    }


def build_analysis(document_id: str, content: bytes, mime_type: str | None, now: str) -> DocumentAnalysis:
    return DocumentAnalysis(
        id=str(uuid.uuid4()),
        document_id=document_id,
        analysis_type=BASIC_METRICS,
        result=json.dumps(basic_metrics(content, mime_type, now)),
        status="completed",
        created_at=now,
    )
