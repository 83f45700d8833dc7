from secureprint.models.job import Job
from secureprint.models.document import Document, DocumentAnalysis
from secureprint.models.view import JobView

__all__ = ["Job", "Document", "DocumentAnalysis", "JobView"]
