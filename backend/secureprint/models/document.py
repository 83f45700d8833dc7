from sqlalchemy import Column, ForeignKey, Integer, LargeBinary, Text
from sqlalchemy.orm import relationship
from secureprint.database import Base


class Document(Base):
    __tablename__ = "documents"

    id = Column(Text, primary_key=True)
    job_id = Column(Text, ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False, unique=True)
    content = Column(LargeBinary, nullable=False)
    mime_type = Column(Text)
    filename = Column(Text, nullable=False)
    size = Column(Integer, nullable=False)
    stored_path = Column(Text, unique=True)
    encryption_metadata = Column(Text)
    created_at = Column(Text, nullable=False)

    job = relationship("Job", back_populates="document")
    analyses = relationship(
        "DocumentAnalysis",
        back_populates="document",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="DocumentAnalysis.created_at",
    )


class DocumentAnalysis(Base):
    __tablename__ = "document_analysis"

    id = Column(Text, primary_key=True)
    document_id = Column(Text, ForeignKey("documents.id", ondelete="CASCADE"), nullable=False)
    analysis_type = Column(Text, nullable=False)
    result = Column(Text, nullable=False)
    status = Column(Text, nullable=False)
    created_at = Column(Text, nullable=False)

    document = relationship("Document", back_populates="analyses")
