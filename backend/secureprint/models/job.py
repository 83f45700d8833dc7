from sqlalchemy import Boolean, Column, Float, Integer, Text
from sqlalchemy.orm import relationship
from secureprint.database import Base

PENDING = "pending"
RELEASED = "released"
COMPLETED = "completed"
DELETED = "deleted"

JOB_STATUSES = (PENDING, RELEASED, COMPLETED, DELETED)
LIVE_STATUSES = (PENDING, RELEASED)


class Job(Base):
    __tablename__ = "jobs"

    id = Column(Text, primary_key=True)
    user_id = Column(Text, nullable=False)
    document_name = Column(Text, nullable=False)
    pages = Column(Integer, nullable=False, default=1)
    copies = Column(Integer, nullable=False, default=1)
    color = Column(Boolean, nullable=False, default=False)
    duplex = Column(Boolean, nullable=False, default=False)
    stapling = Column(Boolean, nullable=False, default=False)
    priority = Column(Text, nullable=False, default="normal")
    notes = Column(Text)
    status = Column(Text, nullable=False, default=PENDING)
    cost = Column(Float, nullable=False)
    submitted_at = Column(Text, nullable=False)
    released_at = Column(Text)
    completed_at = Column(Text)
    deleted_at = Column(Text)
    secure_token = Column(Text, nullable=False)
    release_link = Column(Text, nullable=False)
    expires_at = Column(Text, nullable=False)
    view_count = Column(Integer, nullable=False, default=0)
    first_viewed_at = Column(Text)
    last_viewed_at = Column(Text)
    printer_id = Column(Text)
    released_by = Column(Text)

    document = relationship("Document", back_populates="job", uselist=False, passive_deletes=True)
    views = relationship("JobView", back_populates="job", order_by="JobView.viewed_at")
