from sqlalchemy import Column, ForeignKey, Text
from sqlalchemy.orm import relationship
from secureprint.database import Base


class JobView(Base):
    __tablename__ = "job_views"

    id = Column(Text, primary_key=True)
    job_id = Column(Text, ForeignKey("jobs.id"), nullable=False)
    user_id = Column(Text, nullable=False, default="anonymous")
    viewed_at = Column(Text, nullable=False)
    user_agent = Column(Text)
    ip_address = Column(Text)

    job = relationship("Job", back_populates="views")
