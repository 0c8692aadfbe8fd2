from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, JSON
from sqlalchemy.orm import relationship
from .base import Base, TimestampMixin, generate_uuid
from .offline import SubmissionStatus
from .questionnaire import Questionnaire


class Submission(Base, TimestampMixin):
    __tablename__ = "submissions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    local_id = Column(String(64), unique=True, nullable=True, index=True)  # Client id, for idempotent creates
    questionnaire_id = Column(Integer, ForeignKey("questionnaires.id"), nullable=False, index=True)
    institution_id = Column(Integer, nullable=False, index=True)
    status = Column(String(20), nullable=False, default=SubmissionStatus.DRAFT)
    answers_json = Column(JSON, nullable=False, default=dict)
    submitted_at = Column(DateTime, nullable=True)

    questionnaire = relationship(Questionnaire)
    files = relationship("SubmissionFile", back_populates="submission", cascade="all, delete-orphan")


class SubmissionFile(Base, TimestampMixin):
    __tablename__ = "submission_files"

    id = Column(String, primary_key=True, default=generate_uuid)
    submission_id = Column(Integer, ForeignKey("submissions.id"), nullable=True, index=True)
    submission_local_id = Column(String(64), nullable=False, index=True)
    question_name = Column(String(255), nullable=False)
    file_name = Column(String(255), nullable=False)
    file_type = Column(String(100), nullable=True)
    file_size = Column(Integer, nullable=False)
    path = Column(String(500), nullable=False)
    sha256 = Column(String(64), nullable=False)

    submission = relationship("Submission", back_populates="files")
