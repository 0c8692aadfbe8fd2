from sqlalchemy import Column, Integer, String, Text, Boolean, ForeignKey, JSON, UniqueConstraint
from sqlalchemy.orm import relationship
from .base import Base, TimestampMixin


class PermissionLevel:
    VIEW = "view"
    EDIT = "edit"

    ALL = [VIEW, EDIT]


class Questionnaire(Base, TimestampMixin):
    __tablename__ = "questionnaires"
    __table_args__ = (UniqueConstraint("code", "version", name="uq_questionnaire_code_version"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    code = Column(String(100), nullable=False, index=True)
    version = Column(Integer, nullable=False, default=1)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    surveyjs_json = Column(JSON, nullable=False)  # SurveyJS pages/elements document
    is_active = Column(Boolean, default=True)

    permissions = relationship("QuestionPermission", back_populates="questionnaire", cascade="all, delete-orphan")


class QuestionPermission(Base, TimestampMixin):
    """Field-level grant; enforcement lives outside this service."""
    __tablename__ = "question_permissions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    questionnaire_id = Column(Integer, ForeignKey("questionnaires.id"), nullable=False, index=True)
    question_name = Column(String(255), nullable=False)
    institution_id = Column(Integer, nullable=False, index=True)
    permission = Column(String(20), nullable=False, default=PermissionLevel.EDIT)

    questionnaire = relationship("Questionnaire", back_populates="permissions")
