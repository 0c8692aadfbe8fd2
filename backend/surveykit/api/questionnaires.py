from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict
from datetime import datetime
from ..models.base import get_db
from ..models.questionnaire import Questionnaire

router = APIRouter(prefix="/questionnaires", tags=["questionnaires"])


class PermissionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    question_name: str
    institution_id: int
    permission: str


class QuestionnaireSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    code: str
    version: int
    title: str
    is_active: bool


class QuestionnaireResponse(QuestionnaireSummary):
    description: Optional[str]
    surveyjs_json: Dict[str, Any]
    permissions: List[PermissionResponse]
    updated_at: datetime


@router.get("", response_model=List[QuestionnaireSummary])
def list_questionnaires(active_only: bool = True, db: Session = Depends(get_db)):
    query = db.query(Questionnaire)
    if active_only:
        query = query.filter(Questionnaire.is_active.is_(True))
    return query.order_by(Questionnaire.code, Questionnaire.version).all()


@router.get("/{questionnaire_id}", response_model=QuestionnaireResponse)
def get_questionnaire(questionnaire_id: int, db: Session = Depends(get_db)):
    """Full definition with field permissions, as cached by offline clients."""
    questionnaire = db.query(Questionnaire).filter(Questionnaire.id == questionnaire_id).first()
    if not questionnaire:
        raise HTTPException(status_code=404, detail="Questionnaire not found")
    return questionnaire
