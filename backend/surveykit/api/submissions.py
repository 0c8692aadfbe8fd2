from fastapi import APIRouter, Depends, HTTPException, UploadFile, File, Form, Response, status
from fastapi.responses import FileResponse
from sqlalchemy.orm import Session
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime, timezone
import logging
import os
from ..core.config import settings
from ..models.base import get_db
from ..models.questionnaire import Questionnaire
from ..models.submission import Submission, SubmissionFile, SubmissionStatus
from ..services.file_storage import FileStorageService, file_storage

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/submissions", tags=["submissions"])


def get_file_storage() -> FileStorageService:
    return file_storage


class SubmissionIn(BaseModel):
    questionnaire_id: int
    institution_id: int
    status: str = SubmissionStatus.DRAFT
    answers_json: Dict[str, Any] = Field(default_factory=dict)
    local_id: Optional[str] = None


class SubmissionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    local_id: Optional[str]
    questionnaire_id: int
    institution_id: int
    status: str
    answers_json: Dict[str, Any]
    submitted_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime


class UploadResponse(BaseModel):
    path: str
    url: str


def _validate(submission_in: SubmissionIn, db: Session) -> None:
    if submission_in.status not in SubmissionStatus.ALL:
        raise HTTPException(status_code=400, detail=f"Invalid status. Choose from: {SubmissionStatus.ALL}")
    if not db.query(Questionnaire).filter(Questionnaire.id == submission_in.questionnaire_id).first():
        raise HTTPException(status_code=404, detail="Questionnaire not found")


def _apply(submission: Submission, submission_in: SubmissionIn) -> None:
    submission.questionnaire_id = submission_in.questionnaire_id
    submission.institution_id = submission_in.institution_id
    submission.answers_json = dict(submission_in.answers_json)
    if submission_in.status == SubmissionStatus.SUBMITTED and submission.status != SubmissionStatus.SUBMITTED:
        submission.submitted_at = datetime.now(timezone.utc).replace(tzinfo=None)
    submission.status = submission_in.status


@router.post("", response_model=SubmissionResponse, status_code=status.HTTP_201_CREATED)
def create_submission(
    submission_in: SubmissionIn,
    response: Response,
    db: Session = Depends(get_db),
):
    """
    Create a submission.
    A repeated create with the same ``local_id`` (the client retrying after a
    lost response) updates and returns the existing record with 200.
    """
    _validate(submission_in, db)
    if submission_in.local_id:
        existing = db.query(Submission).filter(Submission.local_id == submission_in.local_id).first()
        if existing:
            _apply(existing, submission_in)
            db.commit()
            db.refresh(existing)
            response.status_code = status.HTTP_200_OK
            logger.info("Create for local id %s matched submission %s", existing.local_id, existing.id)
            return existing

    submission = Submission(local_id=submission_in.local_id, status=SubmissionStatus.DRAFT)
    _apply(submission, submission_in)
    db.add(submission)
    db.commit()
    db.refresh(submission)
    logger.info("Created submission %s (local id %s)", submission.id, submission.local_id)
    return submission


@router.get("/{submission_id}", response_model=SubmissionResponse)
def get_submission(submission_id: int, db: Session = Depends(get_db)):
    submission = db.query(Submission).filter(Submission.id == submission_id).first()
    if not submission:
        raise HTTPException(status_code=404, detail="Submission not found")
    return submission


@router.put("/{submission_id}", response_model=SubmissionResponse)
def update_submission(
    submission_id: int,
    submission_in: SubmissionIn,
    db: Session = Depends(get_db),
):
    submission = db.query(Submission).filter(Submission.id == submission_id).first()
    if not submission:
        raise HTTPException(status_code=404, detail="Submission not found")
    _validate(submission_in, db)
    _apply(submission, submission_in)
    db.commit()
    db.refresh(submission)
    return submission


@router.post("/files/upload", response_model=UploadResponse)
async def upload_file(
    submission_local_id: str = Form(...),
    question_name: str = Form(...),
    submission_id: Optional[int] = Form(None),
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    storage: FileStorageService = Depends(get_file_storage),
):
    """Store one attachment for a submission question."""
    if submission_id is not None:
        submission = db.query(Submission).filter(Submission.id == submission_id).first()
        if not submission:
            raise HTTPException(status_code=404, detail="Submission not found")
    else:
        submission = db.query(Submission).filter(Submission.local_id == submission_local_id).first()

    data = await file.read()
    if len(data) > settings.MAX_FILE_SIZE_BYTES:
        raise HTTPException(status_code=413, detail="File too large")

    stored = storage.store(
        data,
        submission_local_id=submission_local_id,
        question_name=question_name,
        file_name=file.filename or "file",
    )
    record = SubmissionFile(
        submission_id=submission.id if submission else None,
        submission_local_id=submission_local_id,
        question_name=question_name,
        file_name=file.filename or "file",
        file_type=file.content_type,
        file_size=len(data),
        path=stored["path"],
        sha256=stored["sha256"],
    )
    db.add(record)
    db.commit()
    db.refresh(record)
    logger.info("Stored %s for submission %s question %s", record.path, submission_local_id, question_name)
    return UploadResponse(path=record.path, url=f"/api/v1/submissions/files/{record.id}")


@router.get("/files/{file_id}")
def download_file(
    file_id: str,
    db: Session = Depends(get_db),
    storage: FileStorageService = Depends(get_file_storage),
):
    record = db.query(SubmissionFile).filter(SubmissionFile.id == file_id).first()
    if not record:
        raise HTTPException(status_code=404, detail="File not found")
    path = storage.absolute_path(record.path)
    if not os.path.exists(path):
        raise HTTPException(status_code=404, detail="File content missing")
    return FileResponse(path, media_type=record.file_type or "application/octet-stream", filename=record.file_name)
