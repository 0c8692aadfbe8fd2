"""
Demo data seeder for SurveyKit.

Creates a small demo questionnaire (with one field permission grant) so an
offline client can cache it and submit answers right after a fresh start.

This seeder is idempotent; it is safe to call on every startup.
"""
from .models.base import SessionLocal, Base, engine
from .models.questionnaire import Questionnaire, QuestionPermission, PermissionLevel

DEMO_INSTITUTION_ID = 1
DEMO_QUESTIONNAIRE_CODE = "HEALTH_SURVEY"
DEMO_QUESTIONNAIRE_VERSION = 1

DEMO_SURVEY_JSON = {
    "title": "Community Health Survey",
    "pages": [
        {
            "name": "household",
            "elements": [
                {"type": "text", "name": "household_name", "title": "Household name", "isRequired": True},
                {"type": "text", "name": "members", "title": "Number of members", "inputType": "number"},
            ],
        },
        {
            "name": "health",
            "elements": [
                {
                    "type": "radiogroup",
                    "name": "water_source",
                    "title": "Main drinking water source",
                    "choices": ["piped", "well", "river", "other"],
                },
                {"type": "comment", "name": "notes", "title": "Notes"},
                {"type": "file", "name": "photo", "title": "Photo of the water source"},
            ],
        },
    ],
}


def seed_demo_data() -> None:
    """Create the demo questionnaire and its permission grant if missing."""
    # Ensure tables exist (no-op when already created by main.py)
    Base.metadata.create_all(bind=engine)

    db = SessionLocal()
    try:
        questionnaire = _seed_questionnaire(db)
        _seed_permission(db, questionnaire.id)
    finally:
        db.close()


# ── helpers ──────────────────────────────────────────────────────────────────

def _seed_questionnaire(db) -> Questionnaire:
    questionnaire = (
        db.query(Questionnaire)
        .filter(
            Questionnaire.code == DEMO_QUESTIONNAIRE_CODE,
            Questionnaire.version == DEMO_QUESTIONNAIRE_VERSION,
        )
        .first()
    )
    if not questionnaire:
        questionnaire = Questionnaire(
            code=DEMO_QUESTIONNAIRE_CODE,
            version=DEMO_QUESTIONNAIRE_VERSION,
            title=DEMO_SURVEY_JSON["title"],
            description="Pre-seeded demo questionnaire.",
            surveyjs_json=DEMO_SURVEY_JSON,
        )
        db.add(questionnaire)
        db.commit()
        db.refresh(questionnaire)
        print(f"[seed] Created demo questionnaire: {questionnaire.code} v{questionnaire.version} (id: {questionnaire.id})")
    return questionnaire


def _seed_permission(db, questionnaire_id: int) -> None:
    existing = (
        db.query(QuestionPermission)
        .filter(QuestionPermission.questionnaire_id == questionnaire_id)
        .first()
    )
    if not existing:
        db.add(
            QuestionPermission(
                questionnaire_id=questionnaire_id,
                question_name="notes",
                institution_id=DEMO_INSTITUTION_ID,
                permission=PermissionLevel.EDIT,
            )
        )
        db.commit()
        print(f"[seed] Created demo permission: institution {DEMO_INSTITUTION_ID} may edit 'notes'")
