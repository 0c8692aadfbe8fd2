from pydantic_settings import BaseSettings
from typing import List, Optional


class Settings(BaseSettings):
    APP_NAME: str = "SurveyKit Data Collection"
    VERSION: str = "1.0.0"

    # Server side
    DATABASE_URL: str = "sqlite:///./surveykit.db"
    UPLOAD_DIR: Optional[str] = None  # Defaults to <backend>/uploads

    # Client side: server API the sync engine talks to
    API_BASE_URL: str = "http://localhost:8000/api/v1"
    API_TOKEN: Optional[str] = None

    # Client side: embedded local store
    LOCAL_DATABASE_URL: str = "sqlite+aiosqlite:///./surveykit_offline.db"

    # Connectivity probing
    PING_INTERVAL_SECONDS: float = 30.0
    PING_TIMEOUT_SECONDS: float = 5.0

    # Sync engine
    SYNC_REQUEST_TIMEOUT: float = 30.0
    SYNC_MAX_ATTEMPTS: int = 5
    SYNC_RETRY_DELAYS: List[float] = [1.0, 2.0, 4.0, 8.0, 16.0]
    SYNC_INTERVAL_SECONDS: float = 0.0  # 0 disables the periodic sync timer

    # Offline editing
    AUTOSAVE_INTERVAL_SECONDS: float = 30.0
    MAX_FILE_SIZE_BYTES: int = 50 * 1024 * 1024
    MAX_TOTAL_STORAGE_BYTES: int = 500 * 1024 * 1024

    class Config:
        env_file = ".env"


settings = Settings()
