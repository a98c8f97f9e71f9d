from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List, Optional


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False)

    # Recognition
    tesseract_lang: str = "ara+fra"
    tesseract_cmd: Optional[str] = None  # falls back to the binary on PATH
    min_text_length: int = 10  # characters after strip()
    extraction_status_log_size: int = 50

    # Mapping
    mapping_auto_accept_threshold: float = 0.8
    description_max_chars: int = 200

    # Validation
    validation_low_confidence_threshold: float = 0.7
    validation_critical_fields: List[str] = ["title", "date", "institution", "type"]
    validation_max_date_span_days: int = 365
    validation_error_penalty: float = 25.0
    validation_warning_penalty: float = 10.0

    # Approval
    approval_priority_critical_below: float = 60.0
    approval_priority_high_below: float = 75.0
    approval_priority_medium_below: float = 85.0
    approval_due_days_critical: int = 1
    approval_due_days_high: int = 3
    approval_due_days_medium: int = 5
    approval_due_days_low: int = 10

    # Persistence
    audit_db_path: str = "qanun_audit.db"

    # General
    log_level: str = "INFO"
    service_name: str = "qanun-workflow"


settings = Settings()
