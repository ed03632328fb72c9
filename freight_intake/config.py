#!/usr/bin/env python3

from typing import Dict, List, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str
    redis_url: str
    workdir: str
    log_level: str = "INFO"

    # AI extraction
    ai_extraction_enabled: bool = True
    ai_primary_service: str = "openai"  # "openai" or "anthropic"
    ai_fallback_service: Optional[str] = "anthropic"
    ai_timeout_seconds: int = 20
    ai_retry_delay_ms: int = 100
    ai_temperature: float = 0.1
    ai_max_output_tokens: int = 900
    ai_cheap_max_input_tokens: int = 4000
    ai_reasoning_force_heavy: bool = True
    ai_structured_outputs: bool = True
    ai_content_trim_enabled: bool = True
    ai_cache_enabled: bool = True
    ai_cache_ttl: int = 3600
    ai_rate_limit_per_minute: int = 50
    # USD per million tokens: service -> model -> {"input", "output"}
    ai_pricing_per_million: Dict[str, Dict[str, Dict[str, float]]] = {
        "openai": {
            "gpt-4o": {"input": 2.5, "output": 10.0},
            "gpt-4o-mini": {"input": 0.15, "output": 0.6},
        },
        "anthropic": {
            "claude-3-5-sonnet-20241022": {"input": 3.0, "output": 15.0},
            "claude-3-5-haiku-20241022": {"input": 0.8, "output": 4.0},
        },
    }

    openai_api_key: Optional[str] = None
    openai_base_url: str = "https://api.openai.com/v1"
    openai_model: str = "gpt-4o"
    openai_model_cheap: str = "gpt-4o-mini"

    anthropic_api_key: Optional[str] = None
    anthropic_model: str = "claude-3-5-sonnet-20241022"
    anthropic_model_cheap: str = "claude-3-5-haiku-20241022"

    # OCR / rasterization
    tesseract_cmd: str = "tesseract"
    tesseract_language: str = "eng"
    pdftoppm_cmd: str = "pdftoppm"
    ocr_dpi: int = 300
    ocr_max_pages: int = 100
    ocr_min_text_length: int = 100
    ocr_timeout_seconds: int = 120
    ocr_rate_limit_per_minute: int = 30
    # limits storage for the OCR and AI call caps; defaults to redis_url
    rate_limit_storage_uri: Optional[str] = None
    # What to do when a PDF's text layer was never inspected:
    # "inspect", "assume_text" or "assume_scanned"
    ocr_unknown_text_layer_policy: str = "inspect"

    # Image conversion
    imagemagick_convert_cmd: str = "convert"
    image_conversion_timeout: int = 60
    jpeg_quality: int = 85
    convert_images_to_pdf: bool = True

    # Email ingestion
    dedup_global_content_guard: bool = True
    email_extract_attachments: bool = True
    storage_disk: str = "documents"

    # CRM upload
    crm_base_url: Optional[str] = None
    crm_api_token: Optional[str] = None
    upload_timeout_seconds: int = 30
    upload_max_retries: int = 3
    upload_retry_delays: List[int] = [1, 2, 4]
    upload_marker_ttl: int = 86400

    # Celery task retries, e.g. "60,300,900"
    task_retry_delays: Optional[str] = None

    class Config:
        env_file = ".env"


settings = Settings()
