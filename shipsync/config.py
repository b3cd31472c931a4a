"""
Configuration management for the ShipStation export pipeline
"""
from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    """Application settings"""

    # Application
    app_name: str = "ShipSync ShipStation Export"
    environment: str = "development"
    debug: bool = False
    log_level: str = "INFO"
    log_dir: str = "logs"
    log_to_store: bool = True  # Mirror WARNING+ records into the system_log table

    # Database (property store, checkpoints, durable log)
    database_url: str = "sqlite:///./shipsync.db"

    # ShipStation
    shipstation_api_key: str = ""
    shipstation_api_secret: str = ""
    shipstation_api_base_url: str = "https://ssapi.shipstation.com"
    shipstation_timezone: str = "America/Los_Angeles"  # ShipStation API timestamps are Pacific
    include_fulfillments: bool = True

    # API client behaviour
    api_timeout_seconds: float = 60.0
    api_max_retries: int = 3
    api_retry_delay_seconds: float = 1.0
    api_retry_jitter_seconds: float = 0.2
    api_rate_limit_delay_seconds: float = 0.5
    api_page_size: int = 500

    # Google Sheets (tabular store + reference tables)
    google_sheets_credentials_path: str = "./credentials/google-sheets-credentials.json"
    export_spreadsheet_id: str = ""
    export_sheet_tab: str = "ShipStation Export"
    warehouses_tab: str = "Warehouses"
    stores_tab: str = "Stores"

    # Execution budget
    max_execution_seconds: int = 300
    backfill_max_execution_seconds: int = 300
    deadline_warning_window_start: int = 30  # seconds remaining
    deadline_warning_window_end: int = 20
    lookback_minutes: int = 15
    backfill_batch_size: int = 500
    backfill_continuation_delay_seconds: int = 60
    backfill_max_consecutive_failures: int = 3  # stop rescheduling after this many failed chunks

    # Batch writer
    placeholder_text: str = "No new shipments found"
    placeholder_scan_rows: int = 20
    row_headroom: int = 10
    dedupe_scan_rows: int = 2000
    write_placeholder_rows: bool = True

    # Concurrency guard
    lock_dir: str = "./locks"
    lock_name: str = "shipstation_export"
    lock_timeout_seconds: int = 300

    # Reference data
    house_brand_marker: str = "metscube"
    default_cost_markup_percentage: float = 0.0

    # Display
    business_timezone: str = "America/New_York"

    # Scheduling
    sync_interval_minutes: int = 10

    # Alerts
    alert_email_from: Optional[str] = None
    alert_email_to: Optional[str] = None
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_user: Optional[str] = None
    smtp_password: Optional[str] = None
    slack_webhook_url: Optional[str] = None
    enable_auto_alerts: bool = True

    class Config:
        env_file = ".env"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
