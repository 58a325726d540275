from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = "Waste Tracking"
    host: str = "0.0.0.0"
    port: int = 8000

    log_level: str = "INFO"
    log_to_console: bool = True
    log_file: str = ""

    storage_backend: str = Field(default="memory", pattern="^(memory|sqlserver)$")
    sql_server: str = "localhost"
    sql_port: int = 1433
    sql_database: str = "waste_tracking"
    sql_user: str = "sa"
    sql_password: str = ""
    sql_driver: str = "ODBC Driver 18 for SQL Server"
    sql_trust_server_certificate: bool = True
    sql_schema: str = "dbo"
    sql_query_timeout_seconds: int = Field(default=30, ge=1, le=600)
    sql_max_concurrent_queries: int = Field(default=4, ge=1, le=64)
    sql_max_in_params: int = Field(default=1000, ge=10, le=2000)
    log_sql_preview_chars: int = Field(default=240, ge=40, le=10000)
    bin_table: str = "bins"
    waste_event_table: str = "waste_events"
    branch_table: str = "branches"
    org_unit_table: str = "org_units"
    cleaner_table: str = "cleaners"
    company_table: str = "companies"

    fanout_backend: str = Field(default="memory", pattern="^(memory|redis)$")
    redis_url: str = "redis://localhost:6379/0"
    fanout_channel: str = "waste-updates"
    event_queue_size: int = Field(default=20000, ge=100, le=500000)
    ws_queue_size: int = Field(default=5000, ge=10, le=500000)

    mqtt_enabled: bool = False
    mqtt_host: str = "localhost"
    mqtt_port: int = Field(default=1883, ge=1, le=65535)
    mqtt_username: str = ""
    mqtt_password: str = ""
    mqtt_topic: str = "waste/weight/#"
    mqtt_client_id: str = ""
    mqtt_qos: int = Field(default=1, ge=0, le=2)
    mqtt_reconnect_seconds: float = Field(default=5.0, gt=0, le=300)

    not_emptied_check_start_hour: int = Field(default=10, ge=0, le=23)
    not_emptied_check_end_hour: int = Field(default=11, ge=1, le=24)
    leaderboard_fallback_day: int = Field(default=7, ge=0, le=28)
    activity_feed_days: int = Field(default=7, ge=1, le=90)
    activity_feed_limit: int = Field(default=500, ge=1, le=50000)

    def build_odbc_dsn(self, driver: str | None = None) -> str:
        chosen = (driver or self.sql_driver).strip()
        parts = {
            "DRIVER": f"{{{chosen}}}",
            "SERVER": f"{self.sql_server},{self.sql_port}",
            "DATABASE": self.sql_database,
            "UID": self.sql_user,
            "PWD": self.sql_password,
        }
        # Only the modern "ODBC Driver NN" family understands TrustServerCertificate.
        if chosen.lower().startswith("odbc driver"):
            parts["TrustServerCertificate"] = "yes" if self.sql_trust_server_certificate else "no"
        return "".join(f"{key}={value};" for key, value in parts.items())


settings = Settings()
