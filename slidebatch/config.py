import json
import os

class Settings:
    """Application settings"""
    def __init__(self):
        self.app_name: str = os.getenv("APP_NAME", "Slidebatch Orchestrator")
        self.app_version: str = os.getenv("APP_VERSION", "1.0.0")
        self.debug: bool = os.getenv("DEBUG", "false").lower() == "true"
        self.host: str = os.getenv("HOST", "0.0.0.0")
        self.port: int = int(os.getenv("PORT", "8000"))

        # API settings
        self.api_v1_prefix: str = os.getenv("API_V1_PREFIX", "/v1")

        # Logging settings
        self.log_level: str = os.getenv("LOG_LEVEL", "INFO")

        # Development settings
        cors_origins_str = os.getenv("CORS_ORIGINS", '["http://localhost:3000", "http://localhost:5173"]')
        try:
            self.cors_origins = json.loads(cors_origins_str) if cors_origins_str.startswith('[') else ["*"]
        except (json.JSONDecodeError, ValueError):
            self.cors_origins = ["*"]

        # Batch job defaults, overridable per job
        self.batch_max_concurrency: int = int(os.getenv("BATCH_MAX_CONCURRENCY", "5"))
        self.batch_chunk_size: int = int(os.getenv("BATCH_CHUNK_SIZE", "100"))
        self.batch_memory_threshold_mb: float = float(os.getenv("BATCH_MEMORY_THRESHOLD_MB", "500"))
        self.batch_retry_attempts: int = int(os.getenv("BATCH_RETRY_ATTEMPTS", "3"))
        self.batch_retry_delay_ms: float = float(os.getenv("BATCH_RETRY_DELAY_MS", "1000"))
        self.batch_job_timeout_ms: float = float(os.getenv("BATCH_JOB_TIMEOUT_MS", str(30 * 60 * 1000)))
        self.batch_monitoring_interval_ms: float = float(os.getenv("BATCH_MONITORING_INTERVAL_MS", "10000"))
        self.batch_memory_cooldown_ms: float = float(os.getenv("BATCH_MEMORY_COOLDOWN_MS", "5000"))

        # Terminal jobs stay queryable for this long before being purged
        self.batch_job_retention_seconds: float = float(os.getenv("BATCH_JOB_RETENTION_SECONDS", "3600"))

        # Persistence mirror settings
        self.persistence_enabled: bool = os.getenv("PERSISTENCE_ENABLED", "true").lower() == "true"
        self.database_path: str = os.getenv("DATABASE_PATH", "slidebatch.db")
        self.batch_collection: str = os.getenv("BATCH_COLLECTION", "enhanced_batch_jobs")

# Global settings instance
settings = Settings()
