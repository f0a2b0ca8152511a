from pydantic import BaseModel
import os

class Settings(BaseModel):
    database_url: str = os.getenv("DATABASE_URL", "sqlite:///./aether_control.db")
    cors_origins: list[str] = os.getenv("CORS_ORIGINS", "*").split(",")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    mqtt_host: str | None = os.getenv("MQTT_HOST") or None
    mqtt_port: int = int(os.getenv("MQTT_PORT", "1883"))
    mqtt_username: str | None = os.getenv("MQTT_USERNAME") or None
    mqtt_password: str | None = os.getenv("MQTT_PASSWORD") or None
    mqtt_topic_base: str = os.getenv("MQTT_TOPIC_BASE", "aether")

    openai_api_key: str | None = os.getenv("OPENAI_API_KEY") or None
    openai_model: str = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
    insights_cache_ttl: int = int(os.getenv("INSIGHTS_CACHE_TTL", "120"))

    # optimistic write attempts per ingest before giving up with StorageError
    ingest_max_attempts: int = int(os.getenv("INGEST_MAX_ATTEMPTS", "8"))

settings = Settings()
