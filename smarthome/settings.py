from pydantic import BaseModel
import os

class Settings(BaseModel):
    database_url: str = os.getenv("DATABASE_URL", "sqlite:///./smarthome.db")
    cors_origins: list[str] = os.getenv("CORS_ORIGINS", "http://localhost:3000,http://localhost:5173").split(",")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    mqtt_host: str = os.getenv("MQTT_HOST", "localhost")
    mqtt_port: int = int(os.getenv("MQTT_PORT", "1883"))
    mqtt_username: str | None = os.getenv("MQTT_USERNAME") or None
    mqtt_password: str | None = os.getenv("MQTT_PASSWORD") or None
    mqtt_client_id: str = os.getenv("MQTT_CLIENT_ID", "smarthome-api")
    mqtt_topic_sensors: str = os.getenv("MQTT_TOPIC_SENSORS", "home/sensors")
    mqtt_topic_alert: str = os.getenv("MQTT_TOPIC_ALERT", "home/alert")
    mqtt_topic_control: str = os.getenv("MQTT_TOPIC_CONTROL", "home/control")

    liveness_window_seconds: float = float(os.getenv("LIVENESS_WINDOW_SECONDS", "30"))
    publish_timeout_seconds: float = float(os.getenv("PUBLISH_TIMEOUT_SECONDS", "5"))
    storage_timeout_seconds: float = float(os.getenv("STORAGE_TIMEOUT_SECONDS", "5"))
    ingest_workers: int = int(os.getenv("INGEST_WORKERS", "4"))
    ingest_max_backlog: int = int(os.getenv("INGEST_MAX_BACKLOG", "1000"))

    auth_gateway_key: str | None = os.getenv("AUTH_GATEWAY_KEY") or None

settings = Settings()
