# backend/wardaqi/config.py
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from functools import lru_cache
import logging


class Settings(BaseSettings):
    # Field aliases are the environment variable names (also read from .env).
    model_config = SettingsConfigDict(env_file='../.env', env_file_encoding='utf-8', extra='ignore', populate_by_name=True)

    # InfluxDB (durable narrative cache + per-ward pollutant snapshots)
    influxdb_url: str = Field("http://localhost:8086", alias="INFLUXDB_URL")
    influxdb_token: str = Field("YourAdminAuthTokenHere", alias="INFLUXDB_TOKEN")
    influxdb_org: str = Field("wardaqi_org", alias="INFLUXDB_ORG")
    influxdb_bucket: str = Field("wardaqi_data", alias="INFLUXDB_BUCKET")
    # How far back get_latest_pollutants looks (Flux duration literal)
    pollutant_lookback: str = Field("30d", alias="POLLUTANT_LOOKBACK")

    # RabbitMQ (bulk refresh segments)
    rabbitmq_host: str = Field("localhost", alias="RABBITMQ_HOST")
    rabbitmq_port: int = Field(5672, alias="RABBITMQ_PORT")
    rabbitmq_user: str = Field("guest", alias="RABBITMQ_DEFAULT_USER")
    rabbitmq_pass: str = Field("guest", alias="RABBITMQ_DEFAULT_PASS")
    rabbitmq_queue_refresh: str = Field("ward_narrative_refresh", alias="RABBITMQ_QUEUE_REFRESH")

    # Station live feed
    live_feed_base_url: str = Field("https://api.waqi.info", alias="WAQI_BASE_URL")
    live_feed_token: str = Field("demo", alias="WAQI_TOKEN")

    # Pollutant concentrations (current / history / forecast)
    pollutant_base_url: str = Field("https://api.openweathermap.org/data/2.5", alias="OPENWEATHER_BASE_URL")
    pollutant_api_key: str = Field("", alias="OPENWEATHER_API_KEY")

    # Generative text service
    gemini_api_key: str = Field("", alias="GOOGLE_API_KEY")
    gemini_model: str = Field("gemini-1.5-flash", alias="GEMINI_MODEL")
    narrative_timeout_seconds: float = Field(30.0, alias="NARRATIVE_TIMEOUT_SECONDS")
    batch_narrative_timeout_seconds: float = Field(120.0, alias="BATCH_NARRATIVE_TIMEOUT_SECONDS")

    # Per-call timeout for every upstream data request
    upstream_timeout_seconds: float = Field(8.0, alias="UPSTREAM_TIMEOUT_SECONDS")

    # Fast in-memory report cache
    report_cache_capacity: int = Field(5, alias="REPORT_CACHE_CAPACITY", ge=1)
    report_cache_ttl_seconds: float = Field(120.0, alias="REPORT_CACHE_TTL_SECONDS", gt=0)

    # Single freshness policy shared by the request path and the bulk refresh job
    narrative_freshness_hours: float = Field(24.0, alias="NARRATIVE_FRESHNESS_HOURS", gt=0)
    refresh_slots_per_day: int = Field(4, alias="REFRESH_SLOTS_PER_DAY", ge=1)

    # Ward geometry + presentation
    # Empty means the bundled data/wards.geojson
    wards_geojson_path: str = Field("", alias="WARDS_GEOJSON_PATH")
    display_timezone: str = Field("Asia/Kolkata", alias="DISPLAY_TIMEZONE")


@lru_cache()
def get_settings() -> Settings:
    logger = logging.getLogger(__name__)
    logger.info("Loading settings...")
    return Settings()
