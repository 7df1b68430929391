import os
from dotenv import load_dotenv

load_dotenv()


class Settings:
    # Database
    POSTGRES_CONNECTION_STRING: str = os.getenv("POSTGRES_CONNECTION_STRING", "")

    # API
    API_TOKEN: str = os.getenv("API_TOKEN", "")
    SERVICE_URL: str = os.getenv("SERVICE_URL", "http://localhost:8000")

    # Services
    CATALOG_BASE_URL: str = os.getenv("CATALOG_BASE_URL", "")
    NOTIFICATIONS_BASE_URL: str = os.getenv("NOTIFICATIONS_BASE_URL", "")
    PAYMENT_PROCESSOR_URL: str = os.getenv("PAYMENT_PROCESSOR_URL", "")

    # Kafka
    KAFKA_BOOTSTRAP_SERVERS: str = os.getenv("KAFKA_BOOTSTRAP_SERVERS", "localhost:9092")
    AUDIT_TOPIC: str = os.getenv("AUDIT_TOPIC", "bookstore.audit.events")
    CARRIER_TOPIC: str = os.getenv("CARRIER_TOPIC", "bookstore.carrier.events")

    # Business rules, amounts in minor units
    HOME_DELIVERY_FEE: int = int(os.getenv("HOME_DELIVERY_FEE", "700000"))
    RETURN_WINDOW_DAYS: int = int(os.getenv("RETURN_WINDOW_DAYS", "8"))
    RETURN_SHIPPING_DEADLINE_DAYS: int = int(os.getenv("RETURN_SHIPPING_DEADLINE_DAYS", "15"))

    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    @property
    def DATABASE_URL(self) -> str:
        """Async URL for the application"""
        if not self.POSTGRES_CONNECTION_STRING:
            return "sqlite+aiosqlite:///./bookstore.db"
        return self.POSTGRES_CONNECTION_STRING.replace("postgres://", "postgresql+asyncpg://")

    @property
    def SYNC_DATABASE_URL(self) -> str:
        """Sync URL for Alembic"""
        if not self.POSTGRES_CONNECTION_STRING:
            return "sqlite:///./bookstore.db"
        return self.POSTGRES_CONNECTION_STRING.replace("postgres://", "postgresql://")


settings = Settings()
