"""Configuration management using Pydantic for validation and YAML loading."""

import os
import re
from pathlib import Path
from typing import List, Optional, Union

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings

_ENV_PATTERN = re.compile(r"^\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-(.*))?\}$")


class SQLiteConfig(BaseModel):
    """SQLite database configuration."""
    path: str = "data/recipedb.db"


class PostgreSQLConfig(BaseModel):
    """PostgreSQL database configuration."""
    host: str = "localhost"
    port: int = 5432
    database: str = "ghibli_food_db"
    username: str = "postgres"
    password: str = ""


class DatabaseConfig(BaseModel):
    """Database configuration."""
    type: str = Field(pattern="^(sqlite|postgresql)$", default="postgresql")
    sqlite: Optional[SQLiteConfig] = Field(default=None, validate_default=True)
    postgresql: Optional[PostgreSQLConfig] = Field(default=None, validate_default=True)

    # Admin connection pool
    pool_size: int = Field(ge=1, default=20)
    max_overflow: int = Field(ge=0, default=0)
    pool_timeout: float = Field(gt=0, default=2.0)

    @field_validator('sqlite')
    @classmethod
    def validate_sqlite_config(cls, v, info):
        if info.data.get('type') == 'sqlite' and v is None:
            return SQLiteConfig()
        return v

    @field_validator('postgresql')
    @classmethod
    def validate_postgresql_config(cls, v, info):
        if info.data.get('type') == 'postgresql' and v is None:
            return PostgreSQLConfig()
        return v


class ThresholdsConfig(BaseModel):
    """Alerting thresholds applied to every metrics snapshot."""
    max_connections_percent: float = Field(ge=0.0, le=100.0, default=80.0)
    connection_limit: int = Field(gt=0, default=100)
    slow_query_ms: float = Field(ge=0.0, default=1000.0)
    max_database_size_gb: float = Field(gt=0.0, default=1.0)
    disk_usage_percent: float = Field(ge=0.0, le=100.0, default=85.0)


class MonitoringConfig(BaseModel):
    """Monitoring and alerting configuration."""

    # Dedicated monitor pool
    pool_size: int = Field(ge=1, default=5)

    # Tick schedule
    metrics_interval_seconds: int = Field(gt=0, default=60)
    health_interval_seconds: int = Field(gt=0, default=300)
    hourly_report_cron: str = "0 * * * *"
    daily_report_cron: str = "0 0 * * *"

    # In-memory buffers
    history_size: int = Field(gt=0, default=1000)
    api_history_size: int = Field(gt=0, default=100)
    health_history_size: int = Field(gt=0, default=100)
    alert_cooldown_seconds: int = Field(ge=0, default=3600)
    alert_history_size: int = Field(gt=0, default=100)

    thresholds: ThresholdsConfig = Field(default_factory=ThresholdsConfig)

    # Append-log persistence
    data_dir: str = "data/monitoring"
    reports_dir: str = "data/reports"
    log_max_bytes: int = 5242880  # 5MB
    log_backup_count: int = 5


class BackupConfig(BaseModel):
    """Backup and restore configuration."""
    directory: str = "backup"
    pg_dump_path: str = "pg_dump"
    psql_path: str = "psql"
    timeout_seconds: int = Field(gt=0, default=3600)
    keep_days: int = Field(ge=0, default=30)
    default_format: str = Field(pattern="^(sql|csv)$", default="sql")
    compress: bool = False
    schedule_cron: Optional[str] = None


class AdminConfig(BaseModel):
    """Admin API server configuration."""
    host: str = "0.0.0.0"
    port: int = 3002
    environment: str = Field(pattern="^(development|production|test)$", default="development")
    allowed_origins: List[str] = Field(default_factory=lambda: ["http://localhost:3000"])
    rate_limit_requests: int = Field(gt=0, default=100)
    rate_limit_window_seconds: int = Field(gt=0, default=900)


class EmailConfig(BaseModel):
    """Email notification configuration."""
    enabled: bool = False
    smtp_server: str = "smtp.gmail.com"
    smtp_port: int = 587
    use_tls: bool = True
    username: Optional[str] = None
    password: Optional[str] = None
    from_address: str = "noreply@ghiblifood.com"
    alert_addresses: List[str] = Field(default_factory=list)
    report_addresses: List[str] = Field(default_factory=list)
    timeout_seconds: int = 30


class NotificationsConfig(BaseModel):
    """Notifications configuration."""
    email: EmailConfig = Field(default_factory=EmailConfig)


class FileHandlerConfig(BaseModel):
    """File handler logging configuration."""
    enabled: bool = True
    directory: str = "data/logs"
    max_bytes: int = 10485760  # 10MB
    backup_count: int = 5


class ConsoleHandlerConfig(BaseModel):
    """Console handler logging configuration."""
    enabled: bool = True


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = Field(pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$", default="INFO")
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    file_handler: FileHandlerConfig = Field(default_factory=FileHandlerConfig)
    console_handler: ConsoleHandlerConfig = Field(default_factory=ConsoleHandlerConfig)


class RecipeDBConfig(BaseSettings):
    """Main RecipeDB configuration."""
    database: DatabaseConfig
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    backup: BackupConfig = Field(default_factory=BackupConfig)
    admin: AdminConfig = Field(default_factory=AdminConfig)
    notifications: NotificationsConfig = Field(default_factory=NotificationsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore",
    }

    @classmethod
    def from_yaml(cls, config_path: Union[str, Path]) -> "RecipeDBConfig":
        """Load configuration from YAML file with environment variable substitution."""
        config_path = Path(config_path)
        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(config_path, 'r', encoding='utf-8') as f:
            config_data = yaml.safe_load(f) or {}

        # Substitute environment variables
        config_data = cls._substitute_env_vars(config_data)

        return cls(**config_data)

    @staticmethod
    def _substitute_env_vars(data):
        """Recursively substitute ``${VAR}`` and ``${VAR:-default}`` values."""
        if isinstance(data, dict):
            return {key: RecipeDBConfig._substitute_env_vars(value) for key, value in data.items()}
        elif isinstance(data, list):
            return [RecipeDBConfig._substitute_env_vars(item) for item in data]
        elif isinstance(data, str):
            match = _ENV_PATTERN.match(data)
            if not match:
                return data
            env_var, default = match.groups()
            value = os.getenv(env_var)
            if value is not None:
                return value
            # Return original if env var not found and no default given
            return default if default is not None else data
        else:
            return data

    def get_database_url(self) -> str:
        """Get the database URL based on configuration."""
        if self.database.type == "sqlite":
            return f"sqlite:///{self.database.sqlite.path}"
        elif self.database.type == "postgresql":
            pg_config = self.database.postgresql
            return (
                f"postgresql+psycopg2://{pg_config.username}:{pg_config.password}"
                f"@{pg_config.host}:{pg_config.port}/{pg_config.database}"
            )
        else:
            raise ValueError(f"Unsupported database type: {self.database.type}")

    def get_database_name(self) -> str:
        """Name of the monitored database, used in reports and alert emails."""
        if self.database.type == "postgresql":
            return self.database.postgresql.database
        return Path(self.database.sqlite.path).stem

    def get_database_host(self) -> str:
        if self.database.type == "postgresql":
            return self.database.postgresql.host
        return "localhost"

    @property
    def is_production(self) -> bool:
        return self.admin.environment == "production"

    def ensure_directories(self) -> None:
        """Ensure all required directories exist."""
        directories = [
            self.monitoring.data_dir,
            self.monitoring.reports_dir,
            self.backup.directory,
        ]
        if self.logging.file_handler.enabled:
            directories.append(self.logging.file_handler.directory)
        if self.database.type == "sqlite":
            directories.append(str(Path(self.database.sqlite.path).parent))

        for directory in directories:
            Path(directory).mkdir(parents=True, exist_ok=True)


# Global configuration instance
_config: Optional[RecipeDBConfig] = None


def get_config() -> RecipeDBConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        raise RuntimeError("Configuration not loaded. Call load_config() first.")
    return _config


def load_config(config_path: Union[str, Path] = "config.yaml") -> RecipeDBConfig:
    """Load and set the global configuration."""
    global _config
    _config = RecipeDBConfig.from_yaml(config_path)
    return _config


def reload_config(config_path: Union[str, Path] = "config.yaml") -> RecipeDBConfig:
    """Reload the global configuration."""
    return load_config(config_path)
