"""
Configuration settings for the P&L Matrix service.

Every setting comes from the environment so the same build runs against
staging and production stores without code changes.

Key Design Principle: connection details and file locations are never hardcoded.
"""
import os
import re
from dataclasses import dataclass, field
from typing import Optional
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent.parent

# project.dataset.table, each part a plain identifier (dashes allowed in project ids)
_TABLE_PATTERN = re.compile(r"^[A-Za-z0-9_\-]+(\.[A-Za-z0-9_\-]+){1,2}$")


@dataclass
class WarehouseConfig:
    """Analytical warehouse (BigQuery) configuration."""
    project_id: str = field(default_factory=lambda: os.getenv("BQ_PROJECT_ID", ""))
    keyfile: str = field(default_factory=lambda: os.getenv("BQ_KEYFILE", ""))
    table: str = field(default_factory=lambda: os.getenv("BQ_TABLE", ""))
    location: str = field(default_factory=lambda: os.getenv("BQ_LOCATION", ""))

    @property
    def qualified_table(self) -> str:
        """Backtick-quoted table reference safe to interpolate into SQL."""
        if not self.table:
            raise ValueError("Missing warehouse table: BQ_TABLE")
        if not _TABLE_PATTERN.match(self.table):
            raise ValueError(f"Invalid warehouse table name: {self.table!r}")
        return f"`{self.table}`"


@dataclass
class LedgerConfig:
    """Relational ledger (MySQL) configuration."""
    url: str = field(default_factory=lambda: os.getenv("MYSQL_URL", ""))
    host: str = field(default_factory=lambda: os.getenv("MYSQL_HOST", ""))
    port: int = field(default_factory=lambda: int(os.getenv("MYSQL_PORT", "3306")))
    user: str = field(default_factory=lambda: os.getenv("MYSQL_USER", ""))
    password: str = field(default_factory=lambda: os.getenv("MYSQL_PASSWORD", ""))
    database: str = field(default_factory=lambda: os.getenv("MYSQL_DATABASE", ""))

    # Pool tuning
    pool_size: int = field(default_factory=lambda: int(os.getenv("MYSQL_POOL_SIZE", "5")))
    max_overflow: int = field(default_factory=lambda: int(os.getenv("MYSQL_MAX_OVERFLOW", "10")))
    pool_recycle: int = field(default_factory=lambda: int(os.getenv("MYSQL_POOL_RECYCLE", "1800")))

    @property
    def is_configured(self) -> bool:
        return bool(self.url or (self.host and self.database))


@dataclass
class CorrectionsConfig:
    """Manual correction overlay file."""
    path: Path = field(
        default_factory=lambda: Path(
            os.getenv("PNL_CORRECTIONS_FILE", str(PROJECT_ROOT / "config" / "corrections.yaml"))
        )
    )


@dataclass
class ExportConfig:
    """Spreadsheet export settings."""
    output_dir: Path = field(default_factory=lambda: Path(os.getenv("PNL_EXPORT_DIR", ".outputs")))
    sheet_name: str = "PnL"


@dataclass
class ObservabilityConfig:
    """Trace export settings. An empty directory disables JSON export."""
    trace_export_dir: str = field(default_factory=lambda: os.getenv("TRACE_EXPORT_DIR", ""))

    @property
    def export_path(self) -> Optional[Path]:
        return Path(self.trace_export_dir) if self.trace_export_dir else None


@dataclass
class ApiConfig:
    """HTTP server binding."""
    host: str = field(default_factory=lambda: os.getenv("PNL_API_HOST", "127.0.0.1"))
    port: int = field(default_factory=lambda: int(os.getenv("PNL_API_PORT", "8000")))


@dataclass
class AppConfig:
    """Main application configuration."""
    warehouse: WarehouseConfig = field(default_factory=WarehouseConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    corrections: CorrectionsConfig = field(default_factory=CorrectionsConfig)
    export: ExportConfig = field(default_factory=ExportConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)
    api: ApiConfig = field(default_factory=ApiConfig)

    # Logging
    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))


def get_config() -> AppConfig:
    """Factory function to get application configuration."""
    return AppConfig()
