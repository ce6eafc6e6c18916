"""
Lead Sentinel — Configuration
All secrets loaded from environment variables.
Copy .env.example → .env and fill in your credentials.
"""
import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple

from dotenv import load_dotenv

# Load .env before any os.getenv() calls in dataclass defaults
_ENV_PATH = Path(__file__).parent / ".env"
load_dotenv(_ENV_PATH, override=True)


def _csv_env(name: str, default: str) -> List[str]:
    return [v.strip() for v in os.getenv(name, default).split(",") if v.strip()]


@dataclass
class GmailConfig:
    # Service account key: inline JSON (Render secret) or a file path
    service_account_json: str = os.getenv("GOOGLE_SERVICE_ACCOUNT_KEY", "")
    service_account_path: str = os.getenv(
        "GOOGLE_SERVICE_ACCOUNT_FILE",
        str(Path(__file__).parent / "service_account.json"),
    )
    # The one mailbox we impersonate (domain-wide delegation)
    mailbox: str = os.getenv("LEADS_MAILBOX", "verkoop@auto-city.nl")
    token_uri: str = "https://oauth2.googleapis.com/token"
    # Modify is needed to clear the UNREAD label
    scopes: List[str] = field(default_factory=lambda: [
        "https://www.googleapis.com/auth/gmail.readonly",
        "https://www.googleapis.com/auth/gmail.modify",
    ])
    api_base: str = "https://gmail.googleapis.com/gmail/v1/users/me"
    request_timeout: float = 30.0
    # Only these senders are searched (substring of the From address)
    allowed_sender_domains: List[str] = field(default_factory=lambda: _csv_env(
        "LEADS_SENDER_DOMAINS",
        "autotrack.nl,autoscout24.nl,autoscout24.com,marktplaats.nl,"
        "2dehands.be,findio.nl,morgeninternet.nl",
    ))
    # Known non-lead notification templates, excluded at search time
    excluded_subjects: List[str] = field(default_factory=lambda: [
        "Je advertentie is bekeken",
        "Dagelijks overzicht",
        "Wekelijks overzicht",
        "Factuur",
        "Nieuwsbrief",
    ])
    search_window: str = os.getenv("LEADS_SEARCH_WINDOW", "newer_than:7d")
    # Small on purpose: bounds quota usage and wall-clock per run
    batch_size: int = int(os.getenv("LEADS_BATCH_SIZE", "10"))
    # Partner domains that get a dedicated parser
    financing_partner_domain: str = os.getenv("LEADS_FINANCING_DOMAIN", "findio.nl")
    website_form_domain: str = os.getenv("LEADS_WEBSITE_FORM_DOMAIN", "morgeninternet.nl")

    def load_service_account(self) -> Optional[dict]:
        """Return the service account key as a dict, or None if not configured."""
        if self.service_account_json:
            return json.loads(self.service_account_json)
        path = Path(self.service_account_path)
        if path.exists():
            with open(path, "r") as f:
                return json.load(f)
        return None


@dataclass
class RetryConfig:
    # Token exchange: any failure is retried
    token_max_attempts: int = 3
    token_backoff: Tuple[float, ...] = (1.0, 2.0, 4.0)
    # Gmail API: rate limits and network errors only
    http_max_attempts: int = 5
    http_backoff: Tuple[float, ...] = (2.0, 5.0, 15.0, 30.0, 60.0)
    retry_after_cap: float = 60.0


@dataclass
class BatchConfig:
    # Wall-clock budget per invocation (checked before each message)
    time_budget_seconds: float = float(os.getenv("LEADS_TIME_BUDGET", "50"))
    max_messages: int = int(os.getenv("LEADS_MAX_MESSAGES", "10"))
    # Fixed pause between message fetches, regardless of rate-limit signals
    fetch_delay_seconds: float = float(os.getenv("LEADS_FETCH_DELAY", "0.5"))
    max_error_details: int = 20


@dataclass
class PostgresConfig:
    host: str = os.getenv("POSTGRES_HOST", "localhost")
    port: int = int(os.getenv("POSTGRES_PORT", "5432"))
    database: str = os.getenv("POSTGRES_DB", "sentinel")
    user: str = os.getenv("POSTGRES_USER", "sentinel")
    password: str = os.getenv("POSTGRES_PASSWORD", "")
    sslmode: str = os.getenv("POSTGRES_SSLMODE", "prefer")
    connect_timeout: int = 30

    @property
    def connection_string(self) -> str:
        return f"postgresql://{self.user}:{self.password}@{self.host}:{self.port}/{self.database}?sslmode={self.sslmode}"

    @property
    def dsn_params(self) -> dict:
        """Return connection params dict for psycopg2."""
        params = {
            "host": self.host,
            "port": self.port,
            "dbname": self.database,
            "user": self.user,
            "password": self.password,
            "connect_timeout": self.connect_timeout,
        }
        if self.sslmode and self.sslmode != "disable":
            params["sslmode"] = self.sslmode
        return params


@dataclass
class TriggerConfig:
    # Lead mailbox polling interval
    lead_check_interval: int = int(os.getenv("LEADS_CHECK_INTERVAL", "300"))  # 5 minutes
    scheduler_enabled: bool = os.getenv("LEADS_SCHEDULER_ENABLED", "true").lower() == "true"


@dataclass
class OutputConfig:
    api_key: str = os.getenv("SENTINEL_API_KEY", "")
    allowed_origins: List[str] = field(default_factory=lambda: _csv_env(
        "ALLOWED_ORIGINS", "http://localhost:8080",
    ))


@dataclass
class SentinelConfig:
    gmail: GmailConfig = field(default_factory=GmailConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    batch: BatchConfig = field(default_factory=BatchConfig)
    postgres: PostgresConfig = field(default_factory=PostgresConfig)
    triggers: TriggerConfig = field(default_factory=TriggerConfig)
    outputs: OutputConfig = field(default_factory=OutputConfig)
    debug: bool = os.getenv("SENTINEL_DEBUG", "false").lower() == "true"


# Global config instance
config = SentinelConfig()
