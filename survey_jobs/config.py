"""Configuration for the survey jobs platform."""

import os
from typing import Dict, List, Optional

DEFAULT_KAPSO_BASE_URL = "https://api.kapso.ai/meta/whatsapp"


def _int_env(name: str, default: int) -> int:
    value = os.getenv(name, str(default))
    try:
        return int(value)
    except ValueError as e:
        raise ValueError(f"Invalid integer in {name}: {value!r}") from e


def parse_api_keys(raw: str) -> Dict[str, str]:
    """Parse ``key1:tenant1,key2:tenant2`` into a key -> tenant map."""
    api_keys = {}
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        key, sep, tenant_id = entry.partition(":")
        if not sep or not key.strip() or not tenant_id.strip():
            raise ValueError(
                "Invalid entry in SURVEY_JOBS_API_KEYS, expected api_key:tenant_id"
            )
        api_keys[key.strip()] = tenant_id.strip()
    return api_keys


class SurveyJobsConfig:
    """Configuration object for survey jobs."""

    def __init__(
        self,
        db_dsn: str,
        webhook_secret: str,
        kapso_api_key: Optional[str] = None,
        kapso_base_url: str = DEFAULT_KAPSO_BASE_URL,
        kapso_timeout_seconds: int = 10,
        poll_interval_seconds: int = 5,
        default_max_attempts: int = 3,
        stale_job_timeout_seconds: int = 600,
        stale_job_check_interval_seconds: int = 60,
        rate_limit: int = 100,
        rate_limit_window_seconds: int = 60,
        fast_path_message_types: Optional[List[str]] = None,
        api_keys: Optional[Dict[str, str]] = None,
        host: str = "0.0.0.0",
        port: int = 8000,
        run_processor: bool = False,
    ):
        self.db_dsn = db_dsn
        self.webhook_secret = webhook_secret
        self.kapso_api_key = kapso_api_key
        self.kapso_base_url = kapso_base_url
        self.kapso_timeout_seconds = kapso_timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.default_max_attempts = default_max_attempts
        self.stale_job_timeout_seconds = stale_job_timeout_seconds
        self.stale_job_check_interval_seconds = stale_job_check_interval_seconds
        self.rate_limit = rate_limit
        self.rate_limit_window_seconds = rate_limit_window_seconds
        if fast_path_message_types is None:
            fast_path_message_types = ["flow_response"]
        self.fast_path_message_types = fast_path_message_types
        self.api_keys = api_keys or {}
        self.host = host
        self.port = port
        self.run_processor = run_processor

    @classmethod
    def from_env(cls) -> "SurveyJobsConfig":
        """Create config from environment variables."""
        db_dsn = os.getenv("SURVEY_JOBS_DB_DSN")
        if not db_dsn:
            raise ValueError("SURVEY_JOBS_DB_DSN environment variable is required")

        webhook_secret = os.getenv("SURVEY_JOBS_WEBHOOK_SECRET")
        if not webhook_secret:
            raise ValueError(
                "SURVEY_JOBS_WEBHOOK_SECRET environment variable is required"
            )

        fast_path_raw = os.getenv("SURVEY_JOBS_FAST_PATH_MESSAGE_TYPES", "flow_response")
        fast_path_message_types = [
            item.strip() for item in fast_path_raw.split(",") if item.strip()
        ]

        return cls(
            db_dsn=db_dsn,
            webhook_secret=webhook_secret,
            kapso_api_key=os.getenv("KAPSO_API_KEY"),
            kapso_base_url=os.getenv("KAPSO_BASE_URL", DEFAULT_KAPSO_BASE_URL),
            kapso_timeout_seconds=_int_env("KAPSO_TIMEOUT_SECONDS", 10),
            poll_interval_seconds=_int_env("SURVEY_JOBS_POLL_INTERVAL_SECONDS", 5),
            default_max_attempts=_int_env("SURVEY_JOBS_DEFAULT_MAX_ATTEMPTS", 3),
            stale_job_timeout_seconds=_int_env(
                "SURVEY_JOBS_STALE_JOB_TIMEOUT_SECONDS", 600
            ),
            stale_job_check_interval_seconds=_int_env(
                "SURVEY_JOBS_STALE_JOB_CHECK_INTERVAL_SECONDS", 60
            ),
            rate_limit=_int_env("API_RATE_LIMIT", 100),
            rate_limit_window_seconds=_int_env("API_RATE_LIMIT_WINDOW_SECONDS", 60),
            fast_path_message_types=fast_path_message_types,
            api_keys=parse_api_keys(os.getenv("SURVEY_JOBS_API_KEYS", "")),
            host=os.getenv("SURVEY_JOBS_HOST", "0.0.0.0"),
            port=_int_env("SURVEY_JOBS_PORT", 8000),
            run_processor=os.getenv("SURVEY_JOBS_RUN_PROCESSOR", "false").lower()
            in ("1", "true", "yes"),
        )
