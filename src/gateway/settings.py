import logging
import os
from datetime import timedelta
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field

from state.limiter import DEFAULT_DAILY_LIMIT, DEFAULT_MONTHLY_LIMIT, KIND_ANALYSIS, KIND_PARSE, KindLimits
from writer.batch import DEFAULT_PACING
from writer.retry import RetryPolicy

logger = logging.getLogger(__name__)

DEFAULT_MONGODB_URI = "mongodb://localhost:27017/trade_journal"
DEFAULT_LIMITS_PATH = os.path.join(
    os.path.dirname(os.path.dirname(os.path.dirname(__file__))), "config", "limits.yaml"
)


class CeilingConfig(BaseModel):
    daily: Optional[int] = Field(default=DEFAULT_DAILY_LIMIT, ge=0)
    monthly: Optional[int] = Field(default=DEFAULT_MONTHLY_LIMIT, ge=0)


class RetryConfig(BaseModel):
    max_retries: int = Field(default=3, ge=0)
    base_delays: List[float] = Field(default_factory=lambda: [0.5, 1.0, 2.0])
    jitter: List[float] = Field(default_factory=lambda: [0.2, 0.4, 0.8])
    pacing_seconds: float = Field(default=DEFAULT_PACING, ge=0)


class Settings(BaseModel):
    mongodb_uri: str = DEFAULT_MONGODB_URI
    anthropic_api_key: str = ""
    claude_model: Optional[str] = None
    notion_client_id: str = ""
    notion_client_secret: str = ""
    notion_redirect_uri: str = ""
    signing_secret: Optional[str] = None
    timestamp_tolerance_seconds: int = Field(default=300, gt=0)
    log_level: str = "INFO"
    limits: Dict[str, CeilingConfig] = Field(
        default_factory=lambda: {KIND_ANALYSIS: CeilingConfig(), KIND_PARSE: CeilingConfig()}
    )
    retry: RetryConfig = Field(default_factory=RetryConfig)

    @classmethod
    def from_env(cls, limits_path: Optional[str] = None) -> "Settings":
        file_cfg = _load_yaml(limits_path or os.getenv("LIMITS_PATH", DEFAULT_LIMITS_PATH))

        limits: Dict[str, Dict[str, Any]] = {KIND_ANALYSIS: {}, KIND_PARSE: {}}
        for kind, cfg in (file_cfg.get("limits") or {}).items():
            if isinstance(cfg, dict):
                limits[kind] = dict(cfg)
        for kind in list(limits):
            for scope in ("daily", "monthly"):
                env_value = os.getenv(f"{scope.upper()}_{kind.upper()}_LIMIT")
                if env_value:
                    limits[kind][scope] = int(env_value)

        retry: Dict[str, Any] = dict(file_cfg.get("retry") or {})
        if os.getenv("NOTION_MAX_RETRIES"):
            retry["max_retries"] = int(os.environ["NOTION_MAX_RETRIES"])
        if os.getenv("NOTION_PACING_SECONDS"):
            retry["pacing_seconds"] = float(os.environ["NOTION_PACING_SECONDS"])

        return cls(
            mongodb_uri=os.getenv("MONGODB_URI", DEFAULT_MONGODB_URI),
            anthropic_api_key=os.getenv("ANTHROPIC_API_KEY", "").strip(),
            claude_model=os.getenv("CLAUDE_MODEL") or None,
            notion_client_id=os.getenv("NOTION_CLIENT_ID", ""),
            notion_client_secret=os.getenv("NOTION_CLIENT_SECRET", ""),
            notion_redirect_uri=os.getenv("NOTION_REDIRECT_URI", ""),
            signing_secret=os.getenv("SIGNING_SECRET") or None,
            timestamp_tolerance_seconds=int(os.getenv("TIMESTAMP_TOLERANCE_SECONDS", "300")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            limits={k: CeilingConfig(**v) for k, v in limits.items()},
            retry=RetryConfig(**retry),
        )

    @property
    def tolerance(self) -> timedelta:
        return timedelta(seconds=self.timestamp_tolerance_seconds)

    @property
    def state_secret(self) -> str:
        # OAuth state tokens need a key even when request signing is off
        return self.signing_secret or self.notion_client_secret

    def kind_limits(self) -> Dict[str, KindLimits]:
        return {k: KindLimits(daily=c.daily, monthly=c.monthly) for k, c in self.limits.items()}

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.retry.max_retries,
            base_delays=tuple(self.retry.base_delays),
            jitter=tuple(self.retry.jitter),
        )


def _load_yaml(path: str) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.warning("Limits file not found at %s; using defaults", path)
        return {}
    except Exception as e:
        logger.warning("Failed to load limits file: %s", e)
        return {}
    if not isinstance(data, dict):
        logger.warning("Limits file %s is not a mapping; using defaults", path)
        return {}
    return data


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
