# billkit/core/config.py
import json
import logging
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..schemas.billing import BillingInterval


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_prefix="BILLKIT_", extra="ignore")

    # API Settings
    API_PREFIX: str = "/billing"
    PROJECT_NAME: str = "billkit"
    VERSION: str = "0.1.0"

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./billkit.db"

    # Redis (optional, enables cross-process customer locks)
    REDIS_URL: Optional[str] = None

    # Payment
    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""

    # Error tracking
    SENTRY_DSN: str = ""

    # Billing defaults
    PLANS_FILE: Optional[str] = None
    DEFAULT_CURRENCY: str = "usd"
    RENEWAL_BATCH_LIMIT: Optional[int] = None
    RENEWAL_SCHEDULE_SECONDS: int = 3600
    TRIAL_END_SCHEDULE_SECONDS: int = 3600
    LOCK_TIMEOUT_SECONDS: float = 30.0

    # Simulated clock kept in the database; development and demos only
    TIME_TRAVEL: bool = False

    # Environment
    ENVIRONMENT: str = "development"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"


settings = Settings()


def configure_logging(level: Union[str, int, None] = None) -> None:
    """Attach a stream handler to the root logger for hosts and workers"""
    logging.basicConfig(
        level=level or settings.LOG_LEVEL,
        stream=sys.stdout,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


class PriceConfig(BaseModel):
    amount: int = Field(..., ge=0, description="Amount in minor currency units")
    currency: Optional[str] = None
    interval: BillingInterval = BillingInterval.MONTHLY
    trial_days: Optional[int] = Field(None, ge=0)


class PlanConfig(BaseModel):
    code: str = Field(..., min_length=1)
    name: str
    description: Optional[str] = None
    is_public: bool = True
    features: List[str] = Field(default_factory=list)
    prices: List[PriceConfig] = Field(default_factory=list)


class FeatureConfig(BaseModel):
    code: str = Field(..., min_length=1)
    name: str
    type: str = "boolean"


# Override signature: (ctx, params, default_behavior) -> result
BehaviorOverride = Callable[[Any, Any, Callable[[], Awaitable[Any]]], Awaitable[Any]]


class BillingBehaviors(BaseModel):
    on_refund: Optional[BehaviorOverride] = None
    on_payment_failed: Optional[BehaviorOverride] = None
    on_subscription_cancel: Optional[BehaviorOverride] = None
    on_trial_end: Optional[BehaviorOverride] = None
    on_downgrade: Optional[BehaviorOverride] = None


class BillingOptions(BaseModel):
    plans: List[PlanConfig] = Field(default_factory=list)
    features: List[FeatureConfig] = Field(default_factory=list)
    behaviors: BillingBehaviors = Field(default_factory=BillingBehaviors)
    default_currency: str = Field(default_factory=lambda: settings.DEFAULT_CURRENCY)

    @field_validator("plans")
    @classmethod
    def unique_plan_codes(cls, plans: List[PlanConfig]) -> List[PlanConfig]:
        seen = set()
        for plan in plans:
            if plan.code in seen:
                raise ValueError(f"Duplicate plan code: {plan.code}")
            seen.add(plan.code)
        return plans


def load_plans(path: Union[str, Path]) -> List[PlanConfig]:
    """Load the static plan catalogue from a JSON file"""
    with open(path, "r", encoding="utf-8") as fh:
        data: Dict[str, Any] = json.load(fh)

    raw_plans = data["plans"] if isinstance(data, dict) else data
    return [PlanConfig.model_validate(item) for item in raw_plans]
