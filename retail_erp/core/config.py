import json
from decimal import Decimal
from typing import List, Union
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Retail ERP Backend"
    env: str = "dev"

    # DATABASE
    database_url: str = "sqlite:///./retail_erp.db"
    db_pool_size: int = Field(default=10, ge=1, le=100)
    db_max_overflow: int = Field(default=20, ge=0, le=200)
    db_pool_timeout_seconds: int = Field(default=30, ge=1, le=300)
    db_pool_recycle_seconds: int = Field(default=1800, ge=30, le=86_400)
    api_timeout_hint_ms: int = Field(default=300000, ge=1000, le=1_800_000)

    # SALES
    default_currency: str = Field(default="PEN", min_length=3, max_length=3)
    igv_rate: Decimal = Field(default=Decimal("0.18"), ge=0, le=1)
    default_shipping_cost: Decimal = Field(default=Decimal("0.00"), ge=0)
    default_price_list_code: str = "retail"
    default_payment_method: str = "card"

    # INVENTORY
    low_stock_default_threshold: int = Field(default=5, ge=0)
    category_margin_cache_ttl_seconds: int = Field(default=300, ge=0)
    orders_pending_timeout_minutes: int = Field(default=60, ge=1)

    # CORS
    cors_origins: List[str] = Field(default_factory=lambda: ["http://localhost:3000"])
    cors_origin_regex: str | None = None

    @field_validator("cors_origins", mode="before")
    @classmethod
    def assemble_cors_origins(cls, v: Union[str, List[str]]) -> List[str]:
        if v is None:
            return []
        if isinstance(v, str):
            if not v.strip():
                return []
            if v.startswith("["):
                parsed = json.loads(v)
                if not isinstance(parsed, list):
                    raise ValueError("CORS_ORIGINS JSON value must be a list")
                return [str(i).strip() for i in parsed if str(i).strip()]
            return [i.strip() for i in v.split(",") if i.strip()]
        if isinstance(v, list):
            return [str(i).strip() for i in v if str(i).strip()]
        raise ValueError(v)

    @field_validator("default_currency", mode="before")
    @classmethod
    def normalize_currency(cls, value: str) -> str:
        return str(value).strip().upper()

    @model_validator(mode="after")
    def validate_production_safety(self) -> "Settings":
        env_value = self.env.lower().strip()
        if env_value not in {"prod", "production"}:
            return self

        if self.database_url.lower().startswith("sqlite"):
            raise ValueError("DATABASE_URL cannot point to SQLite in production")
        if "*" in self.cors_origins:
            raise ValueError("CORS_ORIGINS cannot contain '*' in production")
        if self.cors_origin_regex:
            raise ValueError("CORS_ORIGIN_REGEX cannot be set in production")

        return self

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        enable_decoding=False,
    )


settings = Settings()
