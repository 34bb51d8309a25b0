"""
OMPay gateway settings using pydantic-settings v2 with nested env keys.

Every key can be supplied as ``OMPAY__<FIELD>`` or, for nested groups,
``OMPAY__TIMEOUTS__READ`` and so on.
"""
from __future__ import annotations

import base64
from typing import Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


SANDBOX_API_BASE_URL = "https://api.sandbox.ompay.com/v1/merchants"
LIVE_API_BASE_URL = "https://api.ompay.com/v1/merchants"


class GatewayTimeouts(BaseModel):
    connect: float = 10.0
    read: float = 30.0
    write: float = 30.0
    pool: float = 10.0


class GatewayRetry(BaseModel):
    max: int = 2
    base_backoff: float = 0.2


class WebhookSettings(BaseModel):
    signing_secret: Optional[str] = None
    ip_allowlist: list[str] | None = None  # Optional IPs allowed to post webhooks


class HostPlatformSettings(BaseModel):
    base_url: Optional[str] = None
    api_key: Optional[str] = None
    api_secret: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    timeout: float = 15.0


class OmPaySettings(BaseSettings):
    merchant_id: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    test_mode: bool = True
    api_base_url: Optional[str] = None
    # Public URL of this service; the hosted form posts nonces here
    host_base_url: str = "http://localhost:8000"

    timeouts: GatewayTimeouts = Field(default_factory=GatewayTimeouts)
    retry: GatewayRetry = Field(default_factory=GatewayRetry)
    webhook: WebhookSettings = Field(default_factory=WebhookSettings)
    host: HostPlatformSettings = Field(default_factory=HostPlatformSettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="OMPAY__",
        case_sensitive=False,
        extra="ignore",
        env_nested_delimiter="__",
    )

    @property
    def resolved_api_base_url(self) -> str:
        if self.api_base_url:
            return self.api_base_url.rstrip("/")
        return SANDBOX_API_BASE_URL if self.test_mode else LIVE_API_BASE_URL

    @property
    def api_base_url_with_merchant(self) -> str:
        return f"{self.resolved_api_base_url}/{self.merchant_id or ''}"

    @property
    def basic_auth_header(self) -> str:
        raw = f"{self.client_id or ''}:{self.client_secret or ''}".encode("utf-8")
        return "Basic " + base64.b64encode(raw).decode("ascii")

    @property
    def form_action_url(self) -> str:
        return f"{self.host_base_url.rstrip('/')}/api/v1/ompay/process-nonce"

    def healthcheck(self) -> dict:
        """Report which required gateway keys are missing; never exposes values."""
        missing = [
            name
            for name in ("merchant_id", "client_id", "client_secret")
            if not getattr(self, name)
        ]
        return {
            "healthy": not missing,
            "missing": missing,
            "test_mode": self.test_mode,
            "api_base_url": self.resolved_api_base_url,
            "host_platform_configured": bool(self.host.base_url),
        }


ompay_settings = OmPaySettings()
