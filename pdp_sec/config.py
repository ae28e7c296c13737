"""
Security configuration management for the PDP engine
Signing secret, token lifetimes, DP defaults, rate-limit rules and storage
"""

from typing import Dict, List, Tuple
from pydantic_settings import BaseSettings
from pydantic import BaseModel, Field


class RateLimitRule(BaseModel):
    """Fixed-window ceiling for one endpoint"""
    requests: int = Field(..., gt=0)
    window_ms: int = Field(..., gt=0)


def _default_rate_limits() -> Dict[str, RateLimitRule]:
    return {
        "/api/pdp/query": RateLimitRule(requests=100, window_ms=60_000),
        "default": RateLimitRule(requests=1000, window_ms=60_000),
    }


def _default_category_bounds() -> Dict[str, Tuple[float, float]]:
    return {
        "health": (0.0, 20000.0),       # step counts, heart rate, temperature
        "financial": (0.0, 10000.0),    # transaction amounts
        "location": (-180.0, 180.0),    # latitude/longitude
    }


class SecurityConfig(BaseSettings):
    """Security and privacy configuration settings"""

    # Token settings
    jwt_secret: str = Field(default="dev-insecure-signing-secret-change-me-in-production", description="HMAC signing secret")
    jwt_algorithm: str = Field(default="HS256")
    token_ttl_seconds: int = Field(default=3600, gt=0)
    token_max_ttl_seconds: int = Field(default=7 * 24 * 3600, gt=0)

    # Storage
    database_url: str = Field(default="sqlite:///pdp.db")

    # Differential Privacy settings
    dp_default_epsilon: float = Field(default=1.0, gt=0)
    dp_max_epsilon: float = Field(default=10.0, gt=0)
    dp_delta: float = Field(default=1e-5, gt=0, lt=1)
    category_bounds: Dict[str, Tuple[float, float]] = Field(default_factory=_default_category_bounds)

    # Query settings
    query_endpoint: str = Field(default="/api/pdp/query")
    required_query_scopes: List[str] = Field(default_factory=lambda: ["read", "aggregate"])

    # Rate limiting
    rate_limits: Dict[str, RateLimitRule] = Field(default_factory=_default_rate_limits)
    rate_limit_retention_hours: int = Field(default=24, gt=0)

    # Environment-specific overrides
    debug_mode: bool = Field(default=False)
    log_level: str = Field(default="INFO")

    model_config = {"env_prefix": "PDP_SEC_", "case_sensitive": False}

    def rate_limit_rule(self, endpoint: str) -> RateLimitRule:
        """Rule for an endpoint, falling back to the default entry"""
        rule = self.rate_limits.get(endpoint) or self.rate_limits.get("default")
        if rule is None:
            return _default_rate_limits()["default"]
        return rule


# Global configuration instance
security_config = SecurityConfig()


def get_security_config() -> SecurityConfig:
    """Get the global security configuration instance"""
    return security_config
