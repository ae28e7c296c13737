"""
Client network metadata extracted from request headers
"""

from typing import Mapping, Optional

from pydantic import BaseModel

from .validators import sanitize_log_value

UNKNOWN = "unknown"
MAX_USER_AGENT_LENGTH = 500

_LOOPBACK = {"::1", "127.0.0.1"}


class ClientInfo(BaseModel):
    """Network metadata recorded with every access event"""
    ip: str = UNKNOWN
    user_agent: str = UNKNOWN


def extract_client_ip(headers: Mapping[str, str], fallback: Optional[str] = None) -> str:
    """
    Best-effort client IP from proxy headers

    Checks x-forwarded-for (first hop), x-real-ip, cf-connecting-ip and
    true-client-ip in that order. Loopback addresses from the first two are
    skipped.
    """
    lowered = {key.lower(): value for key, value in headers.items()}

    forwarded_for = lowered.get("x-forwarded-for")
    if forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        if first and first not in _LOOPBACK:
            return first

    real_ip = (lowered.get("x-real-ip") or "").strip()
    if real_ip and real_ip not in _LOOPBACK:
        return real_ip

    for header in ("cf-connecting-ip", "true-client-ip"):
        value = (lowered.get(header) or "").strip()
        if value:
            return value

    return fallback or UNKNOWN


def extract_user_agent(headers: Mapping[str, str]) -> str:
    """User-Agent header, truncated to 500 characters"""
    lowered = {key.lower(): value for key, value in headers.items()}
    user_agent = (lowered.get("user-agent") or "").strip()
    if not user_agent:
        return UNKNOWN

    if len(user_agent) > MAX_USER_AGENT_LENGTH:
        return sanitize_log_value(user_agent, MAX_USER_AGENT_LENGTH) + "..."
    return sanitize_log_value(user_agent, MAX_USER_AGENT_LENGTH)


def client_info_from_headers(headers: Mapping[str, str], fallback_ip: Optional[str] = None) -> ClientInfo:
    return ClientInfo(
        ip=extract_client_ip(headers, fallback_ip),
        user_agent=extract_user_agent(headers),
    )
