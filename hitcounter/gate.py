# hitcounter/gate.py
"""Who is asking, and whether their hit should count at all."""
from __future__ import annotations

import ipaddress
from dataclasses import dataclass
from typing import Mapping, Optional

from user_agents import parse as parse_user_agent

UNKNOWN_IP_ADDRESS = "unknown"

# first valid public address wins, in this order
IP_HEADERS = (
    "Client-IP",
    "X-Forwarded-For",
    "X-Forwarded",
    "X-Cluster-Client-IP",
    "Forwarded-For",
    "Forwarded",
)


def _public_ip(value: str) -> Optional[str]:
    value = value.strip()
    if value.lower().startswith("for="):
        # RFC 7239 style: for="203.0.113.7:443"
        value = value[4:].strip('"')
        if value.startswith("[") and "]" in value:
            value = value[1:value.index("]")]
        elif value.count(":") == 1:
            value = value.split(":", 1)[0]
    try:
        ip = ipaddress.ip_address(value)
    except ValueError:
        return None
    if ip.is_private or ip.is_reserved or ip.is_loopback or ip.is_link_local or ip.is_unspecified:
        return None
    return str(ip)


def resolve_client_ip(headers: Mapping[str, str], remote_addr: Optional[str] = None) -> str:
    for name in IP_HEADERS:
        raw = headers.get(name)
        if not raw:
            continue
        for part in str(raw).replace(";", ",").split(","):
            ip = _public_ip(part)
            if ip:
                return ip
    if remote_addr:
        ip = _public_ip(remote_addr)
        if ip:
            return ip
    return UNKNOWN_IP_ADDRESS


def describe_agent(user_agent: str) -> dict:
    ua = parse_user_agent(user_agent or "")
    return {
        "is_crawler": bool(ua.is_bot),
        "device": (ua.device.family or "") if ua.device else "",
        "browser": (ua.browser.family or "") if ua.browser else "",
        "platform": (ua.os.family or "") if ua.os else "",
    }


@dataclass(frozen=True)
class RequestContext:
    ip_address: str = UNKNOWN_IP_ADDRESS
    user_agent: str = ""
    is_crawler: bool = False
    device: str = ""
    browser: str = ""
    platform: str = ""
    do_not_track: bool = False

    @classmethod
    def build(cls, ip_address: str, user_agent: str = "", do_not_track: bool = False) -> "RequestContext":
        return cls(
            ip_address=ip_address or UNKNOWN_IP_ADDRESS,
            user_agent=(user_agent or "")[:255],
            do_not_track=do_not_track,
            **describe_agent(user_agent),
        )

    @classmethod
    def from_request(cls, request) -> "RequestContext":
        """Snapshot of a Flask/Werkzeug request."""
        headers = request.headers
        return cls.build(
            ip_address=resolve_client_ip(headers, request.remote_addr),
            user_agent=headers.get("User-Agent", ""),
            do_not_track=(headers.get("DNT") or "").strip() == "1",
        )


def is_hit_allowed(ctx: RequestContext, test_mode: bool = False) -> bool:
    if test_mode:
        return True
    return (
        not ctx.is_crawler
        and ctx.ip_address != UNKNOWN_IP_ADDRESS
        and not ctx.do_not_track
    )
