"""
Relay Configuration

Environment-based configuration for the UDP relay.

Environment variables:
- PORT: HTTP/WebSocket listening port (default: 8080)
- RELAY_HOST: Listening interface (default: 0.0.0.0)
- RELAY_IDLE_TIMEOUT: Seconds without control messages before a session is closed (default: 30)
- RELAY_DEPLOYMENT_MODE: "restricted" or "unrestricted"; when unset the mode is
  derived from hosting signals (RAILWAY_ENVIRONMENT, VERCEL, HEROKU_APP_NAME,
  NODE_ENV/ENVIRONMENT=production)
- RELAY_PUBLIC_HOSTNAME: Advertised public hostname (falls back to
  RAILWAY_PUBLIC_DOMAIN, then RAILWAY_STATIC_URL)
- RELAY_PUBLIC_IP: Fixed public IPv4 address reported to clients (skips lookup)
- RELAY_IP_LOOKUP_URLS: Comma-separated public IP lookup services
  (empty string disables external lookup)
- RELAY_IP_LOOKUP_TIMEOUT: Per-service lookup timeout in seconds (default: 3)
- RELAY_MAX_CONNECTIONS: Max concurrent control channels (default: 100)

Core modules never read the environment; they receive a RelayConfig.
"""

from __future__ import annotations

import os
from enum import Enum
from typing import Mapping

from pydantic import BaseModel, Field

from udprelay import __version__


class DeploymentMode(str, Enum):
    """How freely the relay may choose UDP bind addresses."""
    UNRESTRICTED = "unrestricted"  # Direct network access, honor client requests
    RESTRICTED = "restricted"      # NAT/PaaS networking, wildcard + ephemeral only


DEFAULT_LOOKUP_URLS = (
    "https://api.ipify.org",
    "https://icanhazip.com",
    "https://ipinfo.io/ip",
    "https://checkip.amazonaws.com",
)

# Hosting platforms that put the relay behind outbound-only networking
_RESTRICTED_SIGNALS = ("RAILWAY_ENVIRONMENT", "VERCEL", "HEROKU_APP_NAME")


def detect_environment_name(environ: Mapping[str, str]) -> str:
    return environ.get("NODE_ENV") or environ.get("ENVIRONMENT") or "development"


def detect_deployment_mode(environ: Mapping[str, str]) -> DeploymentMode:
    """
    Derive the deployment mode from the environment.

    An explicit RELAY_DEPLOYMENT_MODE wins over platform detection.
    """
    explicit = environ.get("RELAY_DEPLOYMENT_MODE", "").strip().lower()
    if explicit:
        return DeploymentMode(explicit)
    
    if any(environ.get(name) for name in _RESTRICTED_SIGNALS):
        return DeploymentMode.RESTRICTED
    if detect_environment_name(environ).lower() == "production":
        return DeploymentMode.RESTRICTED
    return DeploymentMode.UNRESTRICTED


def detect_public_hostname(environ: Mapping[str, str]) -> str | None:
    """Find an externally advertised hostname, if the platform provides one."""
    for name in ("RELAY_PUBLIC_HOSTNAME", "RAILWAY_PUBLIC_DOMAIN"):
        value = environ.get(name, "").strip()
        if value:
            return value
    
    static_url = environ.get("RAILWAY_STATIC_URL", "").strip()
    if static_url:
        for scheme in ("https://", "http://"):
            if static_url.startswith(scheme):
                static_url = static_url[len(scheme):]
        return static_url.rstrip("/") or None
    return None


def _parse_lookup_urls(environ: Mapping[str, str]) -> list[str]:
    raw = environ.get("RELAY_IP_LOOKUP_URLS")
    if raw is None:
        return list(DEFAULT_LOOKUP_URLS)
    return [url.strip() for url in raw.split(",") if url.strip()]


class RelayConfig(BaseModel):
    """
    Runtime settings for one relay process.
    
    Built once at startup (usually via from_env) and injected into the
    session manager, address resolver and HTTP application.
    """
    
    # === Listener ===
    host: str = Field(
        default="0.0.0.0",
        description="Interface the HTTP/WebSocket server listens on"
    )
    port: int = Field(
        default=8080,
        ge=0,
        le=65535,
        description="HTTP/WebSocket listening port"
    )
    
    # === Sessions ===
    idle_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Close sessions that sent no control message for this long"
    )
    sweep_interval_seconds: float | None = Field(
        default=None,
        gt=0,
        description="How often idle sessions are checked (default: timeout / 4)"
    )
    max_connections: int = Field(
        default=100,
        ge=1,
        description="Max concurrent control channels"
    )
    outbound_queue_size: int = Field(
        default=200,
        ge=1,
        description="Max queued outbound messages per control channel"
    )
    
    # === UDP binding ===
    deployment_mode: DeploymentMode = Field(
        default=DeploymentMode.UNRESTRICTED,
        description="Binding policy: honor client requests or force wildcard + ephemeral"
    )
    default_client_target_port: int = Field(
        default=8081,
        ge=1,
        le=65535,
        description="Target port for udp_send_to_client when the client requested none"
    )
    
    # === Visible address resolution ===
    public_ip: str | None = Field(
        default=None,
        description="Fixed public IPv4 address; skips external lookup when set"
    )
    public_hostname: str | None = Field(
        default=None,
        description="Externally advertised hostname used when IP lookup fails"
    )
    lookup_urls: list[str] = Field(
        default_factory=lambda: list(DEFAULT_LOOKUP_URLS),
        description="Public IP lookup services, tried in order"
    )
    lookup_timeout_seconds: float = Field(
        default=3.0,
        gt=0,
        description="Timeout for each lookup service"
    )
    
    # === Reporting ===
    environment: str = Field(
        default="development",
        description="Deployment label reported by /status"
    )
    version: str = Field(
        default=__version__,
        description="Relay version advertised to clients"
    )
    
    @property
    def effective_sweep_interval(self) -> float:
        if self.sweep_interval_seconds is not None:
            return self.sweep_interval_seconds
        return max(self.idle_timeout_seconds / 4, 0.5)
    
    @property
    def server_info(self) -> dict[str, object]:
        """Payload of the welcome message's serverInfo field."""
        return {
            "version": self.version,
            "maxConnections": self.max_connections,
        }
    
    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "RelayConfig":
        """Build a config from environment variables."""
        env = os.environ if environ is None else environ
        
        settings: dict[str, object] = {
            "deployment_mode": detect_deployment_mode(env),
            "public_hostname": detect_public_hostname(env),
            "lookup_urls": _parse_lookup_urls(env),
            "environment": detect_environment_name(env),
        }
        if env.get("PORT"):
            settings["port"] = int(env["PORT"])
        if env.get("RELAY_PUBLIC_IP"):
            settings["public_ip"] = env["RELAY_PUBLIC_IP"].strip()
        if env.get("RELAY_HOST"):
            settings["host"] = env["RELAY_HOST"]
        if env.get("RELAY_IDLE_TIMEOUT"):
            settings["idle_timeout_seconds"] = float(env["RELAY_IDLE_TIMEOUT"])
        if env.get("RELAY_IP_LOOKUP_TIMEOUT"):
            settings["lookup_timeout_seconds"] = float(env["RELAY_IP_LOOKUP_TIMEOUT"])
        if env.get("RELAY_MAX_CONNECTIONS"):
            settings["max_connections"] = int(env["RELAY_MAX_CONNECTIONS"])
        
        return cls(**settings)
