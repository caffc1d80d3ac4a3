"""
Address Resolver

Two decisions live here:

1. Which local address/port a session's UDP socket binds to. In a restricted
   deployment (NAT, PaaS networking) arbitrary bind addresses cannot be relied
   upon, so the relay always binds the wildcard address with an OS-assigned
   port. Otherwise loopback and wildcard requests are honored exactly, and any
   other address (typically the client's own LAN IP, which this host cannot
   own) is replaced by the wildcard while keeping the requested port.

2. Which address to advertise to the client when the socket is bound to the
   wildcard. Strategies are tried in order until one produces an address:
   external lookup service, configured public hostname, the host the client
   used to reach the control channel, the first non-loopback local IPv4
   interface, and finally loopback. Every step is bounded and non-fatal.
"""

import asyncio
import ipaddress
import logging
import socket
from typing import Callable, NamedTuple

import psutil

from udprelay.config import DeploymentMode
from udprelay.errors import ResolutionError
from udprelay.resolver.ports import PublicAddressLookup

logger = logging.getLogger(__name__)

WILDCARD_IPV4 = "0.0.0.0"
LOOPBACK_IPV4 = "127.0.0.1"


class BindTarget(NamedTuple):
    ip: str
    port: int


def is_ipv4_literal(value: str | None) -> bool:
    """Check for a dotted-quad IPv4 literal (no hostnames, no IPv6)."""
    if not value:
        return False
    try:
        ipaddress.IPv4Address(value)
    except ValueError:
        return False
    return True


def is_wildcard(host: str | None) -> bool:
    return host in (WILDCARD_IPV4, "::")


def is_loopback(host: str | None) -> bool:
    if not host:
        return False
    if host.lower() == "localhost":
        return True
    try:
        return ipaddress.ip_address(host).is_loopback
    except ValueError:
        return False


def host_from_header(value: str | None) -> str | None:
    """
    Extract the host part of an HTTP Host header.
    
    Handles "example.com:8080", "10.0.0.1" and "[::1]:8080".
    """
    if not value:
        return None
    value = value.strip()
    if value.startswith("["):
        host, _, _ = value[1:].partition("]")
        return host or None
    if value.count(":") == 1:
        value = value.split(":", 1)[0]
    return value or None


def _bindable_as_requested(ip: str | None) -> bool:
    """IPv4 loopback, the IPv4 wildcard or localhost: safe to bind exactly."""
    if not ip:
        return False
    if ip.lower() == "localhost" or ip == WILDCARD_IPV4:
        return True
    return is_ipv4_literal(ip) and ipaddress.IPv4Address(ip).is_loopback


def decide_bind_target(
    requested_ip: str,
    requested_port: int,
    mode: DeploymentMode,
) -> BindTarget:
    """
    Choose the local address a session's UDP socket binds to.
    
    Args:
        requested_ip: Address the client asked for
        requested_port: Port the client asked for (0 = any)
        mode: Deployment mode of this relay
    
    Returns:
        The (ip, port) to pass to bind
    """
    if mode == DeploymentMode.RESTRICTED:
        return BindTarget(WILDCARD_IPV4, 0)
    
    if _bindable_as_requested(requested_ip):
        return BindTarget(requested_ip, requested_port)
    
    # Not an IPv4 address this host owns (the client's LAN IP, IPv6 literals)
    return BindTarget(WILDCARD_IPV4, requested_port)


def local_interface_addresses() -> list[str]:
    """Non-loopback IPv4 addresses of the local network interfaces."""
    addresses = []
    for nic_addresses in psutil.net_if_addrs().values():
        for nic_address in nic_addresses:
            if nic_address.family != socket.AF_INET:
                continue
            if is_loopback(nic_address.address) or is_wildcard(nic_address.address):
                continue
            addresses.append(nic_address.address)
    return addresses


class AddressResolver:
    """
    Resolves the address a relay client should consider "visible".
    
    Never raises and never waits longer than the lookup budget plus the
    (fast, local) remaining steps.
    """
    
    def __init__(
        self,
        lookup: PublicAddressLookup | None = None,
        public_hostname: str | None = None,
        lookup_budget_seconds: float = 12.0,
        interface_provider: Callable[[], list[str]] = local_interface_addresses,
    ):
        """
        Initialize the resolver.
        
        Args:
            lookup: Public IP discovery strategy (skipped when None)
            public_hostname: Configured public hostname fallback
            lookup_budget_seconds: Hard limit for the lookup step
            interface_provider: Lists non-loopback local IPv4 addresses
        """
        self._lookup = lookup
        self._public_hostname = public_hostname
        self._lookup_budget = lookup_budget_seconds
        self._interface_provider = interface_provider
    
    async def resolve_visible_address(
        self,
        bound_address: str,
        session_host_hint: str | None = None,
    ) -> str:
        """
        Turn a bound address into the address advertised to the client.
        
        Concrete bound addresses are already visible and returned unchanged.
        
        Args:
            bound_address: Address the OS actually bound
            session_host_hint: Host the client used to reach the control channel
        """
        if not is_wildcard(bound_address):
            return bound_address
        
        address = await self._from_lookup()
        if address:
            return address
        
        if self._public_hostname:
            logger.info(f"Falling back to configured public hostname: {self._public_hostname}")
            return self._public_hostname
        
        if session_host_hint and not is_loopback(session_host_hint) and not is_wildcard(session_host_hint):
            logger.info(f"Falling back to control channel host: {session_host_hint}")
            return session_host_hint
        
        address = self._from_interfaces()
        if address:
            logger.info(f"Falling back to local interface address: {address}")
            return address
        
        logger.warning(f"No visible address found, falling back to {LOOPBACK_IPV4}")
        return LOOPBACK_IPV4
    
    async def _from_lookup(self) -> str | None:
        if self._lookup is None:
            return None
        
        try:
            address = await asyncio.wait_for(self._lookup.lookup(), timeout=self._lookup_budget)
        except asyncio.TimeoutError:
            logger.warning(f"Public IP lookup exceeded {self._lookup_budget}s budget")
            return None
        except ResolutionError as e:
            logger.info(f"Public IP lookup unavailable: {e}")
            return None
        except Exception as e:
            logger.warning(f"Public IP lookup error: {e}")
            return None
        
        if not is_ipv4_literal(address):
            logger.warning(f"Public IP lookup returned invalid address: {address!r}")
            return None
        return address
    
    def _from_interfaces(self) -> str | None:
        try:
            addresses = self._interface_provider()
        except OSError as e:
            logger.warning(f"Could not enumerate network interfaces: {e}")
            return None
        return addresses[0] if addresses else None
