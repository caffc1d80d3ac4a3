"""
HTTP Public IP Lookup

Queries plain-text "what is my IP" services in order and accepts the first
response that is a valid IPv4 literal. Each service gets its own timeout;
network errors, HTTP errors and malformed bodies fall through to the next.
"""

import asyncio
import logging
from typing import Sequence

import httpx

from udprelay.errors import ResolutionError
from udprelay.resolver.address import is_ipv4_literal
from udprelay.resolver.ports import PublicAddressLookup

logger = logging.getLogger(__name__)


class HttpPublicAddressLookup(PublicAddressLookup):
    """Public IP discovery through external lookup services."""
    
    def __init__(
        self,
        urls: Sequence[str],
        timeout_seconds: float = 3.0,
        client: httpx.AsyncClient | None = None,
    ):
        """
        Args:
            urls: Lookup services, tried in order
            timeout_seconds: Hard limit for each service
            client: Optional shared client (a fresh one is used per lookup otherwise)
        """
        self._urls = list(urls)
        self._timeout = timeout_seconds
        self._client = client
    
    @property
    def urls(self) -> list[str]:
        return list(self._urls)
    
    @property
    def budget_seconds(self) -> float:
        """Worst-case running time of one lookup."""
        return self._timeout * len(self._urls)
    
    async def lookup(self) -> str:
        if not self._urls:
            raise ResolutionError("No public IP lookup services configured")
        
        if self._client is not None:
            return await self._lookup_with(self._client)
        
        async with httpx.AsyncClient(timeout=self._timeout, follow_redirects=True) as client:
            return await self._lookup_with(client)
    
    async def _lookup_with(self, client: httpx.AsyncClient) -> str:
        for url in self._urls:
            try:
                response = await asyncio.wait_for(client.get(url), timeout=self._timeout)
                response.raise_for_status()
            except asyncio.TimeoutError:
                logger.info(f"Public IP lookup timed out ({url})")
                continue
            except (httpx.HTTPError, httpx.InvalidURL) as e:
                logger.info(f"Public IP lookup failed ({url}): {e}")
                continue
            
            candidate = response.text.strip()
            if is_ipv4_literal(candidate):
                logger.info(f"Public IP {candidate} obtained from {url}")
                return candidate
            
            logger.info(f"Public IP lookup returned invalid address ({url}): {candidate[:64]!r}")
        
        raise ResolutionError(f"All {len(self._urls)} public IP lookup services failed")


class StaticPublicAddressLookup(PublicAddressLookup):
    """An operator-configured public IP; no network access."""
    
    def __init__(self, address: str):
        if not is_ipv4_literal(address):
            raise ValueError(f"Not an IPv4 address: {address!r}")
        self._address = address
    
    async def lookup(self) -> str:
        return self._address
