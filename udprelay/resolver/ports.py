"""
Address Lookup Port Interface

The resolver depends only on this interface for public IP discovery;
the HTTP adapter lives in lookup.py and tests inject their own.
"""

from abc import ABC, abstractmethod


class PublicAddressLookup(ABC):
    """
    Discovers the public IPv4 address of this host.
    
    Implementations must bound their own running time and must not
    raise anything but ResolutionError for expected failures.
    """
    
    @abstractmethod
    async def lookup(self) -> str:
        """
        Return the public IPv4 address as a dotted-quad string.
        
        Raises:
            ResolutionError: If no strategy produced a valid address
        """
        ...
