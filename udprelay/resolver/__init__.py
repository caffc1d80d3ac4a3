# Address Resolution
# Bind target policy and client-visible address discovery

from udprelay.resolver.ports import PublicAddressLookup
from udprelay.resolver.lookup import HttpPublicAddressLookup, StaticPublicAddressLookup
from udprelay.resolver.address import (
    LOOPBACK_IPV4,
    WILDCARD_IPV4,
    AddressResolver,
    BindTarget,
    decide_bind_target,
    host_from_header,
    is_ipv4_literal,
    is_loopback,
    is_wildcard,
    local_interface_addresses,
)

__all__ = [
    "PublicAddressLookup",
    "HttpPublicAddressLookup",
    "StaticPublicAddressLookup",
    "LOOPBACK_IPV4",
    "WILDCARD_IPV4",
    "AddressResolver",
    "BindTarget",
    "decide_bind_target",
    "host_from_header",
    "is_ipv4_literal",
    "is_loopback",
    "is_wildcard",
    "local_interface_addresses",
]
