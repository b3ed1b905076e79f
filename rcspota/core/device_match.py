"""Post-reboot address matching logic."""

from __future__ import annotations

from rcspota.core.model import AddressScheme, ReconnectInfo

_LOW_24 = 0xFFFFFF
_LOW_8 = 0xFF


def matches_new_scheme(address: int, candidate: int) -> bool:
    """Low 24 bits advance by one, upper 24 bits unchanged."""
    if address >> 24 != candidate >> 24:
        return False
    return ((address & _LOW_24) + 1) & _LOW_24 == candidate & _LOW_24


def matches_old_scheme(address: int, candidate: int) -> bool:
    """Last byte advances by two, upper 40 bits unchanged."""
    if address >> 8 != candidate >> 8:
        return False
    return ((address & _LOW_8) + 2) & _LOW_8 == candidate & _LOW_8


def matches(info: ReconnectInfo, candidate: int) -> bool:
    if info.scheme is AddressScheme.NEW:
        return matches_new_scheme(info.address, candidate)
    return matches_old_scheme(info.address, candidate)
