"""Exception classes for localmesh."""


class LocalmeshError(Exception):
    """Base exception for localmesh setup failures."""

    pass


class ConfigError(LocalmeshError):
    """Mesh configuration is malformed or references something undefined."""

    pass


class ResolutionError(LocalmeshError):
    """A Kubernetes Service port could not be resolved."""

    pass


class AllocationError(LocalmeshError):
    """A local network resource could not be allocated."""

    pass


class AddressRangeExhausted(AllocationError):
    """Every loopback address in the alias range is taken."""

    def __init__(self, first: str, last: str):
        self.first = first
        self.last = last
        super().__init__(f"loopback IP range exhausted ({first}-{last})")


class TunnelConfigError(LocalmeshError):
    """A tunnel was given parameters it can never connect with."""

    pass
