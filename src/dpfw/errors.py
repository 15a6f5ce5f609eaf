class FirewallError(Exception):
    """Base class for everything dpfw raises on purpose."""


class ParseError(FirewallError):
    """The policy file could not be read or validated."""


class BackendError(FirewallError):
    """iptables (or nsenter) rejected a probe or a load."""


class TransportError(FirewallError):
    """The Docker daemon could not be reached."""
