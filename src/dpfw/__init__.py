"""dpfw - keeps iptables in sync with Docker containers according to a policy."""

__version__ = "1.0.0"
