"""Build and send traceroute probes over ICMP, UDP and TCP and decode their responses."""

__version__ = "0.9.0"