"""
Tunnelwatch - health supervision for SSH port forwarding tunnels.

Probes tunnels, clears stale remote listeners, re-establishes dead sessions
and records one report per supervision cycle.
"""

__version__ = "0.1.0"
