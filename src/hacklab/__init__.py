"""HackLab - per-user lab environments on Kubernetes.

Provisions short-lived, isolated web-vulnerability labs and desktop
"pwnbox" containers for individual users, tracks their ownership and
expiry, and verifies flags submitted against the live workloads.
"""

from hacklab.version import __version__


__all__ = ["__version__"]
