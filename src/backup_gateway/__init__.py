"""backup-gateway: database backup transfer to remote object stores with a REST control plane."""

__version__ = "0.1.0"
