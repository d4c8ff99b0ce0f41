"""Identity assignment reconciliation for pods, nodes and scale sets."""

__version__ = "0.1.0"
__all__ = ["client", "models", "nodeupdate", "planning", "vmss"]