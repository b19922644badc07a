"""Scaling strategies, quorum safety checks and learner membership reconciliation for etcd control-plane clusters."""

__version__ = "0.1.0"
__all__ = ["__version__"]