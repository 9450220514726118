"""Kubernetes device plugin that shares the RDMA devices of a host between containers."""

__version__ = "1.0.0"