"""Lifecycle orchestration for Cluster API managed workload clusters."""

__version__ = "0.1.0"
