"""Workflow definitions module."""

from workflows.replication_workflow import ReplicationWorkflow

__all__ = ["ReplicationWorkflow"]
