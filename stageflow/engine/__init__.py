"""Execution engine -- runs commands, stages, hooks and whole pipelines.

Public API::

    from stageflow.engine import (
        CommandRunner,
        HookRunner,
        ManagedResource,
        PipelineExecutor,
        ResourceGuard,
        StageExecutor,
    )
"""

from stageflow.engine.executor import StageExecutor
from stageflow.engine.guard import ManagedResource, ResourceGuard
from stageflow.engine.hooks import HookRunner
from stageflow.engine.pipeline import PipelineExecutor
from stageflow.engine.runner import CommandRunner

__all__ = [
    "CommandRunner",
    "HookRunner",
    "ManagedResource",
    "PipelineExecutor",
    "ResourceGuard",
    "StageExecutor",
]
