"""Stageflow -- a pipeline execution engine for build, test and deploy workflows."""

__version__ = "0.1.0"
