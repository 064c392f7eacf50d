"""
infracore - Engine Package

Core engine that turns configuration into applied infrastructure:
- Parser: Validates YAML and expands modules, count and for_each
- Graph: Builds the resource dependency graph
- Planner: Diffs configuration against state into an ordered plan
- Executor: Applies plans through providers in parallel
"""

from infracore.engine.parser import ConfigParser
from infracore.engine.graph import DependencyGraph, GraphBuilder
from infracore.engine.planner import PlanEngine
from infracore.engine.executor import ApplyExecutor

__all__ = ["ConfigParser", "DependencyGraph", "GraphBuilder", "PlanEngine", "ApplyExecutor"]
