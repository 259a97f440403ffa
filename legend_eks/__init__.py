"""
Legend EKS
Legend platform provisioning on EKS as one declared dependency graph
"""

from .errors import (BackendUnavailable, ConfigurationError, DependencyUnsatisfied,
                     GraphEvaluationError, LegendError)
from .graph import DependencyGraph
from .scheduler import evaluate

__version__ = "0.1.0"

__all__ = [
    "BackendUnavailable",
    "ConfigurationError",
    "DependencyGraph",
    "DependencyUnsatisfied",
    "GraphEvaluationError",
    "LegendError",
    "evaluate",
]
