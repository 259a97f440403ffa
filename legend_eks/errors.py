"""
Error taxonomy
Build-time, evaluation-time and backend failures
"""

from typing import List, Optional


class LegendError(Exception):
    """Base class for all platform provisioning errors"""


class ConfigurationError(LegendError):
    """Invalid declaration detected while building the graph. Never retried."""


class DependencyUnsatisfied(LegendError):
    """A node declares an edge to a node that does not exist"""

    def __init__(self, node_id: str, missing: str):
        super().__init__(f"Node '{node_id}' depends on undeclared node '{missing}'")
        self.node_id = node_id
        self.missing = missing


class BackendUnavailable(LegendError):
    """Secret store, cluster API or database API could not be reached"""

    def __init__(self, backend: str, cause: Exception):
        super().__init__(f"{backend}: {cause}")
        self.backend = backend
        self.cause = cause


class GraphEvaluationError(LegendError):
    """
    First fatal failure of a graph evaluation

    Carries the failing node, the chain of nodes it depends on and every
    downstream node that was never attempted because of it.
    """

    def __init__(self, node_id: str, chain: List[str], cause: Exception,
                 skipped: Optional[List[str]] = None):
        path = " -> ".join(chain + [node_id]) if chain else node_id
        super().__init__(f"Node '{node_id}' failed ({path}): {cause}")
        self.node_id = node_id
        self.chain = chain
        self.cause = cause
        self.skipped = skipped or []
