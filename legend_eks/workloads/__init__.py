"""
Workloads Module
Secret bindings, deployments, routing and network policy
"""

from .functions import (WorkloadTopology, WorkloadUnit, build_routing_table, check_disjoint_prefixes,
                        validate_field_map)
from .platform import (LEGEND_COMPONENTS, LegendComponent, bind_legend_secrets, deploy_legend,
                       install_monitoring, legend_records)

__all__ = [
    "LEGEND_COMPONENTS",
    "LegendComponent",
    "WorkloadTopology",
    "WorkloadUnit",
    "bind_legend_secrets",
    "build_routing_table",
    "check_disjoint_prefixes",
    "deploy_legend",
    "install_monitoring",
    "legend_records",
    "validate_field_map",
]
