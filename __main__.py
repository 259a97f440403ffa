"""
Legend Platform on EKS
Secrets, cluster and Legend services declared as one graph, then evaluated
"""
import pulumi
from legend_eks.backends import pulumi_materializers
from legend_eks.config import get_config
from legend_eks.scheduler import evaluate
from legend_eks.stack import declare_platform

config = get_config()

# 1. Declare the whole graph; nothing is created yet
platform = declare_platform(config)
graph = platform["graph"]
pulumi.log.info(f"Declared {len(graph)} nodes for {config.cluster_name}")

# 2. Hand every node to Pulumi in dependency order
results = evaluate(graph, pulumi_materializers())

# 3. Workloads are accepted by the engine
platform["topology"].mark_deployed(results)

# Exports
cluster = results[platform["cluster"].cluster_node]
pulumi.export("cluster_name", cluster["cluster_name"])
pulumi.export("cluster_endpoint", cluster["endpoint"])
pulumi.export("secret_names", platform["vault"].exports())
pulumi.export("database_endpoint", results[platform["database"].node_id]["endpoint"])
pulumi.export("legend_host", config.host)
pulumi.export("legend_services", sorted(platform["units"]))
pulumi.export("kubeconfig_command",
    pulumi.Output.concat(
        f"aws eks update-kubeconfig --region {config.aws_region} --name ",
        cluster["cluster_name"]
    ))
