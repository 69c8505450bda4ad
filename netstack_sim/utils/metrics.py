"""Metrics utilities for the simulated packet network.

This module provides functions for exporting simulation metrics and
per-node routing tables.
"""

import os
import json
from typing import Any, Dict

from netstack_sim.core.simulator import NetworkSimulator


def save_metrics_to_json(
    metrics: Dict[str, Any], filename: str = "results/metrics.json"
) -> None:
    """Save metrics to a JSON file.

    Args:
        metrics: Dictionary of metrics to save.
        filename: Output filename.
    """
    directory = os.path.dirname(filename)
    if directory:
        os.makedirs(directory, exist_ok=True)

    # Convert non-serializable types
    serializable_metrics = {}
    for key, value in metrics.items():
        if key == "bytes_per_link":
            # Convert tuple keys to strings
            serializable_metrics[key] = {
                f"{src}->{dst}": count for (src, dst), count in value.items()
            }
        else:
            serializable_metrics[key] = value

    with open(filename, "w") as f:
        json.dump(serializable_metrics, f, indent=2)


def routing_tables(simulator: NetworkSimulator) -> Dict[int, Dict[int, str]]:
    """Describe every node's routing table as readable paths.

    Args:
        simulator: NetworkSimulator instance.

    Returns:
        Node ID -> destination ID -> "a->b->c" path, or "?" when unknown.
    """
    tables: Dict[int, Dict[int, str]] = {}
    for node_id, node in sorted(simulator.nodes.items()):
        tables[node_id] = {
            dest: "->".join(map(str, (node_id, *entry.path))) if entry.known else "?"
            for dest, entry in node.routing_table.items()
            if dest != node_id
        }
    return tables
