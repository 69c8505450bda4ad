"""Visualization utilities for the simulated packet network.

This module provides functions for drawing the network topology with the
routes the nodes learned, and per-node protocol counters.
"""

from typing import Tuple
import matplotlib.pyplot as plt
import networkx as nx
import numpy as np
import os

from netstack_sim.core.simulator import NetworkSimulator


def save_network_visualization(
    simulator: NetworkSimulator,
    filename: str | None = None,
    figsize: Tuple[int, int] = (10, 8),
    block = True,
) -> None:
    """Save network topology visualization to a file.

    Every configured message is drawn along the path its source learned.

    Args:
        simulator: NetworkSimulator instance.
        filename: Output filename, or None to show it immediately.
        figsize: Figure size as (width, height) in inches.
        block: Whether showing the figure blocks.
    """
    fig = plt.figure(figsize=figsize)

    graph = simulator.graph
    pos = nx.spring_layout(graph, seed=42)

    nx.draw_networkx_nodes(graph, pos, node_size=500, node_color="lightblue")

    nx.draw_networkx_edges(
        graph,
        pos,
        edge_color="gray",
    )

    for source, (dest, _, _) in simulator.messages.items():
        if source == dest or source not in simulator.nodes:
            continue
        entry = simulator.nodes[source].routing_table[dest]
        if not entry.known:
            continue
        hops = [source, *entry.path]
        nx.draw_networkx_edges(
            graph.to_directed(),
            pos,
            edgelist=list(zip(hops, hops[1:])),
            width=2,
            alpha=0.4,
            edge_color="blue",
            style='dashed',
            connectionstyle='arc3,rad=0.2',
            arrows=True,
            arrowsize=30,
        )

    nx.draw_networkx_labels(graph, pos, font_size=16)

    edge_labels = {
        (u, v): f"{simulator.links[(u, v)].bytes_sent}/{simulator.links[(v, u)].bytes_sent} B"
        for u, v in graph.edges()
    }
    nx.draw_networkx_edge_labels(graph, pos, edge_labels=edge_labels, font_size=12, rotate=False, bbox=dict(facecolor='white', edgecolor='none', alpha=0.7))

    plt.axis("off")
    plt.tight_layout()

    if filename:
        directory = os.path.dirname(filename)
        if directory:
            os.makedirs(directory, exist_ok=True)
        fig.savefig(filename)
        plt.close(fig)
    else:
        plt.show(block=block)
        if not block:
            plt.pause(0.001)


def plot_node_counters(
    simulator: NetworkSimulator,
    output_dir: str | None = None,
    show = True,
) -> None:
    """Plot and save per-node frame and transport counters.

    Args:
        simulator: NetworkSimulator instance.
        output_dir: Directory to save the plot in.
        show: Whether to show the plot when it is not saved.
    """
    node_ids = sorted(simulator.nodes)
    routers = [simulator.nodes[n].router for n in node_ids]
    transports = [simulator.nodes[n].transport for n in node_ids]

    fig, axes = plt.subplots(1, 2, figsize=(12, 5))

    x = np.arange(len(node_ids))
    width = 0.25

    # Network layer subplot
    axes[0].bar(x - width, [r.frames_sent for r in routers], width, label="Frames sent")
    axes[0].bar(x, [r.frames_forwarded for r in routers], width, label="Forwarded")
    axes[0].bar(x + width, [r.adverts_sent for r in routers], width, label="Adverts")
    axes[0].set_title('Network Layer')
    axes[0].set_xlabel('Node')
    axes[0].set_xticks(x)
    axes[0].set_xticklabels(node_ids)
    axes[0].legend()

    # Transport layer subplot
    axes[1].bar(x - width, [t.packets_sent for t in transports], width, label="Packets sent")
    axes[1].bar(x, [t.chunks_recovered for t in transports], width, label="Recovered")
    axes[1].bar(x + width, [len(t.losses) for t in transports], width, label="Losses")
    axes[1].set_title('Transport Layer')
    axes[1].set_xlabel('Node')
    axes[1].set_xticks(x)
    axes[1].set_xticklabels(node_ids)
    axes[1].legend()

    plt.tight_layout()

    if output_dir:
        os.makedirs(output_dir, exist_ok=True)
        plt.savefig(os.path.join(output_dir, "node_counters.png"))
        plt.close(fig)
    elif show:
        plt.show()
