#!/usr/bin/env python3
"""Render how full each Ring of Spell Storing is, or who filled it."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from collections import defaultdict
from pathlib import Path
from typing import Mapping

import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt
import networkx as nx
from matplotlib.patches import Patch

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from spellring.config import RingConfig
from spellring.constants import DEFAULT_CAPACITY_LEVELS
from spellring.ledger import SpellStorageLedger
from spellring.storage import RINGS_COLLECTION, DataStore

# One colour per stored slot level so upcast spells stand out.
LEVEL_COLOURS = {
    1: "#9ecae1",
    2: "#6baed6",
    3: "#4292c6",
    4: "#2171b5",
    5: "#084594",
}
FREE_COLOUR = "#eeeeee"
OVERFLOW_COLOUR = "#d62728"

RING_NODE_COLOUR = "#f0a500"
CASTER_NODE_COLOUR = "#98df8a"


async def _load_ledgers(
    store: DataStore, capacity: int
) -> dict[str, SpellStorageLedger]:
    records = await store.all(RINGS_COLLECTION)
    return {
        ring_id: SpellStorageLedger.load(record, capacity_levels=capacity)
        for ring_id, record in records.items()
    }


def render_usage_chart(
    ledgers: Mapping[str, SpellStorageLedger], output_path: Path, dpi: int = 150
) -> None:
    ring_ids = sorted(ledgers)
    height = max(2.0, 0.6 * len(ring_ids) + 1.0)
    fig, ax = plt.subplots(figsize=(8.0, height))

    for row, ring_id in enumerate(ring_ids):
        ledger = ledgers[ring_id]
        offset = 0
        for entry in ledger.entries:
            colour = LEVEL_COLOURS.get(entry.stored_level, OVERFLOW_COLOUR)
            if offset + entry.stored_level > ledger.capacity_levels:
                colour = OVERFLOW_COLOUR
            ax.barh(row, entry.stored_level, left=offset, color=colour, edgecolor="white")
            ax.text(
                offset + entry.stored_level / 2,
                row,
                entry.name,
                ha="center",
                va="center",
                fontsize=7,
                color="white",
            )
            offset += entry.stored_level
        free = ledger.remaining_capacity()
        if free > 0:
            ax.barh(row, free, left=offset, color=FREE_COLOUR, edgecolor="white")

    capacity = max(
        [DEFAULT_CAPACITY_LEVELS, *(ledger.capacity_levels for ledger in ledgers.values())]
    )
    ax.set_yticks(range(len(ring_ids)), labels=ring_ids)
    used = [ledger.used_levels() for ledger in ledgers.values()]
    ax.set_xlim(0, max([capacity, *used]))
    ax.set_xlabel("Spell levels")
    ax.set_title("Ring of Spell Storing usage")
    legend = [
        Patch(color=colour, label=f"Level {level}") for level, colour in LEVEL_COLOURS.items()
    ]
    legend.append(Patch(color=FREE_COLOUR, label="Free"))
    legend.append(Patch(color=OVERFLOW_COLOUR, label="Over capacity"))
    ax.legend(handles=legend, loc="lower right", fontsize=7, frameon=False)
    fig.tight_layout()

    output_path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(output_path, dpi=dpi, bbox_inches="tight")
    plt.close(fig)


def build_provenance_graph(ledgers: Mapping[str, SpellStorageLedger]) -> nx.DiGraph:
    """Casters point at the rings they stored spells in, weighted by levels."""

    weights: dict[tuple[str, str], int] = defaultdict(int)
    graph = nx.DiGraph()
    for ring_id, ledger in ledgers.items():
        graph.add_node(f"ring:{ring_id}", label=ring_id, kind="ring")
        for entry in ledger.entries:
            snapshot = entry.caster_snapshot
            caster_node = f"caster:{snapshot.caster_id or snapshot.caster_name}"
            graph.add_node(
                caster_node, label=snapshot.caster_name or snapshot.caster_id, kind="caster"
            )
            weights[(caster_node, f"ring:{ring_id}")] += entry.stored_level
    for (source, target), weight in weights.items():
        graph.add_edge(source, target, weight=weight)
    return graph


def render_provenance_graph(
    ledgers: Mapping[str, SpellStorageLedger],
    output_path: Path,
    dpi: int = 150,
    seed: int = 42,
) -> None:
    graph = build_provenance_graph(ledgers)
    fig, ax = plt.subplots(figsize=(8.0, 6.0))
    pos = nx.spring_layout(graph, seed=seed)
    colours = [
        RING_NODE_COLOUR if data["kind"] == "ring" else CASTER_NODE_COLOUR
        for _, data in graph.nodes(data=True)
    ]
    nx.draw_networkx_nodes(graph, pos, node_color=colours, node_size=900, ax=ax)
    nx.draw_networkx_labels(
        graph,
        pos,
        labels={node: data["label"] for node, data in graph.nodes(data=True)},
        font_size=8,
        ax=ax,
    )
    widths = [graph.edges[edge]["weight"] for edge in graph.edges]
    nx.draw_networkx_edges(graph, pos, width=widths, arrows=True, arrowsize=10, ax=ax)
    nx.draw_networkx_edge_labels(
        graph,
        pos,
        edge_labels={edge: graph.edges[edge]["weight"] for edge in graph.edges},
        font_size=7,
        ax=ax,
    )
    ax.legend(
        handles=[
            Patch(color=RING_NODE_COLOUR, label="Ring"),
            Patch(color=CASTER_NODE_COLOUR, label="Original caster"),
        ],
        loc="upper left",
        frameon=False,
        fontsize=8,
    )
    ax.axis("off")
    fig.tight_layout()

    output_path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(output_path, dpi=dpi, bbox_inches="tight")
    plt.close(fig)


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--output",
        type=Path,
        default=Path("img/ring-usage.png"),
        help="Where to write the rendered image.",
    )
    parser.add_argument(
        "--mode",
        choices=("usage", "provenance"),
        default="usage",
        help="Capacity bars per ring, or a caster-to-ring graph.",
    )
    parser.add_argument(
        "--data-root",
        type=Path,
        default=None,
        help="Storage root holding ringdata/ (defaults to SPELLRING_DATA_ROOT).",
    )
    parser.add_argument(
        "--capacity",
        type=int,
        default=None,
        help="Spell level capacity to assume for every ring (defaults to SPELLRING_CAPACITY).",
    )
    parser.add_argument("--dpi", type=int, default=150, help="Rendering DPI.")
    parser.add_argument(
        "--seed", type=int, default=42, help="Layout seed for provenance mode."
    )

    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO)
    store = DataStore(storage_root=args.data_root.resolve() if args.data_root else None)
    capacity = args.capacity or RingConfig.from_env().capacity_levels
    ledgers = asyncio.run(_load_ledgers(store, capacity))
    if not ledgers:
        logging.getLogger(__name__).warning("No ring records found under %s", store.storage_root)
    if args.mode == "usage":
        render_usage_chart(ledgers, args.output, dpi=args.dpi)
    else:
        render_provenance_graph(ledgers, args.output, dpi=args.dpi, seed=args.seed)


if __name__ == "__main__":
    main()
