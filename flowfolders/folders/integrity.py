"""
flowfolders Tree Integrity — Offline check of the stored folder forest.

Builds a NetworkX DiGraph (parent → child) from every stored folder and
reports the states the services never produce but a corrupted or hand-edited
store can contain:
- cycles in the parent relation
- dangling parent references (orphans)
- duplicate names among siblings

Used by ``flowfolders check``.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import networkx as nx

from flowfolders.folders.models import Folder
from flowfolders.folders.stores import FolderStore

logger = logging.getLogger("flowfolders.folders.integrity")


@dataclass
class IntegrityReport:
    """Result of one integrity pass."""
    folder_count: int = 0
    cycles: List[List[str]] = field(default_factory=list)
    orphans: List[Tuple[str, str]] = field(default_factory=list)  # (folder_id, missing parent_id)
    duplicate_names: List[Tuple[Optional[str], str, List[str]]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not (self.cycles or self.orphans or self.duplicate_names)

    def problems(self) -> List[str]:
        lines = [f"cycle: {' -> '.join(cycle + cycle[:1])}" for cycle in self.cycles]
        lines += [f"orphan: {fid} references missing parent {pid}" for fid, pid in self.orphans]
        lines += [
            f"duplicate name '{name}' under {parent or 'root'}: {', '.join(ids)}"
            for parent, name, ids in self.duplicate_names
        ]
        return lines

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "folder_count": self.folder_count,
            "cycles": self.cycles,
            "orphans": [{"folder_id": f, "parent_id": p} for f, p in self.orphans],
            "duplicate_names": [
                {"parent_id": p, "name": n, "folder_ids": ids}
                for p, n, ids in self.duplicate_names
            ],
        }


def build_folder_graph(folders: List[Folder]) -> "nx.DiGraph":
    """Directed graph with an edge parent → child for every resolvable parent link."""
    graph = nx.DiGraph()
    for folder in folders:
        graph.add_node(folder.id, name=folder.name)
    for folder in folders:
        if folder.parent_id is not None and graph.has_node(folder.parent_id):
            graph.add_edge(folder.parent_id, folder.id)
    return graph


def check_tree_integrity(folder_store: FolderStore) -> IntegrityReport:
    folders = folder_store.find_all()
    graph = build_folder_graph(folders)
    report = IntegrityReport(folder_count=len(folders))

    report.cycles = [sorted_cycle(c) for c in nx.simple_cycles(graph)]
    report.orphans = sorted(
        (f.id, f.parent_id) for f in folders
        if f.parent_id is not None and not graph.has_node(f.parent_id)
    )

    siblings: Dict[Tuple[Optional[str], str], List[str]] = defaultdict(list)
    for folder in folders:
        siblings[(folder.parent_id, folder.name)].append(folder.id)
    report.duplicate_names = sorted(
        ((parent, name, sorted(ids)) for (parent, name), ids in siblings.items() if len(ids) > 1),
        key=lambda d: (d[0] or "", d[1]),
    )

    if report.ok:
        logger.info(f"Folder tree integrity OK ({report.folder_count} folders)")
    else:
        logger.warning(
            f"Folder tree integrity problems: {len(report.cycles)} cycle(s), "
            f"{len(report.orphans)} orphan(s), {len(report.duplicate_names)} duplicate name(s)"
        )
    return report


def sorted_cycle(cycle: List[str]) -> List[str]:
    """Rotate a cycle so it starts at its smallest id (stable output)."""
    if not cycle:
        return cycle
    start = cycle.index(min(cycle))
    return cycle[start:] + cycle[:start]
