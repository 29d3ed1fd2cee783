from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, Protocol, Sequence

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from batcher.models import WorkerNode
from batcher.utils import MissingInputError, atomic_write_text, read_text_or_none
from components.executors import JobExecutor
from components.snapshot_provider import TargetSnapshot

logger = logging.getLogger(__name__)
if not logger.handlers:
    logger.addHandler(logging.NullHandler())


# --------------------------------------------------------------------------- #
# Fleet file
# --------------------------------------------------------------------------- #


class NodeRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(..., min_length=1)
    total_capacity: float = Field(..., alias="totalCapacity", ge=0.0)
    # capacity held by work this scheduler did not start
    used_capacity: float = Field(0.0, alias="usedCapacity", ge=0.0)


class FleetFile(BaseModel):
    nodes: List[NodeRecord] = Field(default_factory=list)


def read_fleet_file(path: Path) -> Dict[str, WorkerNode]:
    text = read_text_or_none(Path(path))
    if text is None:
        raise MissingInputError(f"fleet file {path} is empty or does not exist")
    try:
        data = FleetFile.model_validate_json(text)
    except ValidationError as e:
        raise MissingInputError(f"fleet file {path} is invalid: {e.error_count()} error(s)") from e
    return {
        n.id: WorkerNode(node_id=n.id, total_capacity=n.total_capacity, used_capacity=n.used_capacity)
        for n in data.nodes
    }


def write_fleet_file(path: Path, nodes: Iterable[WorkerNode]) -> None:
    data = FleetFile(
        nodes=[
            NodeRecord(id=n.node_id, total_capacity=n.total_capacity, used_capacity=n.used_capacity)
            for n in nodes
        ]
    )
    atomic_write_text(Path(path), data.model_dump_json(by_alias=True, indent=2))


# --------------------------------------------------------------------------- #
# Inventory
# --------------------------------------------------------------------------- #


class FleetInventory(Protocol):
    def view(self, node_ids: Sequence[str]) -> List[WorkerNode]: ...


class Fleet:
    """
    Capacity view at call time: the externally owned node list (totals and foreign
    usage) plus whatever the executor currently holds on each node.

    Unknown node ids are dropped, so a membership list may name nodes that do not exist.
    """

    def __init__(self, load_nodes: Callable[[], Mapping[str, WorkerNode]], executor: JobExecutor) -> None:
        self._load_nodes = load_nodes
        self.executor = executor

    @classmethod
    def from_file(cls, path: Path, executor: JobExecutor) -> "Fleet":
        p = Path(path)
        return cls(lambda: read_fleet_file(p), executor)

    @classmethod
    def from_nodes(cls, nodes: Iterable[WorkerNode], executor: JobExecutor) -> "Fleet":
        fixed = {n.node_id: n for n in nodes}
        return cls(lambda: fixed, executor)

    def view(self, node_ids: Sequence[str]) -> List[WorkerNode]:
        base = self._load_nodes()
        out: List[WorkerNode] = []
        for node_id in node_ids:
            node = base.get(node_id)
            if node is None:
                continue
            held = self.executor.committed(node_id)
            out.append(
                WorkerNode(
                    node_id=node_id,
                    total_capacity=node.total_capacity,
                    used_capacity=node.used_capacity + held,
                )
            )
        return out

    def node_ids(self) -> List[str]:
        return list(self._load_nodes().keys())


# --------------------------------------------------------------------------- #
# Candidate order
# --------------------------------------------------------------------------- #


def candidate_order(
    snap: TargetSnapshot,
    *,
    home_node: str = "home",
    excluded_prefixes: Sequence[str] = ("mgmt",),
) -> List[str]:
    """
    Allocation priority: home first, then the dedicated pool,
    then any other capacity-bearing node (the target itself, then the rest).
    Nodes with a reserved prefix are never used; first occurrence wins when a node
    is listed twice.
    """
    def _excluded(name: str) -> bool:
        return any(name.startswith(p) for p in excluded_prefixes if p)

    ordered = [home_node, *snap.pool_nodes, snap.target, *snap.other_nodes]

    seen: set[str] = set()
    out: List[str] = []
    for name in ordered:
        if not name or name in seen or (name != home_node and _excluded(name)):
            continue
        seen.add(name)
        out.append(name)
    return out
