"""Flow data builders for tests."""
from typing import Any


def node(node_id: str, node_type: str, **config: Any) -> dict:
    return {"nodeId": node_id, "nodeType": node_type, "position": {"x": 0, "y": 0}, "label": node_id, "config": config}


def edge(source: str, target: str, handle: str | None = None) -> dict:
    e = {"edgeId": f"{source}-{target}-{handle or ''}", "sourceNodeId": source, "targetNodeId": target}
    if handle is not None:
        e["sourceHandle"] = handle
    return e


def chain(*node_ids: str) -> list[dict]:
    return [edge(a, b) for a, b in zip(node_ids, node_ids[1:])]
