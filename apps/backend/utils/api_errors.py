"""JSON error envelope shared by every endpoint."""
from __future__ import annotations


def error_envelope(*, code: str, message: str, trace_id: str, detail: str | None = None) -> dict:
    out = {
        "code": code,
        "message": message,
        "trace_id": trace_id,
    }
    if detail:
        out["detail"] = detail
    return out
