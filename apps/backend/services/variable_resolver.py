"""Template variables for flow execution.

Syntax: ``{{name}}``, ``{{user.profile.email}}``, ``{{orders[0].id}}`` and
``{{name || "fallback"}}``.  Session variables shadow bot variables of the
same name.  A placeholder with no value and no fallback is left as-is.
"""
from __future__ import annotations

import json
import re
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from apps.backend.models.variable import BotVariable, SessionVariable

_PLACEHOLDER = re.compile(r"\{\{(.+?)\}\}")
_INDEX = re.compile(r"\[(\d+)\]")
_MISSING = object()


def normalize_path(path: str) -> list[str]:
    """``a.b[0].c`` -> ``["a", "b", "0", "c"]``."""
    p = (path or "").strip()
    if p.startswith("$"):
        p = p[1:].lstrip(".")
    p = _INDEX.sub(r".\1", p)
    return [part for part in p.split(".") if part != ""]


def _maybe_json(value: Any) -> Any:
    """Structured values persisted as JSON text are parsed back."""
    if isinstance(value, str):
        s = value.strip()
        if s[:1] in ("{", "[") and s[-1:] in ("}", "]"):
            try:
                return json.loads(s)
            except ValueError:
                return value
    return value


def get_path(data: Any, path: str, default: Any = None) -> Any:
    """Walk dotted / indexed path through dicts and lists."""
    current = data
    for part in normalize_path(path):
        current = _maybe_json(current)
        if isinstance(current, dict):
            if part not in current:
                return default
            current = current[part]
        elif isinstance(current, list):
            if not part.isdigit() or int(part) >= len(current):
                return default
            current = current[int(part)]
        else:
            return default
    return current


def to_text(value: Any) -> str:
    """String form of a variable value in a text context."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def infer_type(value: Any) -> str:
    if isinstance(value, bool):
        return "BOOLEAN"
    if isinstance(value, (int, float)):
        return "NUMBER"
    if isinstance(value, dict):
        return "OBJECT"
    if isinstance(value, list):
        return "ARRAY"
    return "STRING"


class VariableScope:
    """Bot scope overlaid by session scope."""

    def __init__(self, bot_vars: dict[str, Any] | None = None, session_vars: dict[str, Any] | None = None):
        self.bot_vars = dict(bot_vars or {})
        self.session_vars = dict(session_vars or {})

    def as_dict(self) -> dict[str, Any]:
        merged = dict(self.bot_vars)
        merged.update(self.session_vars)
        return merged

    def get(self, name: str, default: Any = None) -> Any:
        if name in self.session_vars:
            return self.session_vars[name]
        return self.bot_vars.get(name, default)

    def set(self, name: str, value: Any) -> None:
        self.session_vars[name] = value

    def lookup(self, path: str) -> Any:
        parts = normalize_path(path)
        if not parts:
            return _MISSING
        merged = self.as_dict()
        if parts[0] not in merged:
            return _MISSING
        value = merged[parts[0]]
        if len(parts) == 1:
            return value
        return get_path(value, ".".join(parts[1:]), _MISSING)


def _split_fallback(inner: str) -> tuple[str, str | None]:
    if "||" not in inner:
        return inner.strip(), None
    path, fallback = inner.split("||", 1)
    fallback = fallback.strip()
    if len(fallback) >= 2 and fallback[0] == fallback[-1] and fallback[0] in ("'", '"'):
        fallback = fallback[1:-1]
    return path.strip(), fallback


def resolve(template: str | None, scope: VariableScope) -> str:
    if not template:
        return template or ""

    def _sub(match: re.Match) -> str:
        path, fallback = _split_fallback(match.group(1))
        value = scope.lookup(path)
        if value is not _MISSING and value is not None:
            return to_text(value)
        if fallback is not None:
            return fallback
        return match.group(0)

    return _PLACEHOLDER.sub(_sub, template)


def resolve_value(template: Any, scope: VariableScope) -> Any:
    """Native value for a template made of exactly one placeholder, text otherwise."""
    if not isinstance(template, str):
        return template
    m = _PLACEHOLDER.fullmatch(template.strip())
    if m:
        path, fallback = _split_fallback(m.group(1))
        value = scope.lookup(path)
        if value is not _MISSING and value is not None:
            return _maybe_json(value)
        if fallback is not None:
            return fallback
        return None
    stripped = template.strip()
    if stripped and "{{" not in stripped:
        # bare variable name
        value = scope.lookup(stripped)
        if value is not _MISSING:
            return _maybe_json(value)
    return resolve(template, scope)


def load_scope(db: Session, bot_id: int, session_id: int | None) -> VariableScope:
    bot_vars: dict[str, Any] = {}
    for row in db.execute(select(BotVariable).where(BotVariable.bot_id == bot_id)).scalars():
        bot_vars[row.variable_name] = _stored_value(row.variable_value, row.variable_type)
    session_vars: dict[str, Any] = {}
    if session_id is not None:
        rows = db.execute(select(SessionVariable).where(SessionVariable.session_id == session_id)).scalars()
        for row in rows:
            session_vars[row.variable_name] = _stored_value(row.variable_value, row.variable_type)
    return VariableScope(bot_vars, session_vars)


def _stored_value(value: Any, variable_type: str | None) -> Any:
    if variable_type in ("OBJECT", "ARRAY"):
        return _maybe_json(value)
    return value


def get_variable_map(db: Session, bot_id: int, session_id: int | None) -> dict[str, Any]:
    return load_scope(db, bot_id, session_id).as_dict()


def set_session_variable(
    db: Session,
    session_id: int,
    name: str,
    value: Any,
    variable_type: str | None = None,
) -> SessionVariable:
    row = db.execute(
        select(SessionVariable).where(
            SessionVariable.session_id == session_id,
            SessionVariable.variable_name == name,
        )
    ).scalar_one_or_none()
    vtype = variable_type or infer_type(value)
    if not row:
        row = SessionVariable(session_id=session_id, variable_name=name, variable_value=value, variable_type=vtype)
        db.add(row)
    else:
        row.variable_value = value
        row.variable_type = vtype
    db.flush()
    return row
