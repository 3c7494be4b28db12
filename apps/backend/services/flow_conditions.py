"""Comparison operators and boolean expressions for CONDITION and LOOP nodes."""
from __future__ import annotations

import logging
import re
from typing import Any

from apps.backend.services.variable_resolver import VariableScope, resolve, to_text

logger = logging.getLogger(__name__)

_OPERATOR_ALIASES = {
    "==": "equals",
    "=": "equals",
    "eq": "equals",
    "!=": "not_equals",
    "ne": "not_equals",
    ">": "greater_than",
    "gt": "greater_than",
    "<": "less_than",
    "lt": "less_than",
    ">=": "greater_or_equal",
    "gte": "greater_or_equal",
    "<=": "less_or_equal",
    "lte": "less_or_equal",
    "matches": "regex",
    "~": "regex",
}

# longest first so ">=" is not read as ">"
_EXPRESSION_OPS = (
    " not_contains ", " contains ", " matches ", "==", "!=", ">=", "<=", ">", "<",
)


def normalize_operator(op: str | None) -> str:
    key = (op or "").strip().lower().replace("-", "_").replace(" ", "_")
    return _OPERATOR_ALIASES.get(key, key)


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value).strip())
    except (TypeError, ValueError):
        return None


def _ordering(left: Any, right: Any) -> int:
    """Numeric comparison when both sides are numbers, string comparison otherwise."""
    ln, rn = _as_number(left), _as_number(right)
    if ln is not None and rn is not None:
        return (ln > rn) - (ln < rn)
    ls, rs = to_text(left), to_text(right)
    return (ls > rs) - (ls < rs)


def compare(left: Any, operator: str | None, right: Any) -> bool:
    op = normalize_operator(operator)
    if op in ("equals", "not_equals"):
        ln, rn = _as_number(left), _as_number(right)
        if ln is not None and rn is not None:
            same = ln == rn
        else:
            same = to_text(left).strip().lower() == to_text(right).strip().lower()
        return same if op == "equals" else not same
    if op in ("contains", "not_contains"):
        found = to_text(right).strip().lower() in to_text(left).lower()
        return found if op == "contains" else not found
    if op == "greater_than":
        return _ordering(left, right) > 0
    if op == "less_than":
        return _ordering(left, right) < 0
    if op == "greater_or_equal":
        return _ordering(left, right) >= 0
    if op == "less_or_equal":
        return _ordering(left, right) <= 0
    if op == "regex":
        try:
            return re.search(to_text(right), to_text(left), flags=re.IGNORECASE) is not None
        except re.error:
            logger.warning("flow_condition_bad_regex pattern=%s", to_text(right)[:120])
            return False
    if op == "is_empty":
        return to_text(left).strip() == "" if left is not None else True
    if op == "is_not_empty":
        return left is not None and to_text(left).strip() != ""
    logger.warning("flow_condition_unknown_operator op=%s", operator)
    return False


def keyword_match(text: Any, keywords: str) -> bool:
    words = [w.strip().lower() for w in re.split(r"[,;\n]+", keywords or "") if w.strip()]
    haystack = to_text(text if text is not None else "").lower()
    return any(w in haystack for w in words)


def _split_top_level(expr: str, sep: str) -> list[str]:
    """Split on `sep` outside of ``{{...}}`` placeholders and quotes."""
    parts: list[str] = []
    depth = 0
    quote = ""
    start = 0
    i = 0
    while i < len(expr):
        ch = expr[i]
        if quote:
            if ch == quote:
                quote = ""
        elif expr.startswith("{{", i):
            depth += 1
            i += 2
            continue
        elif expr.startswith("}}", i) and depth:
            depth -= 1
            i += 2
            continue
        elif ch in ("'", '"') and not depth:
            quote = ch
        elif not depth and expr.startswith(sep, i):
            parts.append(expr[start:i])
            i += len(sep)
            start = i
            continue
        i += 1
    parts.append(expr[start:])
    return parts


def _literal(token: str, scope: VariableScope) -> str:
    t = resolve(token.strip(), scope).strip()
    if len(t) >= 2 and t[0] == t[-1] and t[0] in ("'", '"'):
        t = t[1:-1]
    return t


def _evaluate_comparison(expr: str, scope: VariableScope) -> bool:
    for op in _EXPRESSION_OPS:
        parts = _split_top_level(expr, op)
        if len(parts) == 2:
            return compare(_literal(parts[0], scope), op.strip(), _literal(parts[1], scope))
    value = _literal(expr, scope).lower()
    if value.startswith("!"):
        return not _evaluate_comparison(expr.strip()[1:], scope)
    return value not in ("", "false", "0", "no", "null", "none", "undefined") and "{{" not in value


def evaluate_expression(expr: str | None, scope: VariableScope) -> bool:
    """``{{a}} > 3 && {{b}} == "yes" || {{vip}}``; ``&&`` binds tighter than ``||``."""
    if not expr or not expr.strip():
        return False
    for disjunct in _split_top_level(expr, "||"):
        if all(_evaluate_comparison(c, scope) for c in _split_top_level(disjunct, "&&")):
            return True
    return False
