"""Output resolution over the final state of a run.

Outputs are nested mappings/lists of references and literals. A reference
whose source never reached Ready resolves to an Unavailable marker, and the
remaining outputs still resolve: partial availability is a normal outcome.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from resources import Ref, SecretRef, SecretToken

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Unavailable:
    """Marker for an output whose source is not Ready."""
    reason: str

    def __repr__(self) -> str:
        return f"<unavailable: {self.reason}>"

    def to_dict(self) -> dict:
        return {'unavailable': self.reason}


def resolve_outputs(
    expressions: dict[str, Any],
    ready_observed: Callable[[str], Optional[dict]],
) -> dict[str, Any]:
    """Evaluate output expressions.

    Args:
        expressions: Output name -> expression (nested)
        ready_observed: resource id -> observed attributes if Ready, else None

    Returns:
        Same shape as expressions, with values, tokens or Unavailable markers
    """
    return {name: _resolve(expr, ready_observed) for name, expr in expressions.items()}


def _resolve(expr: Any, ready_observed: Callable[[str], Optional[dict]]) -> Any:
    if isinstance(expr, Ref):
        observed = ready_observed(expr.resource_id)
        if observed is None:
            return Unavailable(f"{expr.resource_id} not ready")
        if expr.attribute not in observed:
            return Unavailable(f"{expr} not reported")
        return observed[expr.attribute]
    if isinstance(expr, SecretRef):
        observed = ready_observed(expr.resource_id)
        if observed is None or 'ref' not in observed:
            return Unavailable(f"{expr.resource_id} not ready")
        return SecretToken.parse(str(observed['ref']))
    if isinstance(expr, dict):
        return {k: _resolve(v, ready_observed) for k, v in expr.items()}
    if isinstance(expr, list):
        return [_resolve(v, ready_observed) for v in expr]
    return expr


def outputs_to_json(value: Any) -> Any:
    """JSON-safe form: markers as {"unavailable": reason}, tokens as strings."""
    if isinstance(value, Unavailable):
        return value.to_dict()
    if isinstance(value, SecretToken):
        return str(value)
    if isinstance(value, dict):
        return {k: outputs_to_json(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [outputs_to_json(v) for v in value]
    return value


def unavailable_paths(value: Any, prefix: str = '') -> list[str]:
    """Dotted paths of every Unavailable marker."""
    if isinstance(value, Unavailable):
        return [prefix]
    paths = []
    if isinstance(value, dict):
        for k, v in value.items():
            paths.extend(unavailable_paths(v, f"{prefix}.{k}" if prefix else k))
    elif isinstance(value, list):
        for i, v in enumerate(value):
            paths.extend(unavailable_paths(v, f"{prefix}[{i}]"))
    return paths
