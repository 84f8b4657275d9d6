"""
Model structure: the equation graph exported by the model compiler.

Reads the OpenModelica `<model>_info.json` layout. Only the fields needed for
dependency analysis are kept:

    {
      "variables": {"s": {"kind": "variable"}, "y": {"kind": "variable", "start": 0.5}},
      "equations": [
        {"eqIndex": 14, "tag": "system", "display": "non-linear", "defines": ["y"]},
        {"eqIndex": 15, "parent": 14, "tag": "assign", "defines": ["x"], "uses": ["r", "y"]},
        {"eqIndex": 16, "parent": 14, "tag": "residual", "uses": ["s", "r", "x", "y"]}
      ]
    }
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple, Union

from nlsurrogate.errors import MalformedModelStructureError

StructureSource = Union[str, Path, Mapping[str, Any]]

NONLINEAR_DISPLAY = "non-linear"


@dataclass(frozen=True)
class EquationBlock:
    """One entry of the equation list."""

    index: int
    tag: str
    display: Optional[str] = None
    defines: Tuple[str, ...] = ()
    uses: Tuple[str, ...] = ()
    parent: Optional[int] = None

    @property
    def is_system(self) -> bool:
        return self.tag == "system"

    @property
    def is_nonlinear_system(self) -> bool:
        return self.is_system and self.display == NONLINEAR_DISPLAY


@dataclass(frozen=True)
class ModelStructure:
    """Indexed view over the equation blocks and variables of one model."""

    name: str
    blocks: Dict[int, EquationBlock]
    variables: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    children: Dict[int, Tuple[int, ...]] = field(default_factory=dict)

    def __contains__(self, equation_id: object) -> bool:
        return equation_id in self.blocks

    def get(self, equation_id: int) -> Optional[EquationBlock]:
        return self.blocks.get(equation_id)

    def descendants(self, equation_id: int) -> List[int]:
        """All blocks nested (transitively) below `equation_id`, ascending."""
        found: set[int] = set()
        stack = list(self.children.get(equation_id, ()))
        while stack:
            child = stack.pop()
            if child in found:
                continue
            found.add(child)
            stack.extend(self.children.get(child, ()))
        return sorted(found)

    def nonlinear_system_ids(self, top_level_only: bool = True) -> List[int]:
        ids = [
            b.index
            for b in self.blocks.values()
            if b.is_nonlinear_system and (not top_level_only or b.parent is None)
        ]
        return sorted(ids)

    def start_value(self, variable: str) -> Optional[float]:
        attrs = self.variables.get(variable) or {}
        value = attrs.get("start")
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None
        return float(value) if math.isfinite(value) else None

    def iter_blocks(self) -> Iterator[EquationBlock]:
        for index in sorted(self.blocks):
            yield self.blocks[index]


def _names(raw: Any, where: str) -> Tuple[str, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list) or not all(isinstance(v, str) for v in raw):
        raise MalformedModelStructureError(f"{where} must be a list of variable names")
    return tuple(dict.fromkeys(raw))


def parse_structure(payload: Mapping[str, Any], name: Optional[str] = None) -> ModelStructure:
    equations = payload.get("equations")
    if not isinstance(equations, list):
        raise MalformedModelStructureError("Model structure has no 'equations' list")

    blocks: Dict[int, EquationBlock] = {}
    for position, entry in enumerate(equations):
        if not isinstance(entry, Mapping):
            raise MalformedModelStructureError(f"equations[{position}] is not an object")
        index = entry.get("eqIndex")
        if isinstance(index, bool) or not isinstance(index, int):
            raise MalformedModelStructureError(f"equations[{position}] has no integer eqIndex")
        parent = entry.get("parent")
        if parent is not None and (isinstance(parent, bool) or not isinstance(parent, int)):
            raise MalformedModelStructureError(f"equation {index} has a non-integer parent")
        blocks[index] = EquationBlock(
            index=index,
            tag=str(entry.get("tag", "")),
            display=entry.get("display"),
            defines=_names(entry.get("defines"), f"equation {index} defines"),
            uses=_names(entry.get("uses"), f"equation {index} uses"),
            parent=parent,
        )

    children: Dict[int, List[int]] = {}
    for block in blocks.values():
        if block.parent is not None:
            children.setdefault(block.parent, []).append(block.index)

    variables = payload.get("variables") or {}
    if not isinstance(variables, Mapping):
        raise MalformedModelStructureError("'variables' must be an object")

    info = payload.get("info") if isinstance(payload.get("info"), Mapping) else {}
    return ModelStructure(
        name=name or str(info.get("name", "model")),
        blocks=blocks,
        variables={k: dict(v) if isinstance(v, Mapping) else {} for k, v in variables.items()},
        children={k: tuple(sorted(v)) for k, v in children.items()},
    )


def load_structure(source: StructureSource, name: Optional[str] = None) -> ModelStructure:
    """
    Load a ModelStructure from a `_info.json` path or a decoded payload.

    Raises
    ------
    MalformedModelStructureError
        If the file is unreadable, not JSON, or has no equation list.
    """
    if isinstance(source, Mapping):
        return parse_structure(source, name=name)

    path = Path(source)
    try:
        with path.open("r", encoding="utf-8") as f:
            payload = json.load(f)
    except FileNotFoundError as exc:
        raise MalformedModelStructureError(f"Model structure not found: {path}") from exc
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise MalformedModelStructureError(f"Model structure {path} is not valid JSON") from exc
    if not isinstance(payload, Mapping):
        raise MalformedModelStructureError(f"Model structure {path} must contain a JSON object")
    return parse_structure(payload, name=name)


__all__ = [
    "EquationBlock",
    "ModelStructure",
    "NONLINEAR_DISPLAY",
    "StructureSource",
    "load_structure",
    "parse_structure",
]
