"""
Analysis package: model equation graph and dependency resolution.
"""

from nlsurrogate.analysis.dependencies import resolve, resolve_many
from nlsurrogate.analysis.structure import EquationBlock, ModelStructure, load_structure

__all__ = [
    "EquationBlock",
    "ModelStructure",
    "load_structure",
    "resolve",
    "resolve_many",
]
