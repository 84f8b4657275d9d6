"""
Sampling package: input designs and the training-data generator.
"""

from nlsurrogate.sampling.designs import available_designs, candidate_inputs, equation_rng
from nlsurrogate.sampling.generator import generate

__all__ = ["available_designs", "candidate_inputs", "equation_rng", "generate"]
