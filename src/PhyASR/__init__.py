#! /usr/bin/env python
# -*- coding: utf-8 -*-

##############################################################################
##  -- PhyASR --
##  Library for Maximum Likelihood Ancestral State Reconstruction
##
##  Copyright 2025 Mark Kessler, Luay Nakhleh.
##  All rights reserved.
##############################################################################

"""
PhyASR - Ancestral State Reconstruction Python Library

Maximum likelihood reconstruction of discrete character states on the
internal nodes of a fixed, rooted tree under the F81 and JC models.
"""

# Core data structures
from .Alphabet import StateAlphabet, InvalidAlphabet, MISSING_TOKENS
from .Tree import (
    Tree,
    TreeNode,
    TreeBuilder,
    MISSING,
    InvalidTreeStructure,
    InvalidBranchLength,
    tree_from_phylo
)
from .Traversal import Traversal, TraversalOrder, LevelParallelTraversal

# Models and likelihood
from .SubstitutionModel import (
    ModelParameters,
    SubstitutionModel,
    SubstitutionModelError,
    F81,
    JC,
    estimate_frequencies,
    make_model
)
from .Likelihood import LikelihoodEngine, PartialLikelihoods, \
                        NumericalInstability

# Inference
from .Settings import ASRSettings, SettingsError, DEFAULT_METHODS, MARGINAL, \
                      MAP, JOINT, MPPA, METHODS
from .Optimizer import (
    Optimizer,
    OptimizationResult,
    OptimizerNonConvergence,
    LineSearchResult,
    golden_section_search
)
from .Reconstruction import (
    Reconstructor,
    ReconstructionResult,
    NodePosterior,
    mppa_selection
)
from .Inference import InferenceResult, infer_ancestral_states

__version__ = "1.0.0"
__author__ = "Mark Kessler"
