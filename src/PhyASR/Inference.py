#! /usr/bin/env python
# -*- coding: utf-8 -*-

##############################################################################
##  -- PhyASR --
##  Library for Maximum Likelihood Ancestral State Reconstruction
##
##  Copyright 2025 Mark Kessler, Luay Nakhleh.
##  All rights reserved.
##
##  See "LICENSE.txt" for terms and conditions of usage.
##
##  If you use this work or any portion thereof in published work,
##  please cite it as:
##
##     Mark Kessler, Luay Nakhleh. 2025.
##
##############################################################################

"""
Author : Mark Kessler
Last Edit : 12/11/25
First Included in Version : 1.0.0
Docs   - [x]
Tests  - [x]
Design - [x]

End to end pipeline: build the model for a tree, fit its parameters by
maximum likelihood, then reconstruct the ancestral states.
"""

from __future__ import annotations
from dataclasses import dataclass
import logging

from .Likelihood import LikelihoodEngine
from .Optimizer import OptimizationResult, Optimizer
from .Reconstruction import ReconstructionResult, Reconstructor
from .Settings import ASRSettings
from .SubstitutionModel import ModelParameters, SubstitutionModel, make_model
from .Tree import Tree

logger = logging.getLogger(__name__)


@dataclass(frozen = True)
class InferenceResult:
    """
    Everything a run produced. 'tree' is the tree the model was fitted on,
    which differs from the input tree if short branches were collapsed.
    """
    tree : Tree
    model : SubstitutionModel
    parameters : ModelParameters
    log_likelihood : float
    optimization : OptimizationResult
    reconstruction : ReconstructionResult


def infer_ancestral_states(tree : Tree,
                           settings : ASRSettings | None = None
                           ) -> InferenceResult:
    """
    Fit the model to the leaf observations of 'tree' and reconstruct every
    node.

    Args:
        tree (Tree): A validated tree with leaf observations.
        settings (ASRSettings, optional): Run configuration. Defaults to
                                          ASRSettings().
    Raises:
        SubstitutionModelError: on malformed frequencies.
        NumericalInstability: if the likelihood cannot be evaluated.
    Returns:
        InferenceResult: Fitted parameters and reconstructions.
    """
    if settings is None:
        settings = ASRSettings()

    if settings.collapse_threshold is not None:
        size = len(tree)
        tree = tree.collapse_short_branches(settings.collapse_threshold)
        logger.info("Collapsed %d internal branches shorter than %g",
                    size - len(tree), settings.collapse_threshold)

    model = make_model(settings.model, len(tree.alphabet))
    engine = LikelihoodEngine(tree, model, settings.workers)

    epsilon = settings.initial_epsilon if tree.has_zero_branches() else 0.0
    initial = model.initial_parameters(tree,
                                       frequencies = settings.frequencies,
                                       pseudocount = settings.pseudocount,
                                       scaling = settings.initial_scaling,
                                       epsilon = epsilon)
    logger.info("%s model on %d nodes (%d leaves), states %s", model.name,
                len(tree), len(tree.leaves()), list(tree.alphabet.states))

    optimization = Optimizer(engine, settings).optimize(initial)
    reconstruction = Reconstructor(engine).reconstruct(
        optimization.parameters, settings.methods)

    return InferenceResult(tree, model, optimization.parameters,
                           optimization.log_likelihood, optimization,
                           reconstruction)
