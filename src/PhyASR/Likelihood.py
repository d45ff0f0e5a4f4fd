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

Felsenstein's pruning algorithm over the arena tree. A post-order pass
computes, for every node and every hypothetical state at that node, the
probability of the observed leaves below it. Each internal vector is divided
by its largest entry and the log of that factor is kept aside, so deep trees
never underflow; the factors are added back into the total log likelihood at
the root.
"""

from __future__ import annotations
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
import logging
import math
import numpy as np

from .SubstitutionModel import ModelParameters, SubstitutionModel
from .Traversal import LevelParallelTraversal, Traversal, TraversalOrder
from .Tree import Tree

logger = logging.getLogger(__name__)

#########################
#### EXCEPTION CLASS ####
#########################

class NumericalInstability(Exception):
    """
    Raised when a likelihood evaluation produces a zero partial likelihood
    vector, or a log likelihood that is -inf or NaN, even after rescaling.
    Results would be meaningless, so the run is aborted.
    """
    def __init__(self, message : str = "Numerical instability in likelihood \
                                        computation") -> None:
        self.message = message
        super().__init__(self.message)

###############################
#### PARTIAL LIKELIHOODS   ####
###############################

@dataclass
class PartialLikelihoods:
    """
    Everything the post-order pass produced for one parameter vector. It is
    the cache that reconstruction reads top-down; nothing downstream writes
    to it.

    partials    : N x K, rescaled conditional likelihoods of each subtree
    messages    : N x K, row c is P_c @ partials[c], the contribution of
                  node c's subtree to its parent for each parent state
    log_scales  : N, log of the factor divided out of each node's vector
    transitions : per node transition matrix of the branch above it
                  (None for the root)
    """

    params : ModelParameters
    partials : np.ndarray
    messages : np.ndarray
    log_scales : np.ndarray
    transitions : list[np.ndarray | None]
    log_likelihood : float

    def vector(self, index : int) -> np.ndarray:
        """
        Copy of the (rescaled) conditional likelihood vector of a node.
        """
        return self.partials[index].copy()

##########################
#### LIKELIHOOD ENGINE ###
##########################

class LikelihoodEngine:
    """
    Computes the data likelihood of a fixed tree under a substitution model.
    Parameters are passed in with each call and never stored, so one engine
    can serve the optimizer and the reconstruction alike.
    """

    def __init__(self,
                 tree : Tree,
                 model : SubstitutionModel,
                 workers : int = 1) -> None:
        """
        Args:
            tree (Tree): A validated tree with leaf observations.
            model (SubstitutionModel): Model with as many states as the tree's
                                       alphabet.
            workers (int, optional): Threads for the post-order pass. With 1
                                     (default), the pass is sequential.
        Raises:
            ValueError: if the model and alphabet sizes differ, or workers < 1.
        """
        if model.state_count() != len(tree.alphabet):
            raise ValueError(f"Model has {model.state_count()} states but the \
                               tree alphabet has {len(tree.alphabet)}")
        if workers < 1:
            raise ValueError(f"workers must be at least 1, got {workers}")

        self.tree : Tree = tree
        self.model : SubstitutionModel = model
        self.workers : int = workers
        self.evaluations : int = 0

        # Leaf indicator vectors never change; build them once.
        self._leaf_vectors : dict[int, np.ndarray] = {
            i : tree.observation_vector(i) for i in tree.leaves()}
        self._levels = LevelParallelTraversal(tree, bottom_up = True)

    def effective_length(self, index : int, params : ModelParameters) -> float:
        """
        Length used for the branch above a node: its tree length, or epsilon
        if that length is exactly 0. Scaling is applied by the model.
        """
        t = self.tree.branch_length(index)
        return t if t > 0 else params.epsilon

    def transition_matrices(self,
                            params : ModelParameters) -> list[np.ndarray | None]:
        """
        P(t) for the branch above every node (None for the root).
        """
        matrices : list[np.ndarray | None] = [None] * len(self.tree)
        for index in range(len(self.tree)):
            if index != self.tree.root:
                matrices[index] = self.model.transition_matrix(
                    self.effective_length(index, params), params)
        return matrices

    def compute(self, params : ModelParameters) -> PartialLikelihoods:
        """
        Run the post-order pass and aggregate at the root.

        Raises:
            NumericalInstability: if some node's vector is all zeros or the
                                  log likelihood is not finite.
        Args:
            params (ModelParameters): Parameters for this evaluation.
        Returns:
            PartialLikelihoods: Cached per node vectors and the total log
                                likelihood.
        """
        n = len(self.tree)
        k = self.model.state_count()
        partials = np.zeros((n, k), dtype = np.double)
        messages = np.ones((n, k), dtype = np.double)
        log_scales = np.zeros(n, dtype = np.double)
        transitions = self.transition_matrices(params)

        def visit(index : int) -> None:
            self._visit(index, partials, messages, log_scales, transitions)

        if self.workers == 1 or self._levels.max_parallelism == 1:
            for index in Traversal(self.tree, TraversalOrder.POST_ORDER):
                visit(index)
        else:
            with ThreadPoolExecutor(max_workers = self.workers) as pool:
                for depth, nodes in self._levels:
                    logger.debug("Evaluating level %d (%d nodes)", depth,
                                 len(nodes))
                    if len(nodes) == 1:
                        visit(nodes[0])
                    else:
                        # list() waits for the whole level and re-raises errors
                        list(pool.map(visit, nodes))

        root = self.tree.root
        total = float(np.dot(params.pi, partials[root]))
        log_lik = math.log(total) if total > 0 else -math.inf
        log_lik += float(log_scales.sum())

        if not math.isfinite(log_lik):
            raise NumericalInstability(f"Log likelihood evaluated to {log_lik} \
                                         at root {self.tree.node(root).label()} \
                                         with parameters {params.as_dict()}")

        self.evaluations += 1
        return PartialLikelihoods(params, partials, messages, log_scales,
                                  transitions, log_lik)

    def log_likelihood(self, params : ModelParameters) -> float:
        """
        Total log likelihood of the leaf data given the parameters.

        Args:
            params (ModelParameters): Parameters for this evaluation.
        Returns:
            float: ln P(data | tree, params).
        """
        return self.compute(params).log_likelihood

    def _visit(self,
               index : int,
               partials : np.ndarray,
               messages : np.ndarray,
               log_scales : np.ndarray,
               transitions : list[np.ndarray | None]) -> None:
        """
        Fill in the row of one node. All children rows must already be final.
        Each row is written exactly once per evaluation.
        """
        node = self.tree.node(index)

        if node.is_leaf:
            partials[index] = self._leaf_vectors[index]
        else:
            vec = np.ones(self.model.state_count(), dtype = np.double)
            for child in node.children:
                vec *= messages[child]

            largest = vec.max()
            if not largest > 0 or not math.isfinite(largest):
                raise NumericalInstability(f"Partial likelihood vector of node \
                                             {node.label()} is {vec}; the \
                                             observations below it are \
                                             incompatible with the branch \
                                             lengths (a zero length branch \
                                             with epsilon 0?)")
            partials[index] = vec / largest
            log_scales[index] = math.log(largest)

        if transitions[index] is not None:
            messages[index] = transitions[index] @ partials[index]
