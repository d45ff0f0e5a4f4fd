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

Ancestral state reconstruction from a fitted model.

Marginal posteriors combine the post-order partials (the data below a node)
with pre-order outside vectors (the data everywhere else). MAP and MPPA are
derived from the marginals. The joint reconstruction is a Viterbi pass in
log space that finds the single most likely assignment of states to all
nodes at once.
"""

from __future__ import annotations
from dataclasses import dataclass
import logging
import math
from typing import Iterable
import numpy as np

from .Alphabet import StateAlphabet
from .Likelihood import LikelihoodEngine, NumericalInstability, \
                        PartialLikelihoods
from .Settings import DEFAULT_METHODS, JOINT, MAP, MARGINAL, METHODS, MPPA, \
                      SettingsError
from .SubstitutionModel import ModelParameters
from .Traversal import Traversal, TraversalOrder
from .Tree import Observation, Tree

logger = logging.getLogger(__name__)

#################
#### RESULTS ####
#################

@dataclass(frozen = True)
class NodePosterior:
    """
    Reconstruction of one node. Fields of methods that were not requested
    are None.

    marginal    : posterior probability of each state (sums to 1)
    map_state   : argmax of the marginal vector
    joint_state : state of the node in the most likely joint assignment
    mppa_states : states kept by the Brier score selection, ascending
    observation : the leaf observation, None for internal nodes
    """

    index : int
    name : str | None
    marginal : np.ndarray | None
    map_state : int | None
    joint_state : int | None
    mppa_states : tuple[int, ...] | None
    observation : Observation = None


class ReconstructionResult:
    """
    Per node reconstructions of a tree, indexed like the tree's nodes.
    """

    def __init__(self,
                 tree : Tree,
                 params : ModelParameters,
                 methods : tuple[str, ...],
                 posteriors : list[NodePosterior],
                 log_likelihood : float) -> None:
        self.tree : Tree = tree
        self.params : ModelParameters = params
        self.methods : tuple[str, ...] = methods
        self.posteriors : tuple[NodePosterior, ...] = tuple(posteriors)
        self.log_likelihood : float = log_likelihood

    @property
    def alphabet(self) -> StateAlphabet:
        return self.tree.alphabet

    def __len__(self) -> int:
        return len(self.posteriors)

    def __getitem__(self, index : int) -> NodePosterior:
        return self.posteriors[index]

    def by_name(self) -> dict[str, NodePosterior]:
        """
        Posteriors of the named nodes, keyed by name.
        """
        return {post.name : post for post in self.posteriors
                if post.name is not None}

    def marginal_matrix(self) -> np.ndarray:
        """
        Marginal posteriors of all nodes as one N x K array (row = node
        index).

        Raises:
            ValueError: if no marginal based method was requested.
        """
        if self.posteriors and self.posteriors[0].marginal is None:
            raise ValueError("Marginal posteriors were not computed; request \
                              one of 'marginal', 'max_posteriori' or \
                              'marginal_approx'")
        return np.vstack([post.marginal for post in self.posteriors])

    def states(self, method : str) -> list[int | tuple[int, ...]]:
        """
        Predicted state(s) of every node, indexed by node.

        MARGINAL and MAP both give the most probable marginal state, JOINT
        the joint assignment, and MPPA a tuple of states per node.

        Raises:
            ValueError: if the method was not part of this reconstruction.
        """
        if method in (MARGINAL, MAP):
            field = "map_state"
        elif method == JOINT:
            field = "joint_state"
        elif method == MPPA:
            field = "mppa_states"
        else:
            raise ValueError(f"Unknown prediction method {method}")

        values = [getattr(post, field) for post in self.posteriors]
        if any(value is None for value in values):
            raise ValueError(f"Method {method} was not part of this \
                               reconstruction ({list(self.methods)})")
        return values

    def state_names(self, method : str) -> dict[str, str | tuple[str, ...]]:
        """
        Like states(), but keyed by node name (named nodes only) and with
        state names in place of indices.
        """
        alphabet = self.alphabet
        named = {}
        for post, value in zip(self.posteriors, self.states(method)):
            if post.name is None:
                continue
            if isinstance(value, tuple):
                named[post.name] = tuple(alphabet.name(s) for s in value)
            else:
                named[post.name] = alphabet.name(value)
        return named

##########################
#### HELPER FUNCTIONS ####
##########################

def mppa_selection(probabilities : np.ndarray) -> tuple[int, ...]:
    """
    Marginal posterior probabilities approximation. States are ranked by
    probability (ties to the lower index); the top k are predicted with
    probability 1/k each, and the k with the smallest Brier score

        SUM_{i <= k} (1/k - p_i)^2 + SUM_{i > k} p_i^2

    wins (ties to the smaller k).

    Args:
        probabilities (np.ndarray): A marginal posterior vector.
    Returns:
        tuple[int, ...]: The chosen states, in ascending index order.
    """
    order = sorted(range(len(probabilities)),
                   key = lambda i : (-probabilities[i], i))
    ranked = np.asarray([probabilities[i] for i in order], dtype = np.double)

    best_k = 1
    best_score = math.inf
    for k in range(1, len(ranked) + 1):
        score = float(np.sum((1.0 / k - ranked[:k]) ** 2) +
                      np.sum(ranked[k:] ** 2))
        if score < best_score:
            best_k, best_score = k, score

    return tuple(sorted(order[:best_k]))

def _rescaled(vec : np.ndarray, what : str) -> np.ndarray:
    largest = vec.max()
    if not largest > 0 or not math.isfinite(largest):
        raise NumericalInstability(f"The {what} vector is {vec}")
    return vec / largest

#######################
#### RECONSTRUCTOR ####
#######################

class Reconstructor:
    """
    Computes ancestral state reconstructions with a likelihood engine.
    Every call re-runs the post-order pass for the given parameters and only
    reads the resulting cache.
    """

    def __init__(self, engine : LikelihoodEngine) -> None:
        """
        Args:
            engine (LikelihoodEngine): Engine bound to the tree and model.
        """
        self.engine : LikelihoodEngine = engine
        self.tree : Tree = engine.tree

    def reconstruct(self,
                    params : ModelParameters,
                    methods : Iterable[str] = DEFAULT_METHODS
                    ) -> ReconstructionResult:
        """
        Reconstruct every node with the requested prediction methods.

        Raises:
            SettingsError: on an unknown method name.
            NumericalInstability: if a posterior cannot be normalized.
        Args:
            params (ModelParameters): Fitted parameters.
            methods (Iterable[str], optional): Any of METHODS. Defaults to
                                               marginal and joint.
        Returns:
            ReconstructionResult: Per node posteriors.
        """
        methods = (methods,) if isinstance(methods, str) else tuple(methods)
        unknown = [m for m in methods if m not in METHODS]
        if unknown:
            raise SettingsError(f"Unknown prediction methods {unknown}; \
                                  choose from {list(METHODS)}")

        cache = self.engine.compute(params)
        n = len(self.tree)

        marginals : np.ndarray | None = None
        if any(m in methods for m in (MARGINAL, MAP, MPPA)):
            marginals = self.marginal_posteriors(cache)
        joint : list[int] | None = None
        if JOINT in methods:
            joint = self.joint_states(cache)

        posteriors = []
        for index in range(n):
            node = self.tree.node(index)
            marginal = marginals[index] if marginals is not None else None
            posteriors.append(NodePosterior(
                index,
                node.name,
                marginal,
                int(np.argmax(marginal)) if marginal is not None else None,
                joint[index] if joint is not None else None,
                mppa_selection(marginal) if MPPA in methods else None,
                node.observation))

        logger.info("Reconstructed %d nodes with %s (log likelihood %.10f)",
                    n, list(methods), cache.log_likelihood)
        return ReconstructionResult(self.tree, params, methods, posteriors,
                                    cache.log_likelihood)

    def outside_vectors(self, cache : PartialLikelihoods) -> np.ndarray:
        """
        Pre-order pass. Row i is proportional to the probability of all
        leaves outside of i's subtree jointly with i being in each state.
        The root's row is pi; for child c of p,

            outside_c[j] = SUM_i outside_p[i] * P_c(i, j) * PROD_s down_s(i)

        over the siblings s of c, where down_s is the message of s to p.
        Rows are rescaled by their maximum.
        """
        tree = self.tree
        outside = np.zeros_like(cache.partials)
        outside[tree.root] = _rescaled(cache.params.pi, "root prior")

        for parent in Traversal(tree, TraversalOrder.PRE_ORDER):
            children = tree.children(parent)
            if not children:
                continue

            # exclusive products of the sibling messages
            k = outside.shape[1]
            prefix = np.ones((len(children) + 1, k), dtype = np.double)
            suffix = np.ones((len(children) + 1, k), dtype = np.double)
            for pos, child in enumerate(children):
                prefix[pos + 1] = prefix[pos] * cache.messages[child]
            for pos in range(len(children) - 1, -1, -1):
                suffix[pos] = suffix[pos + 1] * cache.messages[children[pos]]

            for pos, child in enumerate(children):
                context = outside[parent] * prefix[pos] * suffix[pos + 1]
                outside[child] = _rescaled(
                    cache.transitions[child].T @ context,
                    f"outside likelihood of node {tree.node(child).label()}")

        return outside

    def marginal_posteriors(self, cache : PartialLikelihoods) -> np.ndarray:
        """
        N x K matrix of marginal posteriors, each row outside * partial
        normalized to sum to 1.

        Raises:
            NumericalInstability: if some row sums to 0.
        """
        joint = self.outside_vectors(cache) * cache.partials
        totals = joint.sum(axis = 1)
        bad = np.flatnonzero(~(totals > 0) | ~np.isfinite(totals))
        if len(bad):
            raise NumericalInstability(f"Marginal posterior of node \
                                         {self.tree.node(int(bad[0])).label()} \
                                         could not be normalized")
        return joint / totals[:, None]

    def joint_states(self, cache : PartialLikelihoods) -> list[int]:
        """
        Most likely joint assignment (Viterbi). Post-order, each node gets
        the best log likelihood of its subtree for every state, and each
        child remembers its best state for every parent state. The root
        takes argmax(log pi + best) and the choices are followed down.
        Ties go to the lowest state index.

        Returns:
            list[int]: State index of every node.
        """
        tree = self.tree
        model = self.engine.model
        params = cache.params
        n, k = cache.partials.shape
        best = np.zeros((n, k), dtype = np.double)
        choice = np.zeros((n, k), dtype = int)

        for index in Traversal(tree, TraversalOrder.POST_ORDER):
            node = tree.node(index)
            if node.is_leaf:
                with np.errstate(divide = "ignore"):
                    best[index] = np.log(tree.observation_vector(index))
                continue
            for child in node.children:
                log_P = model.log_transition_matrix(
                    self.engine.effective_length(child, params), params)
                scores = log_P + best[child]
                choice[child] = np.argmax(scores, axis = 1)
                best[index] += scores.max(axis = 1)

        root_scores = np.log(params.pi) + best[tree.root]

        if not np.isfinite(root_scores.max()):
            raise NumericalInstability("No joint state assignment has a \
                                        positive probability")

        states = [0] * n
        states[tree.root] = int(np.argmax(root_scores))
        for index in tree.preorder():
            for child in tree.children(index):
                states[child] = int(choice[child][states[index]])
        return states
