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
Last Stable Edit : 4/12/25
First Included in Version : 1.0.0
Approved for Release : Yes. Closed forms checked against e^(Q*t).
"""

from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
import math
from typing import Iterable
import numpy as np

from .Tree import Tree, check_branch_length

"""
SOURCES:

1) Felsenstein 1981 (F81)

2) Jukes and Cantor 1969 (JC)

3) Ishikawa et al. 2019, "A fast likelihood method to reconstruct and
   visualize ancestral scenarios" (PastML): scaling factor and epsilon for
   zero length branches.
"""

#########################
#### EXCEPTION CLASS ####
#########################

class SubstitutionModelError(Exception):
    """
    Class of exception that gets raised when there is an error in the
    formulation of a substitution model, whether it be inputs that don't
    adhere to requirements or there is an issue in computation.
    """
    def __init__(self, message = "Unknown substitution model error") -> None:
        self.message = message
        super().__init__(self.message)

##########################
#### MODEL PARAMETERS ####
##########################

@dataclass(frozen = True)
class ModelParameters:
    """
    Immutable parameter vector of a model. The optimizer derives new
    instances with 'replace' and hands them to the likelihood engine by value.

    frequencies : equilibrium state frequencies (positive, sum to 1)
    scaling     : global factor applied to every branch length
    epsilon     : stand-in length for branches of length exactly 0
    """

    frequencies : tuple[float, ...]
    scaling : float = 1.0
    epsilon : float = 0.0

    def __post_init__(self) -> None:
        freqs = np.asarray(self.frequencies, dtype = np.double).ravel()

        if len(freqs) < 2:
            raise SubstitutionModelError("At least 2 equilibrium frequencies \
                                          are required")
        if not np.all(np.isfinite(freqs)) or np.any(freqs <= 0):
            raise SubstitutionModelError(f"Equilibrium frequencies must be \
                                           strictly positive, got {freqs}")
        if abs(freqs.sum() - 1) > 1e-6:
            raise SubstitutionModelError(f"Equilibrium frequencies must sum \
                                           to 1, got {freqs.sum()}")
        if not math.isfinite(self.scaling) or self.scaling <= 0:
            raise SubstitutionModelError(f"Scaling factor must be positive, \
                                           got {self.scaling}")
        if not math.isfinite(self.epsilon) or self.epsilon < 0:
            raise SubstitutionModelError(f"Epsilon must be non-negative, got \
                                           {self.epsilon}")

        freqs = freqs / freqs.sum()
        object.__setattr__(self, "frequencies", tuple(float(f) for f in freqs))
        object.__setattr__(self, "scaling", float(self.scaling))
        object.__setattr__(self, "epsilon", float(self.epsilon))

    @property
    def pi(self) -> np.ndarray:
        """
        Returns:
            np.ndarray: The equilibrium frequencies as a numpy vector.
        """
        return np.array(self.frequencies, dtype = np.double)

    @property
    def states(self) -> int:
        return len(self.frequencies)

    def with_values(self, **changes) -> ModelParameters:
        """
        Copy of these parameters with some fields changed.
        """
        return replace(self, **changes)

    def as_dict(self) -> dict[str, object]:
        return {"frequencies" : list(self.frequencies),
                "scaling" : self.scaling,
                "epsilon" : self.epsilon}

##########################
#### HELPER FUNCTIONS ####
##########################

def estimate_frequencies(counts : Iterable[float],
                         pseudocount : float = 1.0) -> np.ndarray:
    """
    Laplace smoothed equilibrium frequencies from leaf state counts:
    pi_i = (count_i + pseudocount) / (N + K * pseudocount).

    Raises:
        SubstitutionModelError: if the pseudocount is negative, or if it is 0
                                and some state is never observed (a zero
                                frequency would later produce log(0)).
    Args:
        counts (Iterable[float]): Per state (possibly fractional) counts.
        pseudocount (float, optional): Added to each count. Defaults to 1.
    Returns:
        np.ndarray: Frequencies, strictly positive, summing to 1.
    """
    counts = np.asarray(list(counts), dtype = np.double)
    if pseudocount < 0 or not math.isfinite(pseudocount):
        raise SubstitutionModelError(f"Pseudocount must be non-negative, got \
                                       {pseudocount}")
    smoothed = counts + pseudocount
    if np.any(smoothed <= 0):
        raise SubstitutionModelError("Some states have no observations; use a \
                                      positive pseudocount")
    return smoothed / smoothed.sum()

#############################
#### SUBSTITUTION MODELS ####
#############################

class SubstitutionModel(ABC):
    """
    Superclass of the equal-rates substitution models. The set of models is
    closed: F81 and its equal-frequency special case JC. Both have a closed
    form for e^(Q*t), so no matrix exponentiation is needed.
    """

    name : str = "ABSTRACT"

    # Whether equilibrium frequencies come from the data (and may be
    # optimized), or are fixed by the model.
    frequencies_from_data : bool = True

    def __init__(self, states : int) -> None:
        """
        Args:
            states (int): Number of character states, K. Must be at least 2.
        Raises:
            SubstitutionModelError: if K < 2.
        """
        if states < 2:
            raise SubstitutionModelError(f"A model needs at least 2 states, \
                                           got {states}")
        self.states : int = states

    def state_count(self) -> int:
        """
        Get the number of states for this substitution model.

        Returns:
            int: Number of states.
        """
        return self.states

    def initial_parameters(self,
                           tree : Tree,
                           frequencies : Iterable[float] | None = None,
                           pseudocount : float = 1.0,
                           scaling : float = 1.0,
                           epsilon : float = 0.0) -> ModelParameters:
        """
        Build the starting parameters for a tree. Explicit 'frequencies' win
        over frequencies estimated from the leaves.

        Args:
            tree (Tree): Tree with leaf observations.
            frequencies (Iterable[float], optional): Fixed frequencies.
            pseudocount (float, optional): Laplace pseudocount. Defaults to 1.
            scaling (float, optional): Starting scale factor. Defaults to 1.
            epsilon (float, optional): Starting epsilon. Defaults to 0.
        Returns:
            ModelParameters: Starting parameters.
        """
        if frequencies is not None:
            freqs = np.asarray(list(frequencies), dtype = np.double)
        else:
            freqs = estimate_frequencies(tree.state_counts(), pseudocount)
        if len(freqs) != self.states:
            raise SubstitutionModelError(f"Expected {self.states} frequencies, \
                                           got {len(freqs)}")
        return ModelParameters(tuple(freqs), scaling, epsilon)

    def mu(self, params : ModelParameters) -> float:
        """
        Rate normalization, chosen so that one substitution is expected per
        unit of branch length at equilibrium: mu = 1 / (1 - SUM pi_i^2).
        """
        pi = params.pi
        return 1.0 / (1.0 - float(np.dot(pi, pi)))

    def getQ(self, params : ModelParameters) -> np.ndarray:
        """
        The normalized instantaneous rate matrix. Only used for checking the
        closed forms; likelihood code uses transition_matrix.

        Returns:
            np.ndarray: K x K rate matrix, rows summing to 0.
        """
        pi = params.pi
        Q = np.tile(pi, (self.states, 1)) * self.mu(params)
        np.fill_diagonal(Q, 0)
        np.fill_diagonal(Q, -Q.sum(axis = 1))
        return Q

    @abstractmethod
    def transition_matrix(self, t : float,
                          params : ModelParameters) -> np.ndarray:
        """
        Compute P(t) = e^(Q * scaling * t).

        Args:
            t (float): Branch length, >= 0.
            params (ModelParameters): Current parameters.
        Returns:
            np.ndarray: K x K matrix; P[i][j] = Pr(end in j | start in i).
        """
        pass

    def log_transition_matrix(self, t : float,
                              params : ModelParameters) -> np.ndarray:
        """
        Natural log of P(t). Zero entries (possible only at t = 0) become
        -inf.
        """
        with np.errstate(divide = "ignore"):
            return np.log(self.transition_matrix(t, params))


class F81(SubstitutionModel):
    """
    Formulated by Felsenstein in 1981, this substitution model assumes that
    all equilibrium frequencies are free, but all exchange rates are equal.

    P[i][j](t) = pi_j + (delta_ij - pi_j) * e^(-mu * scaling * t)
    """

    name = "F81"
    frequencies_from_data = True

    def transition_matrix(self, t : float,
                          params : ModelParameters) -> np.ndarray:
        """
        Closed form of e^(Q*t) for F81.

        Args:
            t (float): Branch length, >= 0.
            params (ModelParameters): Current parameters.
        Raises:
            InvalidBranchLength: if t is negative or non-finite.
            SubstitutionModelError: if the parameter vector does not match K.
        Returns:
            np.ndarray: e^(Q * scaling * t)
        """
        t = check_branch_length(t, "(transition matrix)")
        if params.states != self.states:
            raise SubstitutionModelError(f"Model has {self.states} states but \
                                           parameters have {params.states}")
        decay = math.exp(-self.mu(params) * params.scaling * t)

        Pt = np.tile(params.pi * (1.0 - decay), (self.states, 1))
        Pt[np.diag_indices(self.states)] += decay
        return Pt


class JC(F81):
    """
    The Jukes Cantor model is the simplest of all time reversible models,
    in which all parameters (exchange rates, equilibrium frequencies) are
    assumed to be equal. The frequencies are never estimated from data.
    """

    name = "JC"
    frequencies_from_data = False

    def initial_parameters(self,
                           tree : Tree,
                           frequencies : Iterable[float] | None = None,
                           pseudocount : float = 1.0,
                           scaling : float = 1.0,
                           epsilon : float = 0.0) -> ModelParameters:
        uniform = tuple([1.0 / self.states] * self.states)
        return ModelParameters(uniform, scaling, epsilon)

########################
#### MODEL FACTORY  ####
########################

_MODELS : dict[str, type[SubstitutionModel]] = {"F81" : F81, "JC" : JC}

def make_model(name : str, states : int) -> SubstitutionModel:
    """
    Instantiate one of the built-in models by name.

    Raises:
        SubstitutionModelError: if the name is not "F81" or "JC".
    Args:
        name (str): Model name, case insensitive.
        states (int): Number of character states.
    Returns:
        SubstitutionModel: The model.
    """
    try:
        return _MODELS[name.upper()](states)
    except KeyError:
        raise SubstitutionModelError(f"Model must be one of \
                                       {sorted(_MODELS)}, not {name}")
