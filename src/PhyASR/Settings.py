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
Last Edit : 3/11/25
First Included in Version : 1.0.0
Docs   - [x]
Tests  - [x]
Design - [x]

Run configuration. Module level constants hold the defaults; ASRSettings
bundles one run's choices and checks them before any work starts.
"""

from __future__ import annotations
from dataclasses import dataclass, replace
import math
from typing import Iterable


########################
### MODULE CONSTANTS ###
########################

## --- substitution model ---
_MODEL = "F81"
_PSEUDOCOUNT = 1.0

## --- prediction methods ---
MARGINAL = "marginal"
MAP = "max_posteriori"
JOINT = "joint"
MPPA = "marginal_approx"
METHODS = (MARGINAL, MAP, JOINT, MPPA)
DEFAULT_METHODS = (MARGINAL, JOINT)

## --- scaling factor bracket (multiplies every branch length) ---
_SCALE_LOW = 1e-3
_SCALE_HIGH = 1e3

## --- epsilon bracket (stand-in length for zero length branches) ---
_EPSILON_LOW = 1e-9
_EPSILON_HIGH = 1e-2
_INITIAL_EPSILON = 1e-6

## --- convergence ---
_LINE_TOL = 1e-7            # bracket width, in log space
_REL_TOL = 1e-6             # relative log likelihood gain between passes
_MAX_LINE_ITERATIONS = 200
_MAX_PASSES = 50

#########################
#### EXCEPTION CLASS ####
#########################

class SettingsError(Exception):
    """
    Raised when a run configuration is inconsistent (inverted brackets,
    non-positive tolerances, unknown prediction methods, and so on).
    """
    def __init__(self, message : str = "Invalid settings") -> None:
        self.message = message
        super().__init__(self.message)

##################
#### SETTINGS ####
##################

@dataclass(frozen = True)
class ASRSettings:
    """
    Configuration of one inference run.

    model                : "F81" or "JC"
    methods              : any of METHODS
    scaling              : optimize the branch scaling factor
    optimize_epsilon     : optimize epsilon (only when zero length branches
                           exist); otherwise initial_epsilon is used as is
    optimize_frequencies : include F81 frequencies in the refinement step
    refine               : polish the line search result with L-BFGS-B
    frequencies          : fixed equilibrium frequencies (skip estimation)
    pseudocount          : Laplace pseudocount for frequency estimation
    workers              : threads for the post-order pass
    collapse_threshold   : collapse internal branches shorter than this
    """

    model : str = _MODEL
    methods : tuple[str, ...] = DEFAULT_METHODS
    scaling : bool = True
    optimize_epsilon : bool = True
    optimize_frequencies : bool = False
    refine : bool = True
    scale_low : float = _SCALE_LOW
    scale_high : float = _SCALE_HIGH
    epsilon_low : float = _EPSILON_LOW
    epsilon_high : float = _EPSILON_HIGH
    initial_scaling : float = 1.0
    initial_epsilon : float = _INITIAL_EPSILON
    line_tol : float = _LINE_TOL
    rel_tol : float = _REL_TOL
    max_line_iterations : int = _MAX_LINE_ITERATIONS
    max_passes : int = _MAX_PASSES
    frequencies : tuple[float, ...] | None = None
    pseudocount : float = _PSEUDOCOUNT
    workers : int = 1
    collapse_threshold : float | None = None

    def __post_init__(self) -> None:
        if isinstance(self.methods, str):
            object.__setattr__(self, "methods", (self.methods,))
        else:
            object.__setattr__(self, "methods", tuple(self.methods))
        if self.frequencies is not None:
            object.__setattr__(self, "frequencies",
                               tuple(float(f) for f in self.frequencies))
        self.validate()

    def validate(self) -> None:
        """
        Check the configuration for consistency.

        Raises:
            SettingsError: describing the first problem found.
        Args:
            N/A
        Returns:
            N/A
        """
        if self.model.upper() not in ("F81", "JC"):
            raise SettingsError(f"Model must be either JC or F81, not \
                                  {self.model}")
        if not self.methods:
            raise SettingsError("At least one prediction method is required")
        unknown = [m for m in self.methods if m not in METHODS]
        if unknown:
            raise SettingsError(f"Unknown prediction methods {unknown}; \
                                  choose from {list(METHODS)}")

        _check_bracket("scaling", self.scale_low, self.scale_high,
                       self.initial_scaling)
        _check_bracket("epsilon", self.epsilon_low, self.epsilon_high,
                       self.initial_epsilon)

        for name in ("line_tol", "rel_tol"):
            value = getattr(self, name)
            if not math.isfinite(value) or value <= 0:
                raise SettingsError(f"{name} must be positive, got {value}")
        for name in ("max_line_iterations", "max_passes", "workers"):
            value = getattr(self, name)
            if not isinstance(value, int) or value < 1:
                raise SettingsError(f"{name} must be a positive integer, got \
                                      {value}")
        if not math.isfinite(self.pseudocount) or self.pseudocount < 0:
            raise SettingsError(f"pseudocount must be non-negative, got \
                                  {self.pseudocount}")
        if self.collapse_threshold is not None and \
            (not math.isfinite(self.collapse_threshold)
             or self.collapse_threshold < 0):
            raise SettingsError(f"collapse_threshold must be non-negative, \
                                  got {self.collapse_threshold}")

    def wants(self, method : str) -> bool:
        """
        Returns:
            bool: True if 'method' is one of the requested prediction methods.
        """
        return method in self.methods

    def with_methods(self, methods : Iterable[str]) -> ASRSettings:
        """
        Copy of these settings with other prediction methods.
        """
        return replace(self, methods = tuple(methods))

##########################
#### HELPER FUNCTIONS ####
##########################

def _check_bracket(name : str, low : float, high : float,
                   initial : float) -> None:
    if not (math.isfinite(low) and math.isfinite(high)) or low <= 0 \
        or high <= low:
        raise SettingsError(f"The {name} bracket must satisfy \
                              0 < low < high, got [{low}, {high}]")
    if not low <= initial <= high:
        raise SettingsError(f"Initial {name} {initial} is outside of its \
                              bracket [{low}, {high}]")
