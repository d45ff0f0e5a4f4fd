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

Maximum likelihood estimation of the free model parameters. Each free
scalar is searched with a bounded golden-section search in log space, and
the scalars are cycled (coordinate ascent) until a full pass no longer
improves the log likelihood. The result may then be polished with scipy's
L-BFGS-B, which can also move the F81 equilibrium frequencies.

Every search remembers the best point it has evaluated, so a larger
iteration cap can never produce a worse answer. Reaching a cap is
not an error: the best point is returned, flagged as not converged, and an
OptimizerNonConvergence warning is issued.
"""

from __future__ import annotations
from dataclasses import dataclass
import logging
import math
from typing import Callable
import warnings
import numpy as np
from scipy.optimize import minimize
from scipy.special import softmax

from .Likelihood import LikelihoodEngine
from .Settings import ASRSettings
from .SubstitutionModel import ModelParameters

logger = logging.getLogger(__name__)

########################
### MODULE CONSTANTS ###
########################

INVPHI = (math.sqrt(5) - 1) / 2     # 1 / phi
INVPHI2 = (3 - math.sqrt(5)) / 2    # 1 / phi^2

# Logit bounds for frequencies during refinement; keeps every frequency
# strictly positive.
_LOGIT_BOUND = 20.0

#######################
#### WARNING CLASS ####
#######################

class OptimizerNonConvergence(UserWarning):
    """
    Issued (never raised) when an iteration cap is reached before the
    convergence tolerance. The accompanying result is still the best point
    found and remains usable, with lower confidence.
    """
    pass

#################
#### RESULTS ####
#################

@dataclass(frozen = True)
class LineSearchResult:
    """
    Outcome of a golden-section search: the best point evaluated, its value,
    whether the bracket shrank below tolerance, and the work done.
    """
    x : float
    value : float
    converged : bool
    iterations : int
    evaluations : int

@dataclass(frozen = True)
class OptimizationResult:
    """
    Tagged result of an optimization run. 'converged' is False when an
    iteration cap was exhausted; 'parameters' is then the best point found.
    """
    parameters : ModelParameters
    log_likelihood : float
    initial_log_likelihood : float
    converged : bool
    iterations : int
    evaluations : int

################################
#### GOLDEN SECTION SEARCH  ####
################################

def golden_section_search(f : Callable[[float], float],
                          low : float,
                          high : float,
                          tol : float = 1e-7,
                          max_iter : int = 200) -> LineSearchResult:
    """
    Maximize a one dimensional function on [low, high].

    Four points a < c < d < b are maintained, with c and d placed at the
    golden ratio inside [a, b]. Each iteration drops the outer segment next
    to the worse interior point, shrinking the bracket by 1/phi and costing
    one new evaluation. Ties keep the left segment, so the search is fully
    deterministic.

    Args:
        f (Callable[[float], float]): Function to maximize.
        low (float): Left end of the bracket.
        high (float): Right end of the bracket.
        tol (float, optional): Stop once b - a < tol. Defaults to 1e-7.
        max_iter (int, optional): Iteration cap. Defaults to 200.
    Returns:
        LineSearchResult: The best point evaluated. 'converged' is False if
                          the cap was reached first.
    """
    if not high > low:
        raise ValueError(f"Empty bracket [{low}, {high}]")

    a, b = low, high
    c = a + INVPHI2 * (b - a)
    d = a + INVPHI * (b - a)
    fc, fd = f(c), f(d)
    evaluations = 2

    best_x, best_value = (c, fc) if fc >= fd else (d, fd)
    iterations = 0

    while b - a >= tol and iterations < max_iter:
        iterations += 1
        if fc >= fd:
            b, d, fd = d, c, fc
            c = a + INVPHI2 * (b - a)
            fc = f(c)
            x, value = c, fc
        else:
            a, c, fc = c, d, fd
            d = a + INVPHI * (b - a)
            fd = f(d)
            x, value = d, fd
        evaluations += 1

        if value > best_value:
            best_x, best_value = x, value

    return LineSearchResult(best_x, best_value, b - a < tol, iterations,
                            evaluations)

###################
#### OPTIMIZER ####
###################

class Optimizer:
    """
    Maximizes the log likelihood computed by a LikelihoodEngine over the
    free scalar parameters (scaling factor, epsilon) and, optionally, the
    F81 equilibrium frequencies.
    """

    def __init__(self, engine : LikelihoodEngine,
                 settings : ASRSettings | None = None) -> None:
        """
        Args:
            engine (LikelihoodEngine): The objective function.
            settings (ASRSettings, optional): Brackets, tolerances and caps.
                                              Defaults to ASRSettings().
        """
        self.engine : LikelihoodEngine = engine
        self.settings : ASRSettings = settings if settings is not None \
                                      else ASRSettings()

    def free_parameters(self) -> list[str]:
        """
        Names of the scalars that coordinate ascent will search. Epsilon is
        only free if the tree actually has zero length branches, since it has
        no effect otherwise.
        """
        free = []
        if self.settings.scaling:
            free.append("scaling")
        if self.settings.optimize_epsilon and \
            self.engine.tree.has_zero_branches():
            free.append("epsilon")
        return free

    def _bracket(self, name : str) -> tuple[float, float]:
        if name == "scaling":
            return self.settings.scale_low, self.settings.scale_high
        return self.settings.epsilon_low, self.settings.epsilon_high

    def _frequencies_free(self) -> bool:
        return self.settings.refine and self.settings.optimize_frequencies \
               and self.engine.model.frequencies_from_data

    def line_search(self, name : str,
                    params : ModelParameters) -> LineSearchResult:
        """
        Golden-section search over log(name), all other parameters fixed.

        Args:
            name (str): "scaling" or "epsilon".
            params (ModelParameters): Current parameters.
        Returns:
            LineSearchResult: Result in log space ('x' is the log value).
        """
        low, high = self._bracket(name)

        def objective(u : float) -> float:
            return self.engine.log_likelihood(
                params.with_values(**{name : math.exp(u)}))

        return golden_section_search(objective,
                                     math.log(low),
                                     math.log(high),
                                     self.settings.line_tol,
                                     self.settings.max_line_iterations)

    def optimize(self, initial : ModelParameters) -> OptimizationResult:
        """
        Run coordinate ascent (and refinement, if enabled) from 'initial'.

        Raises:
            NumericalInstability: if any likelihood evaluation fails.
        Args:
            initial (ModelParameters): Starting point.
        Returns:
            OptimizationResult: The best parameters found.
        """
        start_evals = self.engine.evaluations
        best_params = initial
        best = self.engine.log_likelihood(initial)
        initial_lnl = best
        free = self.free_parameters()
        converged = True
        iterations = 0

        logger.info("Initial log likelihood %.10f with %s", best,
                    initial.as_dict())
        if "scaling" in free:
            logger.info("Scaling factor can vary between %.10f and %.10f",
                        self.settings.scale_low, self.settings.scale_high)
        if "epsilon" in free:
            logger.info("Epsilon can vary between %.1e and %.1e",
                        self.settings.epsilon_low, self.settings.epsilon_high)

        for sweep in range(1, self.settings.max_passes + 1 if free else 1):
            previous = best
            sweep_converged = True

            for name in free:
                result = self.line_search(name, best_params)
                iterations += result.iterations
                sweep_converged = sweep_converged and result.converged
                if result.value > best:
                    best = result.value
                    best_params = best_params.with_values(
                        **{name : math.exp(result.x)})
                logger.debug("\tpass %3d\t%-8s\t%5.10f\t%.10g", sweep, name,
                             best, getattr(best_params, name))

            gain = (best - previous) / max(1.0, abs(best))
            if len(free) == 1 or gain < self.settings.rel_tol:
                converged = sweep_converged
                break
        else:
            if free:
                converged = False

        if self.settings.refine and (free or self._frequencies_free()):
            best_params, best, nit = self._refine(best_params, best, free)
            iterations += nit

        if not converged:
            warnings.warn(f"Parameter optimization reached its iteration cap \
                            before converging; keeping the best point found \
                            (log likelihood {best:.6f})",
                          OptimizerNonConvergence, stacklevel = 2)

        logger.info("Optimized log likelihood %.10f with %s", best,
                    best_params.as_dict())
        return OptimizationResult(best_params, best, initial_lnl, converged,
                                  iterations,
                                  self.engine.evaluations - start_evals)

    def _refine(self, params : ModelParameters, value : float,
                free : list[str]) -> tuple[ModelParameters, float, int]:
        """
        Polish a point with L-BFGS-B (numerical gradients). Scalars are
        searched in log space within their brackets; frequencies through a
        softmax of bounded logits. The refined point is only kept if it
        beats 'value'.

        Returns:
            tuple[ModelParameters, float, int]: best parameters, their log
                                                likelihood, iterations used.
        """
        with_freqs = self._frequencies_free()
        k = params.states

        x0 : list[float] = []
        bounds : list[tuple[float, float]] = []
        for name in free:
            low, high = self._bracket(name)
            # start inside the bracket; epsilon may still be 0 here
            x0.append(math.log(min(max(getattr(params, name), low), high)))
            bounds.append((math.log(low), math.log(high)))
        if with_freqs:
            x0.extend(np.log(params.pi) - np.log(params.pi).mean())
            bounds.extend([(-_LOGIT_BOUND, _LOGIT_BOUND)] * k)
        x0_arr = np.clip(np.asarray(x0, dtype = np.double),
                         [lo for lo, _ in bounds], [hi for _, hi in bounds])

        best = {"params" : params, "value" : value}

        def unpack(x : np.ndarray) -> ModelParameters:
            changes : dict[str, object] = {name : math.exp(x[i])
                                           for i, name in enumerate(free)}
            if with_freqs:
                changes["frequencies"] = tuple(softmax(x[len(free):]))
            return params.with_values(**changes)

        def negative_lnl(x : np.ndarray) -> float:
            candidate = unpack(x)
            lnl = self.engine.log_likelihood(candidate)
            if lnl > best["value"]:
                best["params"], best["value"] = candidate, lnl
            return -lnl

        result = minimize(negative_lnl, x0_arr, method = "L-BFGS-B",
                          bounds = bounds,
                          options = {"maxiter" : self.settings.max_line_iterations})
        logger.debug("L-BFGS-B refinement: %s after %d iterations (%.10f)",
                     result.message, result.nit, best["value"])

        return best["params"], best["value"], int(result.nit)
