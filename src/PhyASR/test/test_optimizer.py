import math
import warnings
import numpy as np
import pytest

from PhyASR.Likelihood import LikelihoodEngine
from PhyASR.Optimizer import Optimizer, OptimizerNonConvergence, \
                             golden_section_search
from PhyASR.Settings import ASRSettings
from PhyASR.SubstitutionModel import F81, JC, ModelParameters
from PhyASR.Tree import TreeBuilder
from .helpers import BINARY, build_balanced_tree, build_cherry, \
                     build_three_leaf_tree


def make_optimizer(tree, **overrides) -> Optimizer:
    return Optimizer(LikelihoodEngine(tree, F81(2)), ASRSettings(**overrides))

##############################
#### GOLDEN SECTION SEARCH ####
##############################

def test_finds_interior_maximum():
    result = golden_section_search(lambda x : -(x - 0.3) ** 2, 0.0, 1.0,
                                   tol = 1e-9, max_iter = 200)
    assert result.converged
    assert result.x == pytest.approx(0.3, abs = 1e-6)
    assert result.value == pytest.approx(0.0, abs = 1e-12)
    assert result.evaluations == result.iterations + 2

def test_finds_boundary_maximum():
    result = golden_section_search(lambda x : x, -2.0, 5.0, tol = 1e-8)
    assert result.converged
    assert result.x == pytest.approx(5.0, abs = 1e-7)

def test_cap_reached_is_not_converged():
    result = golden_section_search(lambda x : -abs(x - 1), 0.0, 10.0,
                                   tol = 1e-9, max_iter = 5)
    assert not result.converged
    assert result.iterations == 5

def test_larger_cap_is_never_worse_for_line_search():
    f = lambda x : math.sin(3 * x) + 0.2 * x
    values = [golden_section_search(f, 0.0, 6.0, tol = 1e-12,
                                    max_iter = cap).value
              for cap in range(0, 40)]
    assert all(b >= a for a, b in zip(values, values[1:]))

def test_empty_bracket():
    with pytest.raises(ValueError):
        golden_section_search(lambda x : x, 1.0, 1.0)

###################
#### OPTIMIZER ####
###################

def test_optimize_improves_and_converges():
    tree = build_balanced_tree(3, [0, 0, 1, 0, 1, 1, 1, 0], 0.2)
    optimizer = make_optimizer(tree, refine = False)
    initial = ModelParameters((0.5, 0.5))
    result = optimizer.optimize(initial)

    assert result.converged
    assert result.log_likelihood >= result.initial_log_likelihood
    assert result.parameters.frequencies == initial.frequencies
    assert result.evaluations > 0

    engine = optimizer.engine
    for scale in np.geomspace(1e-3, 1e3, 61):
        lnl = engine.log_likelihood(initial.with_values(scaling = scale))
        assert lnl <= result.log_likelihood + 1e-6

def test_larger_cap_is_never_worse_for_optimizer():
    tree = build_three_leaf_tree([0, 0, 1], 0.1)
    initial = ModelParameters((2 / 3, 1 / 3))
    values = []
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", OptimizerNonConvergence)
        for cap in (1, 2, 4, 8, 16, 32, 64):
            optimizer = make_optimizer(tree, refine = False,
                                       max_line_iterations = cap)
            values.append(optimizer.optimize(initial).log_likelihood)
    assert all(b >= a for a, b in zip(values, values[1:]))

def test_non_convergence_warns_and_returns_best():
    tree = build_three_leaf_tree([0, 0, 1], 0.1)
    optimizer = make_optimizer(tree, refine = False, max_line_iterations = 2)
    initial = ModelParameters((2 / 3, 1 / 3))
    with pytest.warns(OptimizerNonConvergence):
        result = optimizer.optimize(initial)
    assert not result.converged
    assert result.log_likelihood >= result.initial_log_likelihood
    assert result.log_likelihood == pytest.approx(
        optimizer.engine.log_likelihood(result.parameters))

def test_fixed_scaling_keeps_initial_parameters():
    tree = build_three_leaf_tree([0, 0, 1], 0.1)
    optimizer = make_optimizer(tree, scaling = False)
    initial = ModelParameters((2 / 3, 1 / 3))
    result = optimizer.optimize(initial)
    assert optimizer.free_parameters() == []
    assert result.converged
    assert result.parameters == initial
    assert result.iterations == 0

def test_epsilon_only_free_with_zero_branches():
    assert make_optimizer(build_cherry([0, 1], 0.1)).free_parameters() == \
           ["scaling"]
    zero = build_cherry([0, 1, 1], 0.0)
    optimizer = make_optimizer(zero, refine = False)
    assert optimizer.free_parameters() == ["scaling", "epsilon"]

    initial = ModelParameters((0.5, 0.5), epsilon = 1e-6)
    result = optimizer.optimize(initial)
    settings = optimizer.settings
    assert settings.epsilon_low <= result.parameters.epsilon <= \
           settings.epsilon_high
    assert result.log_likelihood >= result.initial_log_likelihood

def test_refinement_starts_from_zero_epsilon():
    builder = TreeBuilder(BINARY)
    root = builder.add_node("root")
    inner = builder.add_node("X", parent = root, branch_length = 0.2)
    builder.add_node("A", parent = inner, branch_length = 0.0, state = 0)
    builder.add_node("B", parent = inner, branch_length = 0.0, state = 0)
    builder.add_node("C", parent = root, branch_length = 0.3, state = 1)
    tree = builder.build()

    model = F81(2)
    initial = model.initial_parameters(tree)
    assert initial.epsilon == 0.0
    optimizer = Optimizer(LikelihoodEngine(tree, model), ASRSettings())
    assert optimizer.free_parameters() == ["scaling", "epsilon"]

    result = optimizer.optimize(initial)
    assert math.isfinite(result.log_likelihood)
    assert result.log_likelihood >= result.initial_log_likelihood
    assert result.parameters.epsilon == 0.0 or \
           optimizer.settings.epsilon_low <= result.parameters.epsilon <= \
           optimizer.settings.epsilon_high

def test_refinement_never_lowers_likelihood():
    tree = build_balanced_tree(3, [0, 1, 1, 1, 0, 1, 1, 1], 0.4)
    initial = ModelParameters((0.5, 0.5))
    plain = make_optimizer(tree, refine = False).optimize(initial)
    refined = make_optimizer(tree, refine = True).optimize(initial)
    assert refined.log_likelihood >= plain.log_likelihood

def test_refinement_can_fit_frequencies():
    tree = build_balanced_tree(3, [0, 1, 1, 1, 1, 1, 1, 1], 0.4)
    initial = ModelParameters((0.5, 0.5))
    fixed = make_optimizer(tree).optimize(initial)
    free = make_optimizer(tree, optimize_frequencies = True).optimize(initial)
    assert free.log_likelihood >= fixed.log_likelihood
    assert free.parameters.frequencies[1] > 0.5
    assert sum(free.parameters.frequencies) == pytest.approx(1.0)

def test_jc_frequencies_stay_uniform():
    tree = build_balanced_tree(3, [0, 1, 1, 1, 1, 1, 1, 1], 0.4)
    optimizer = Optimizer(LikelihoodEngine(tree, JC(2)),
                          ASRSettings(model = "JC",
                                      optimize_frequencies = True))
    result = optimizer.optimize(ModelParameters((0.5, 0.5)))
    assert result.parameters.frequencies == (0.5, 0.5)
