import math
import numpy as np
import pytest

from PhyASR.Likelihood import LikelihoodEngine, NumericalInstability
from PhyASR.SubstitutionModel import F81, JC, ModelParameters
from PhyASR.Tree import MISSING, TreeBuilder
from .helpers import BINARY, build_balanced_tree, build_cherry, \
                     build_three_leaf_tree, enumerate_three_leaf


PI = (2 / 3, 1 / 3)


def test_three_leaf_scenario_matches_enumeration():
    tree = build_three_leaf_tree([0, 0, 1], 0.1)
    engine = LikelihoodEngine(tree, F81(2))
    total = sum(enumerate_three_leaf(PI, 0.1, (0, 0, 1)).values())
    assert engine.log_likelihood(ModelParameters(PI)) == \
           pytest.approx(math.log(total), abs = 1e-6)

def test_root_and_one_leaf_closed_form():
    tree = build_cherry([1], 0.37)
    params = ModelParameters((0.7, 0.3), scaling = 1.4)
    mu = 1 / (1 - 0.7 ** 2 - 0.3 ** 2)
    decay = math.exp(-mu * 1.4 * 0.37)
    # SUM_i pi_i * P(i, 1)
    expected = 0.7 * 0.3 * (1 - decay) + 0.3 * (0.3 + 0.7 * decay)
    engine = LikelihoodEngine(tree, F81(2))
    assert engine.log_likelihood(params) == \
           pytest.approx(math.log(expected), abs = 1e-6)

def test_single_leaf_tree():
    builder = TreeBuilder(BINARY)
    builder.add_node("only", state = 1)
    engine = LikelihoodEngine(builder.build(), F81(2))
    assert engine.log_likelihood(ModelParameters(PI)) == \
           pytest.approx(math.log(1 / 3))

def test_missing_leaf_does_not_change_likelihood():
    params = ModelParameters(PI)
    plain = LikelihoodEngine(build_cherry([0, 1]), F81(2))
    padded = LikelihoodEngine(build_cherry([0, 1, MISSING]), F81(2))
    assert padded.log_likelihood(params) == \
           pytest.approx(plain.log_likelihood(params), abs = 1e-12)

def test_ambiguous_leaf_sums_over_states():
    params = ModelParameters(PI)
    both = LikelihoodEngine(build_cherry([0, [0, 1]]), F81(2))
    zero = LikelihoodEngine(build_cherry([0, 0]), F81(2))
    one = LikelihoodEngine(build_cherry([0, 1]), F81(2))
    assert math.exp(both.log_likelihood(params)) == pytest.approx(
        math.exp(zero.log_likelihood(params)) +
        math.exp(one.log_likelihood(params)))

def test_deep_tree_does_not_underflow():
    tree = build_balanced_tree(11, [0, 1, 1, 0, 1], 2.0)
    engine = LikelihoodEngine(tree, F81(2))
    lnl = engine.log_likelihood(ModelParameters((0.4, 0.6)))
    assert math.isfinite(lnl)
    assert lnl < -1000

def test_partials_are_rescaled():
    tree = build_balanced_tree(4, [0, 1], 0.5)
    cache = LikelihoodEngine(tree, F81(2)).compute(ModelParameters(PI))
    for index in tree.internal_nodes():
        assert cache.partials[index].max() == pytest.approx(1.0)
    for index in tree.leaves():
        assert cache.log_scales[index] == 0.0

def test_epsilon_replaces_zero_lengths():
    tree = build_cherry([0, 1], 0.0)
    engine = LikelihoodEngine(tree, F81(2))
    with pytest.raises(NumericalInstability):
        engine.log_likelihood(ModelParameters(PI, epsilon = 0.0))

    lnl = engine.log_likelihood(ModelParameters(PI, epsilon = 1e-4))
    reference = LikelihoodEngine(build_cherry([0, 1], 1e-4), F81(2))
    assert lnl == pytest.approx(
        reference.log_likelihood(ModelParameters(PI)), abs = 1e-12)

def test_zero_length_with_compatible_states():
    tree = build_cherry([1, 1], 0.0)
    engine = LikelihoodEngine(tree, F81(2))
    assert engine.log_likelihood(ModelParameters(PI)) == \
           pytest.approx(math.log(1 / 3))

def test_parallel_pass_is_bit_identical():
    tree = build_balanced_tree(6, [0, 1, 1, 0, 0, 0, 1], 0.3)
    params = ModelParameters((0.55, 0.45), scaling = 2.0)
    sequential = LikelihoodEngine(tree, F81(2)).compute(params)
    parallel = LikelihoodEngine(tree, F81(2), workers = 4).compute(params)
    assert parallel.log_likelihood == sequential.log_likelihood
    np.testing.assert_array_equal(parallel.partials, sequential.partials)
    np.testing.assert_array_equal(parallel.log_scales, sequential.log_scales)

def test_scaling_equals_longer_branches():
    params = ModelParameters(PI, scaling = 3.0)
    scaled = LikelihoodEngine(build_three_leaf_tree(length = 0.1), F81(2))
    longer = LikelihoodEngine(build_three_leaf_tree(length = 0.3), F81(2))
    assert scaled.log_likelihood(params) == pytest.approx(
        longer.log_likelihood(ModelParameters(PI)))

def test_evaluations_are_counted():
    engine = LikelihoodEngine(build_three_leaf_tree(), JC(2))
    for _ in range(3):
        engine.log_likelihood(ModelParameters((0.5, 0.5)))
    assert engine.evaluations == 3

def test_model_size_must_match_alphabet():
    with pytest.raises(ValueError):
        LikelihoodEngine(build_three_leaf_tree(), F81(3))
    with pytest.raises(ValueError):
        LikelihoodEngine(build_three_leaf_tree(), F81(2), workers = 0)
