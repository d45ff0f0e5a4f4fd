import numpy as np
import pytest
from scipy.linalg import expm

from PhyASR.SubstitutionModel import F81, JC, ModelParameters, \
                                     SubstitutionModelError, \
                                     estimate_frequencies, make_model
from PhyASR.Tree import InvalidBranchLength
from .helpers import build_three_leaf_tree, rate_matrix


@pytest.mark.parametrize("t", [0.0, 1e-8, 0.1, 1.0, 7.5, 100.0])
def test_rows_sum_to_one(t):
    model = F81(3)
    params = ModelParameters((0.5, 0.3, 0.2), scaling = 1.7)
    P = model.transition_matrix(t, params)
    np.testing.assert_allclose(P.sum(axis = 1), 1.0, atol = 1e-9)
    assert np.all(P >= 0)

def test_zero_length_is_identity():
    model = F81(4)
    params = ModelParameters((0.1, 0.2, 0.3, 0.4), scaling = 12.0)
    np.testing.assert_allclose(model.transition_matrix(0, params),
                               np.eye(4), atol = 1e-9)

def test_long_branch_reaches_equilibrium():
    model = F81(2)
    params = ModelParameters((0.8, 0.2))
    P = model.transition_matrix(1e4, params)
    np.testing.assert_allclose(P, [[0.8, 0.2], [0.8, 0.2]], atol = 1e-12)

@pytest.mark.parametrize("t", [0.05, 0.5, 3.0])
def test_closed_form_matches_matrix_exponential(t):
    pi = np.array([0.6, 0.25, 0.15])
    params = ModelParameters(tuple(pi), scaling = 0.8)
    P = F81(3).transition_matrix(t, params)
    np.testing.assert_allclose(P, expm(rate_matrix(pi) * 0.8 * t),
                               atol = 1e-12)

def test_rate_matrix_is_normalized():
    pi = np.array([0.5, 0.3, 0.2])
    Q = F81(3).getQ(ModelParameters(tuple(pi)))
    np.testing.assert_allclose(Q.sum(axis = 1), 0, atol = 1e-12)
    assert -np.dot(pi, np.diag(Q)) == pytest.approx(1.0)

def test_jc_has_uniform_frequencies():
    tree = build_three_leaf_tree([0, 0, 0])
    params = JC(2).initial_parameters(tree)
    assert params.frequencies == (0.5, 0.5)
    P = JC(2).transition_matrix(0.3, params)
    assert P[0][1] == pytest.approx(0.5 * (1 - np.exp(-2 * 0.3)))

def test_negative_length():
    params = ModelParameters((0.5, 0.5))
    with pytest.raises(InvalidBranchLength):
        F81(2).transition_matrix(-1.0, params)
    with pytest.raises(InvalidBranchLength):
        F81(2).transition_matrix(float("nan"), params)

def test_parameter_size_mismatch():
    with pytest.raises(SubstitutionModelError):
        F81(3).transition_matrix(0.1, ModelParameters((0.5, 0.5)))

@pytest.mark.parametrize("freqs", [(1.0,), (0.5, 0.6), (1.0, 0.0),
                                   (0.5, float("nan"))])
def test_bad_frequencies(freqs):
    with pytest.raises(SubstitutionModelError):
        ModelParameters(freqs)

def test_bad_scalars():
    with pytest.raises(SubstitutionModelError):
        ModelParameters((0.5, 0.5), scaling = 0)
    with pytest.raises(SubstitutionModelError):
        ModelParameters((0.5, 0.5), epsilon = -1e-3)

def test_laplace_smoothing():
    np.testing.assert_allclose(estimate_frequencies([2, 1]), [0.6, 0.4])
    np.testing.assert_allclose(estimate_frequencies([3, 0, 1], 0.5),
                               [3.5 / 5.5, 0.5 / 5.5, 1.5 / 5.5])
    with pytest.raises(SubstitutionModelError):
        estimate_frequencies([3, 0], 0)

def test_initial_parameters_from_tree():
    tree = build_three_leaf_tree([0, 0, 1])
    params = F81(2).initial_parameters(tree, epsilon = 1e-6)
    assert params.frequencies == pytest.approx((0.6, 0.4))
    assert params.epsilon == 1e-6
    fixed = F81(2).initial_parameters(tree, frequencies = [2 / 3, 1 / 3])
    assert fixed.frequencies == pytest.approx((2 / 3, 1 / 3))

def test_log_transition_matrix():
    params = ModelParameters((0.5, 0.5))
    logP = F81(2).log_transition_matrix(0, params)
    assert logP[0][0] == 0
    assert logP[0][1] == -np.inf

def test_make_model():
    assert isinstance(make_model("f81", 3), F81)
    assert isinstance(make_model("JC", 3), JC)
    with pytest.raises(SubstitutionModelError):
        make_model("GTR", 4)
    with pytest.raises(SubstitutionModelError):
        make_model("F81", 1)
