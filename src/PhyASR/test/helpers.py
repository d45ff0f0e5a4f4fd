"""
Small trees shared by the test modules.
"""

import itertools
import numpy as np
from scipy.linalg import expm

from PhyASR.Alphabet import StateAlphabet
from PhyASR.Tree import Tree, TreeBuilder

BINARY = StateAlphabet(("0", "1"))


def build_cherry(states : list, length : float = 0.1,
                 alphabet : StateAlphabet = BINARY) -> Tree:
    """
    Root with one leaf per entry of 'states', all on branches of 'length'.
    """
    builder = TreeBuilder(alphabet)
    root = builder.add_node("root")
    for pos, state in enumerate(states):
        builder.add_node(f"leaf{pos}", parent = root, branch_length = length,
                         state = state)
    return builder.build()

def build_three_leaf_tree(states : list = (0, 0, 1),
                          length : float = 0.1,
                          alphabet : StateAlphabet = BINARY) -> Tree:
    """
    ((A, B)X, C)root, every branch of the same length.
    """
    builder = TreeBuilder(alphabet)
    root = builder.add_node("root")
    inner = builder.add_node("X", parent = root, branch_length = length)
    builder.add_node("A", parent = inner, branch_length = length,
                     state = states[0])
    builder.add_node("B", parent = inner, branch_length = length,
                     state = states[1])
    builder.add_node("C", parent = root, branch_length = length,
                     state = states[2])
    return builder.build()

def build_balanced_tree(depth : int, states : list, length : float = 0.1,
                        alphabet : StateAlphabet = BINARY) -> Tree:
    """
    Perfect binary tree with 2^depth leaves, observed left to right from
    'states' (cycled if shorter).
    """
    builder = TreeBuilder(alphabet)
    frontier = [builder.add_node("root")]
    for level in range(depth):
        nxt = []
        for parent in frontier:
            for _ in range(2):
                nxt.append(builder.add_node(parent = parent,
                                            branch_length = length))
        frontier = nxt
    for pos, leaf in enumerate(frontier):
        builder.set_state(leaf, states[pos % len(states)])
    return builder.build()

def rate_matrix(pi : np.ndarray) -> np.ndarray:
    """
    F81 rate matrix built from its definition, normalized to one expected
    substitution per unit time.
    """
    Q = np.tile(pi, (len(pi), 1))
    np.fill_diagonal(Q, 0)
    np.fill_diagonal(Q, -Q.sum(axis = 1))
    return Q / -np.dot(pi, np.diag(Q))

def enumerate_three_leaf(pi : tuple, t : float, leaves : tuple) -> dict:
    """
    Joint probability of every (root, X) assignment of ((A, B)X, C)root,
    every branch of length 't', computed from the matrix exponential.

    Returns:
        dict: (root state, X state) -> probability of that assignment and
              the leaf states.
    """
    pi = np.asarray(pi)
    P = expm(rate_matrix(pi) * t)
    a, b, c = leaves
    return {(r, x) : pi[r] * P[r][x] * P[x][a] * P[x][b] * P[r][c]
            for r, x in itertools.product(range(len(pi)), repeat = 2)}
