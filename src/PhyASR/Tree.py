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
Last Edit : 5/10/25
First Included in Version : 1.0.0
Docs   - [x]
Tests  - [x]
Design - [x]

Rooted tree model used by the likelihood engine. Nodes live in an arena and
are addressed by stable integer indices; each node stores its ordered child
indices and its parent index (None for the root). A tree is assembled with a
TreeBuilder and validated once, before any numerical work is done. After that
its topology, branch lengths and leaf observations never change.
"""

from __future__ import annotations
from collections import deque
from dataclasses import dataclass, field, replace
import math
import numbers
from typing import Any, Iterable, Union
import numpy as np

from .Alphabet import StateAlphabet, InvalidAlphabet, MISSING_TOKENS


########################
### MODULE CONSTANTS ###
########################

# Observation of a leaf whose state is explicitly unknown.
MISSING : int = -1

Observation = Union[int, frozenset, None]

##########################
#### EXCEPTION CLASSES ###
##########################

class InvalidTreeStructure(Exception):
    """
    Raised when a tree is not a single rooted hierarchy (cycles, disconnected
    nodes, missing or multiple roots), when a leaf carries no observation, or
    when some subtree contains no informative leaf at all.
    """
    def __init__(self, message : str = "Malformed tree structure") -> None:
        self.message = message
        super().__init__(self.message)

class InvalidBranchLength(Exception):
    """
    Raised when a branch length is negative, NaN, or infinite. Such lengths
    are reported, never clamped.
    """
    def __init__(self, message : str = "Invalid branch length") -> None:
        self.message = message
        super().__init__(self.message)

##########################
#### HELPER FUNCTIONS ####
##########################

def check_branch_length(length : Any, where : str = "") -> float:
    """
    Validate a branch length.

    Raises:
        InvalidBranchLength: if the length is not a finite, non-negative
                             real number.
    Args:
        length (Any): The branch length to check.
        where (str, optional): Description of the branch, for the error
                               message. Defaults to "".
    Returns:
        float: The length, as a float.
    """
    try:
        value = float(length)
    except (TypeError, ValueError):
        raise InvalidBranchLength(f"Branch length {length!r} {where} is not a \
                                    number")
    if not math.isfinite(value) or value < 0:
        raise InvalidBranchLength(f"Branch length {value} {where} must be \
                                    finite and non-negative")
    return value

def _normalize_observation(state : Any, alphabet : StateAlphabet) -> Observation:
    """
    Turn a user supplied state into the internal observation form:
    None, MISSING, a state index, or a frozenset of state indices.

    State names (str) are mapped through the alphabet; any token in
    MISSING_TOKENS becomes MISSING.
    """
    if state is None:
        return None
    if isinstance(state, str):
        if state in MISSING_TOKENS:
            return MISSING
        return alphabet.index(state)
    if isinstance(state, numbers.Integral) and not isinstance(state, bool):
        if state == MISSING:
            return MISSING
        return alphabet.check_index(state)
    if isinstance(state, Iterable):
        allowed = frozenset(_normalize_observation(s, alphabet) for s in state)
        if not allowed or MISSING in allowed or None in allowed:
            raise InvalidAlphabet(f"Ambiguous observation {state!r} must list \
                                    at least one valid state")
        if len(allowed) == 1:
            return next(iter(allowed))
        if len(allowed) == len(alphabet):
            return MISSING
        return allowed
    raise InvalidAlphabet(f"Unrecognized observation {state!r}")

####################
#### TREE NODES ####
####################

@dataclass
class TreeNode:
    """
    One node of the arena. 'children' holds indices of the nodes this node
    owns; 'parent' is a non-owning back reference.
    """

    index : int
    name : str | None = None
    parent : int | None = None
    children : list[int] | tuple[int, ...] = field(default_factory = list)
    branch_length : float | None = None
    observation : Observation = None

    @property
    def is_leaf(self) -> bool:
        return len(self.children) == 0

    @property
    def is_root(self) -> bool:
        return self.parent is None

    def label(self) -> str:
        """
        Returns:
            str: The node name, or a generated label from its index.
        """
        return self.name if self.name is not None else f"node_{self.index}"

##############
#### TREE ####
##############

class Tree:
    """
    An immutable, validated rooted tree over a fixed state alphabet.

    Build trees with TreeBuilder (or tree_from_phylo) rather than calling this
    constructor directly, although both paths validate.
    """

    def __init__(self,
                 nodes : list[TreeNode],
                 root : int,
                 alphabet : StateAlphabet) -> None:
        """
        Args:
            nodes (list[TreeNode]): Arena of nodes; nodes[i].index must be i.
            root (int): Index of the root node.
            alphabet (StateAlphabet): State alphabet of the observations.
        Raises:
            InvalidTreeStructure: if the nodes do not form a rooted tree.
            InvalidBranchLength: if any non-root branch length is invalid.
        """
        # children are frozen into tuples; the topology is fixed from here on
        self._nodes : tuple[TreeNode, ...] = tuple(
            replace(node, children = tuple(node.children)) for node in nodes)
        self.root : int = root
        self.alphabet : StateAlphabet = alphabet
        self._postorder : tuple[int, ...] = ()
        self._name_map : dict[str, int] = {}

        self.validate()

    #### Accessors ####

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self):
        return iter(self._nodes)

    @property
    def nodes(self) -> tuple[TreeNode, ...]:
        return self._nodes

    def node(self, index : int) -> TreeNode:
        return self._nodes[index]

    def children(self, index : int) -> tuple[int, ...]:
        return self._nodes[index].children

    def parent(self, index : int) -> int | None:
        return self._nodes[index].parent

    def leaves(self) -> list[int]:
        """
        Returns:
            list[int]: Indices of all leaf nodes, in post-order.
        """
        return [i for i in self._postorder if self._nodes[i].is_leaf]

    def internal_nodes(self) -> list[int]:
        """
        Returns:
            list[int]: Indices of all internal nodes, in post-order.
        """
        return [i for i in self._postorder if not self._nodes[i].is_leaf]

    def postorder(self) -> tuple[int, ...]:
        """
        Returns:
            tuple[int, ...]: Node indices, children before parents.
        """
        return self._postorder

    def preorder(self) -> tuple[int, ...]:
        """
        Returns:
            tuple[int, ...]: Node indices, parents before children.
        """
        return tuple(reversed(self._postorder))

    def find(self, name : str) -> int:
        """
        Look a node up by name.

        Raises:
            KeyError: if no node has that name.
        Args:
            name (str): Node name.
        Returns:
            int: Node index.
        """
        return self._name_map[name]

    def branch_length(self, index : int) -> float:
        """
        Length of the branch above a node. The root has no branch and
        returns 0.
        """
        length = self._nodes[index].branch_length
        if self._nodes[index].is_root or length is None:
            return 0.0
        return length

    #### Summaries ####

    def average_branch_length(self) -> float:
        """
        Mean length over all non-root branches (0 for a single node tree).
        """
        lengths = [self.branch_length(i) for i in range(len(self._nodes))
                   if i != self.root]
        if not lengths:
            return 0.0
        return float(np.mean(lengths))

    def has_zero_branches(self) -> bool:
        """
        Returns:
            bool: True if any non-root branch has length exactly 0.
        """
        return any(self.branch_length(i) == 0 for i in range(len(self._nodes))
                   if i != self.root)

    def state_counts(self) -> np.ndarray:
        """
        Count leaf observations per state. Ambiguous leaves spread one count
        evenly over their allowed states; missing leaves count for nothing.

        Returns:
            np.ndarray: Length K vector of (possibly fractional) counts.
        """
        counts = np.zeros(len(self.alphabet), dtype = np.double)
        for i in self.leaves():
            obs = self._nodes[i].observation
            if obs == MISSING:
                continue
            if isinstance(obs, frozenset):
                for s in obs:
                    counts[s] += 1.0 / len(obs)
            else:
                counts[obs] += 1.0
        return counts

    def observation_vector(self, index : int) -> np.ndarray:
        """
        Indicator vector of a leaf observation: 1 at the observed state(s), 0
        elsewhere. MISSING leaves get an all ones vector.
        """
        obs = self._nodes[index].observation
        vec = np.zeros(len(self.alphabet), dtype = np.double)
        if obs == MISSING:
            vec[:] = 1.0
        elif isinstance(obs, frozenset):
            vec[list(obs)] = 1.0
        else:
            vec[obs] = 1.0
        return vec

    #### Validation ####

    def validate(self) -> None:
        """
        Check that the arena is a single rooted tree whose branch lengths are
        valid, whose leaves are all observed, and whose every subtree contains
        at least one informative (not MISSING) leaf. Caches the post-order.

        Raises:
            InvalidTreeStructure: on any structural problem.
            InvalidBranchLength: on a negative or non-finite branch length.
        Args:
            N/A
        Returns:
            N/A
        """
        n = len(self._nodes)
        if n == 0:
            raise InvalidTreeStructure("A tree needs at least one node")
        if not isinstance(self.root, numbers.Integral) \
            or not 0 <= self.root < n:
            raise InvalidTreeStructure(f"Root index {self.root} is not a node \
                                         of this tree")

        roots = [node.index for node in self._nodes if node.parent is None]
        if len(roots) != 1 or roots[0] != self.root:
            raise InvalidTreeStructure(f"Expected exactly one root (node \
                                         {self.root}), found {roots}")

        for pos, node in enumerate(self._nodes):
            if node.index != pos:
                raise InvalidTreeStructure(f"Node at arena position {pos} \
                                             carries index {node.index}")
            if node.parent is not None:
                if not 0 <= node.parent < n:
                    raise InvalidTreeStructure(f"Node {node.label()} refers to \
                                                 unknown parent {node.parent}")
                if pos not in self._nodes[node.parent].children:
                    raise InvalidTreeStructure(f"Node {node.label()} is not \
                                                 listed as a child of its \
                                                 parent")
                check_branch_length(node.branch_length,
                                    f"above node {node.label()}")
            for child in node.children:
                if not 0 <= child < n or self._nodes[child].parent != pos:
                    raise InvalidTreeStructure(f"Child {child} of node \
                                                 {node.label()} does not point \
                                                 back to it")
            if len(set(node.children)) != len(node.children):
                raise InvalidTreeStructure(f"Node {node.label()} lists a child \
                                             more than once")

        # Iterative DFS from the root; every node must be reached exactly once.
        order : list[int] = []
        seen : set[int] = set()
        stack : list[tuple[int, bool]] = [(self.root, False)]
        while stack:
            index, expanded = stack.pop()
            if expanded:
                order.append(index)
                continue
            if index in seen:
                raise InvalidTreeStructure(f"Cycle detected at node \
                                             {self._nodes[index].label()}")
            seen.add(index)
            stack.append((index, True))
            for child in reversed(self._nodes[index].children):
                stack.append((child, False))

        if len(seen) != n:
            missing = sorted(set(range(n)) - seen)
            raise InvalidTreeStructure(f"Nodes {missing} are not connected to \
                                         the root")

        informative = [False] * n
        for index in order:
            node = self._nodes[index]
            if node.is_leaf:
                if node.observation is None:
                    raise InvalidTreeStructure(f"Leaf {node.label()} has no \
                                                 observed state")
                informative[index] = node.observation != MISSING
            else:
                if node.observation is not None:
                    raise InvalidTreeStructure(f"Internal node {node.label()} \
                                                 carries an observation; only \
                                                 leaves may be observed")
                informative[index] = any(informative[c] for c in node.children)
                if not informative[index]:
                    raise InvalidTreeStructure(f"Every leaf below internal node\
                                                 {node.label()} is unobserved")

        self._postorder = tuple(order)
        self._name_map = {node.name : node.index for node in self._nodes
                          if node.name is not None}

    #### Derived trees ####

    def collapse_short_branches(self, threshold : float) -> Tree:
        """
        Build a new tree in which every internal (non-root) node whose branch
        is shorter than 'threshold' is merged into its parent. The merged
        node's children hang from the parent, their branches extended by the
        removed branch. Leaves are never removed.

        Args:
            threshold (float): Branches strictly shorter than this collapse.
        Returns:
            Tree: A new, re-indexed and validated tree.
        """
        threshold = check_branch_length(threshold, "(collapse threshold)")
        builder = TreeBuilder(self.alphabet)
        new_index : dict[int, int] = {}
        extra : dict[int, float] = {}

        for index in self.preorder():
            node = self._nodes[index]
            if index == self.root:
                new_index[index] = builder.add_node(node.name)
                continue

            parent = node.parent
            length = self.branch_length(index) + extra.get(index, 0.0)
            if not node.is_leaf and self.branch_length(index) < threshold:
                # Merged: children attach to whatever this node's parent became.
                new_index[index] = new_index[parent]
                for child in node.children:
                    extra[child] = length
                continue

            new_index[index] = builder.add_node(node.name,
                                                parent = new_index[parent],
                                                branch_length = length,
                                                state = node.observation)
        return builder.build()

######################
#### TREE BUILDER ####
######################

class TreeBuilder:
    """
    Incrementally assembles the node arena of a Tree. Nodes are added parent
    first; 'build' validates everything at once.
    """

    def __init__(self, alphabet : StateAlphabet) -> None:
        """
        Args:
            alphabet (StateAlphabet): The state alphabet for observations.
        """
        self.alphabet : StateAlphabet = alphabet
        self._nodes : list[TreeNode] = []

    def add_node(self,
                 name : str | None = None,
                 parent : int | None = None,
                 branch_length : float | None = None,
                 state : Any = None) -> int:
        """
        Add a node to the arena.

        Args:
            name (str, optional): Node name. Defaults to None.
            parent (int, optional): Index of an existing parent node. None
                                    makes this node a root candidate.
            branch_length (float, optional): Length of the branch to the
                                             parent. Required if 'parent' is
                                             given.
            state (Any, optional): Leaf observation: a state index, a state
                                   name, MISSING or a missing token like "?",
                                   or an iterable of allowed states.
        Raises:
            InvalidTreeStructure: if the parent does not exist.
            InvalidBranchLength: if the branch length is invalid.
            InvalidAlphabet: if the state is not part of the alphabet.
        Returns:
            int: Index of the new node.
        """
        index = len(self._nodes)
        if parent is not None:
            if not 0 <= parent < index:
                raise InvalidTreeStructure(f"Parent {parent} of node \
                                             {name or index} does not exist")
            branch_length = check_branch_length(branch_length,
                                                f"above node {name or index}")
            self._nodes[parent].children.append(index)
        elif branch_length is not None:
            branch_length = check_branch_length(branch_length,
                                                f"above root {name or index}")

        self._nodes.append(TreeNode(index, name, parent, [], branch_length,
                                    _normalize_observation(state,
                                                           self.alphabet)))
        return index

    def set_state(self, index : int, state : Any) -> None:
        """
        Set (or replace) the observation of a node added earlier.
        """
        self._nodes[index].observation = _normalize_observation(state,
                                                                self.alphabet)

    def build(self) -> Tree:
        """
        Validate and freeze the arena.

        Raises:
            InvalidTreeStructure: see Tree.validate.
        Returns:
            Tree: The finished tree.
        """
        roots = [node.index for node in self._nodes if node.parent is None]
        if len(roots) != 1:
            raise InvalidTreeStructure(f"Expected exactly one root, found \
                                         {len(roots)}")
        return Tree(self._nodes, roots[0], self.alphabet)

########################
#### BIOPYTHON GLUE ####
########################

def tree_from_phylo(phylo_tree : Any,
                    annotations : dict[str, Any],
                    alphabet : StateAlphabet | None = None) -> Tree:
    """
    Convert an already parsed biopython tree (Bio.Phylo.BaseTree.Tree, with
    nested clade objects) into an arena Tree. Leaves are annotated through
    'annotations', a map from leaf name to state name. Leaves absent from the
    map are MISSING. Clades without a branch length get length 0.

    Args:
        phylo_tree (Any): the biopython library tree data structure
        annotations (dict[str, Any]): leaf name -> state name (or a missing
                                      token, or a list of state names).
        alphabet (StateAlphabet, optional): Alphabet to use. Defaults to the
                                            alphabet of observed annotations.
    Returns:
        Tree: The equivalent arena tree.
    """
    if alphabet is None:
        flat : list[Any] = []
        for value in annotations.values():
            if isinstance(value, str) or value is None:
                flat.append(value)
            else:
                flat.extend(value)
        alphabet = StateAlphabet.from_observations(flat)

    builder = TreeBuilder(alphabet)
    root_clade = phylo_tree.root
    queue : deque[tuple[Any, int | None]] = deque([(root_clade, None)])

    while queue:
        clade, parent = queue.popleft()
        is_leaf = len(clade.clades) == 0
        state = None
        if is_leaf:
            state = annotations.get(clade.name, MISSING)
        length = None
        if parent is not None:
            length = clade.branch_length if clade.branch_length is not None \
                     else 0.0
        index = builder.add_node(clade.name, parent = parent,
                                 branch_length = length, state = state)
        for child in clade.clades:
            queue.append((child, index))

    return builder.build()
