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
First Included in Version : 1.1.0
Docs   - [x]
Tests  - [x]
Design - [x]
"""

from __future__ import annotations
from collections import deque
from enum import Enum, auto
from typing import Iterator

from .Tree import Tree


class TraversalOrder(Enum):
    """Traversal order options."""
    PRE_ORDER = auto()   # Parent before children (root -> leaves)
    POST_ORDER = auto()  # Children before parent (leaves -> root)
    LEVEL_ORDER = auto() # Breadth-first by depth


class Traversal:
    """
    Iterator-based traversal over the node indices of a Tree.

    Example:
        >>> for index in Traversal(tree, TraversalOrder.POST_ORDER):
        ...     engine.visit(index)
    """

    def __init__(self,
                 tree : Tree,
                 order : TraversalOrder = TraversalOrder.POST_ORDER) -> None:
        """
        Args:
            tree (Tree): A validated tree.
            order (TraversalOrder, optional): Defaults to POST_ORDER.
        """
        self.tree = tree
        self.order = order

    def __iter__(self) -> Iterator[int]:
        if self.order == TraversalOrder.PRE_ORDER:
            return iter(self.tree.preorder())
        elif self.order == TraversalOrder.POST_ORDER:
            return iter(self.tree.postorder())
        elif self.order == TraversalOrder.LEVEL_ORDER:
            return self._levelorder()
        raise ValueError(f"Unknown traversal order: {self.order}")

    def _levelorder(self) -> Iterator[int]:
        queue : deque[int] = deque([self.tree.root])
        while queue:
            index = queue.popleft()
            yield index
            queue.extend(self.tree.children(index))

    def as_list(self) -> list[int]:
        """Return traversal as a list."""
        return list(self)


class LevelParallelTraversal:
    """
    Traversal that yields node indices grouped by depth. All nodes of one
    level are independent of each other and may be processed in parallel.

    With bottom_up=True the deepest level comes first, so every node is
    yielded after all of its children have been.

    Example:
        >>> for depth, nodes in LevelParallelTraversal(tree):
        ...     with ThreadPoolExecutor() as pool:
        ...         list(pool.map(visit, nodes))
    """

    def __init__(self, tree : Tree, bottom_up : bool = True) -> None:
        """
        Args:
            tree (Tree): A validated tree.
            bottom_up (bool, optional): If True, yield leaves first (for
                                        likelihood). If False, yield root
                                        first. Defaults to True.
        """
        self.tree = tree
        self.bottom_up = bottom_up
        self._levels : dict[int, list[int]] | None = None

    def __iter__(self) -> Iterator[tuple[int, list[int]]]:
        levels = self._compute_levels()
        for depth in sorted(levels.keys(), reverse = self.bottom_up):
            yield depth, levels[depth]

    def _compute_levels(self) -> dict[int, list[int]]:
        """
        Assign each node to a level based on distance from root.

        Returns:
            dict[int, list[int]]: depth -> node indices at that depth.
        """
        if self._levels is not None:
            return self._levels

        levels : dict[int, list[int]] = {}
        queue : deque[tuple[int, int]] = deque([(self.tree.root, 0)])
        while queue:
            index, depth = queue.popleft()
            levels.setdefault(depth, []).append(index)
            for child in self.tree.children(index):
                queue.append((child, depth + 1))

        self._levels = levels
        return levels

    @property
    def num_levels(self) -> int:
        """Number of levels in the traversal."""
        return len(self._compute_levels())

    @property
    def max_parallelism(self) -> int:
        """Maximum nodes at any single level."""
        levels = self._compute_levels()
        return max(len(nodes) for nodes in levels.values()) if levels else 0
