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
Last Edit : 11/6/25
First Included in Version : 1.0.0
Docs   - [x]
Tests  - [x]
Design - [x]
"""

from __future__ import annotations
from dataclasses import dataclass
import numbers
from typing import Iterable


########################
### MODULE CONSTANTS ###
########################

# Annotation tokens that mean "state unknown" for a leaf.
MISSING_TOKENS : frozenset[str] = frozenset({"?", "", "NA", "nan"})

#########################
#### EXCEPTION CLASS ####
#########################

class InvalidAlphabet(Exception):
    """
    Error class for all errors relating to state alphabets. Raised when an
    alphabet has fewer than two states, contains duplicate state names, or when
    a state index falls outside of [0, K).
    """
    def __init__(self, message : str = "Error during state alphabet \
                                        operation") -> None:
        """
        Initialize an InvalidAlphabet error with a message.

        Args:
            message (str): error message
        Returns:
            N/A
        """
        self.message = message
        super().__init__(self.message)

########################
#### ALPHABET CLASS ####
########################

@dataclass(frozen = True)
class StateAlphabet:
    """
    A fixed, ordered set of K discrete character states. Each state is
    addressed by its index 0..K-1 for the whole inference run.

    Unlike sequence alphabets, character states here are arbitrary labels
    (ie. country names, host species, drug resistance levels), so the
    alphabet is always user defined.
    """

    states : tuple[str, ...]

    def __post_init__(self) -> None:
        """
        Ensure the alphabet is well formed.

        Raises:
            InvalidAlphabet: if there are fewer than 2 states or a state name
                             appears more than once.
        Args:
            N/A
        Returns:
            N/A
        """
        object.__setattr__(self, "states", tuple(str(s) for s in self.states))

        if len(self.states) < 2:
            raise InvalidAlphabet(f"A state alphabet needs at least 2 states, \
                                    got {len(self.states)}")
        if len(set(self.states)) != len(self.states):
            raise InvalidAlphabet("State names in an alphabet must be unique")

    @classmethod
    def from_observations(cls, observations : Iterable[str]) -> StateAlphabet:
        """
        Build an alphabet from raw leaf annotations. States are sorted so that
        the same annotations always produce the same state indices. Tokens in
        MISSING_TOKENS are not states and are skipped.

        Args:
            observations (Iterable[str]): Leaf annotations.
        Returns:
            StateAlphabet: The alphabet of distinct observed states.
        """
        distinct = {str(obs) for obs in observations
                    if obs is not None and str(obs) not in MISSING_TOKENS}
        return cls(tuple(sorted(distinct)))

    @property
    def size(self) -> int:
        """
        Returns:
            int: K, the number of states.
        """
        return len(self.states)

    def __len__(self) -> int:
        return len(self.states)

    def index(self, name : str) -> int:
        """
        Return the index for a state name.

        Raises:
            InvalidAlphabet: if the name is not a state of this alphabet.
        Args:
            name (str): A state name.
        Returns:
            int: Index of the state, in [0, K).
        """
        try:
            return self.states.index(name)
        except ValueError:
            raise InvalidAlphabet(f"Attempted to map <{name}>. That state is \
                                    not in this alphabet")

    def name(self, index : int) -> str:
        """
        Get the name of the state at 'index'.

        Raises:
            InvalidAlphabet: if the index is out of range.
        Args:
            index (int): A state index.
        Returns:
            str: The state name.
        """
        self.check_index(index)
        return self.states[index]

    def check_index(self, index : int) -> int:
        """
        Validate a state index.

        Raises:
            InvalidAlphabet: if the index is not an integer in [0, K).
        Args:
            index (int): A state index.
        Returns:
            int: The same index.
        """
        if isinstance(index, bool) or not isinstance(index, numbers.Integral) \
            or not 0 <= index < len(self.states):
            raise InvalidAlphabet(f"State index {index} is out of range \
                                    [0, {len(self.states)})")
        return int(index)
