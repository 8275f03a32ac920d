"""Token counting.

Every token count the service stores or aggregates goes through a
``TokenEstimator``, so swapping in an exact tokenizer only touches this module.
"""

import math
from typing import Protocol


class TokenEstimator(Protocol):
    """Anything that can count tokens in a string."""

    def count(self, text: str) -> int: ...


class CharacterRatioEstimator:
    """Approximates tokens as ceil(trimmed character count / chars_per_token)."""

    def __init__(self, chars_per_token: int = 4):
        if chars_per_token < 1:
            raise ValueError("chars_per_token must be at least 1")
        self.chars_per_token = chars_per_token

    def count(self, text: str) -> int:
        return math.ceil(len((text or "").strip()) / self.chars_per_token)


# Default estimator shared by the stores
default_estimator: TokenEstimator = CharacterRatioEstimator()
