"""
Text analysis shared by indexing and search.

``analyze`` runs four stages in a fixed order: tokenize, lowercase, drop stop
words, stem. Index-time and query-time text must go through the same function,
otherwise stored tokens and query tokens stop lining up.
"""

import re
from typing import Iterable, List

from nltk.stem.snowball import SnowballStemmer

STOP_WORDS = frozenset([
    'a', 'an', 'and', 'the', 'of', 'be', 'to', 'it', 'that', 'have',
    'for', 'not', 'on', 'with', 'as', 'do', 'at', 'this', 'but', 'by',
])

# Maximal runs of Unicode letters and digits
_TOKEN_PATTERN = re.compile(r'[^\W_]+')

_stemmer = SnowballStemmer('english')


def tokenize(text: str) -> List[str]:
    """Split on every character that is not a letter or a digit."""
    return _TOKEN_PATTERN.findall(text)


def lowercase_filter(tokens: Iterable[str]) -> List[str]:
    """
    Lowercase each token, keeping only its letters and digits.

    Full case mapping can add combining marks (``'İ'.lower()`` is ``'i'`` plus
    U+0307); those are dropped, as is any token left empty.
    """
    lowered = []
    for token in tokens:
        token = ''.join(_TOKEN_PATTERN.findall(token.lower()))
        if token:
            lowered.append(token)
    return lowered


def stop_word_filter(tokens: Iterable[str]) -> List[str]:
    return [token for token in tokens if token not in STOP_WORDS]


def stem_filter(tokens: Iterable[str]) -> List[str]:
    return [_stemmer.stem(token) for token in tokens]


def analyze(text: str) -> List[str]:
    """
    Turn free text into index tokens.

    Stop words are removed before stemming, so a stem may still spell one
    (``analyze("doing")`` is ``["do"]``). Queries go through the same steps,
    so searching for such a word still finds it.

    Args:
        text: Page text at index time, or the raw query at search time

    Returns:
        Normalized tokens in input order; never longer than ``tokenize(text)``
    """
    tokens = tokenize(text)
    tokens = lowercase_filter(tokens)
    tokens = stop_word_filter(tokens)
    tokens = stem_filter(tokens)
    return tokens
