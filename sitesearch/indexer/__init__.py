"""
Text analysis and the inverted index.
"""

from .analyzer import analyze, STOP_WORDS
from .index import InvertedIndex, IndexBuilder, IndexStats

__all__ = ['analyze', 'STOP_WORDS', 'InvertedIndex', 'IndexBuilder', 'IndexStats']
