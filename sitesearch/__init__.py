"""
Site Search

Crawls a growing set of URLs and keeps an inverted keyword index over them.
"""

__version__ = "1.0.0"
__description__ = "Periodic web crawler with an inverted keyword index"
