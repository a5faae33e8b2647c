"""
Scripts package for adquery.

This package contains command-line scripts organized by functionality.

Subpackages:
- query: Directory lookups from the command line (``ad-query``)
"""
