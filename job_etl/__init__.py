"""
Job listing ETL pipeline.

Acquires job listings in batches, enriches them with capability and
taxonomy analysis from a language model, and persists the results.
"""

__version__ = "0.1.0"
