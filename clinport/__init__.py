"""Clinport - clinical research data import pipeline.

Normalizes delimited text, structured JSON, clinical documents and survey
markup into one canonical import structure and persists it into a
relational clinical store.
"""

__version__ = "1.0.0"
