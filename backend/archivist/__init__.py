"""
Main package of the extraction backend.

It contains subpackages for:
- api: HTTP endpoints and request handling
- core: configuration, database and exceptions
- models: pydantic data models
- rules: versioned heuristic catalogues
- services: fetcher, OCR engine, parsers, row emitter and job controller
- utils: logging, helpers and content extractors
"""

__version__ = "0.1.0"
