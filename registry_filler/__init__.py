"""
Civil registry form filling pipeline.

Normalizes AI-extracted civil registry data, maps it onto the fields of a
fillable PDF template, fills the template and verifies the generated document.
"""

__version__ = "1.0.0"
