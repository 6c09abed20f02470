"""
BrandViz: visibilidad de marcas en modelos de lenguaje
"""

__version__ = "1.0.0"
