"""menugen backend: photographed menu to structured, enriched menu record"""

__version__ = "1.0.0"
