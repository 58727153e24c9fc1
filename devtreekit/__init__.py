"""In-memory device trees, with source and YAML output and source-position tracking."""

__version__ = "0.1.0"
__all__ = ["livetree", "srcpos", "treesource", "util", "yamltree"]