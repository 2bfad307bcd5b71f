"""Cross-repository rollup engine for infrastructure-as-code dependency graphs."""

__version__ = "0.1.0"
