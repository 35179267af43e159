"""Terminal workflow orchestration for spec-driven development."""

__version__ = "0.1.0"

__all__ = ["__version__"]
