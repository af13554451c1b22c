"""taskforge: drive coding agents through a task backlog under advisory locks."""

__version__ = "0.1.0"

__all__ = ["__version__"]
