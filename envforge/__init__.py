"""Envforge: declarative, reproducible development environments.

Resolves a declared list of dependencies against a repository index,
materializes each artifact once into a content-addressed store, composes
the search-path environment they provide, and activates it in a scoped,
reversible session.
"""

__version__ = "0.1.0"
__description__ = "Declarative environment resolution and materialization engine"

from envforge.core.engine import EnvironmentEngine
from envforge.cli.app import app as cli

__all__ = ["EnvironmentEngine", "cli", "__version__"]
