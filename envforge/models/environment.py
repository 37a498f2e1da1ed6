"""Composed environment descriptor (deterministic given the same graph)."""

from __future__ import annotations

import json
import shlex

from pydantic import BaseModel, ConfigDict, Field

from envforge.core.hasher import canonical_json_bytes, content_address

# Search-path variables in the fixed order they appear in a descriptor.
PATH = "PATH"
LD_LIBRARY_PATH = "LD_LIBRARY_PATH"
LIBRARY_PATH = "LIBRARY_PATH"
CPATH = "CPATH"
PKG_CONFIG_PATH = "PKG_CONFIG_PATH"
CMAKE_PREFIX_PATH = "CMAKE_PREFIX_PATH"

SEARCH_PATH_VARIABLES: tuple[str, ...] = (
    PATH,
    LD_LIBRARY_PATH,
    LIBRARY_PATH,
    CPATH,
    PKG_CONFIG_PATH,
    CMAKE_PREFIX_PATH,
)

# Markers a session adds to the environment it activates.
SESSION_MARKER = "ENVFORGE_SESSION"
ENV_MARKER = "ENVFORGE_ENV"


class EnvironmentDescriptor(BaseModel):
    """Ordered mapping of variable name to value.

    ``search_paths`` names the variables whose values are ``os.pathsep``
    separated lists; a session prefixes those onto the host value instead
    of replacing it. ``inputs`` lists the store paths that contributed,
    in precedence order.
    """

    model_config = ConfigDict(frozen=True)

    name: str = "default"
    variables: dict[str, str] = Field(default_factory=dict)
    search_paths: tuple[str, ...] = ()
    inputs: tuple[str, ...] = ()

    @property
    def digest(self) -> str:
        return content_address(self.model_dump(mode="json"))

    def is_search_path(self, variable: str) -> bool:
        return variable in self.search_paths

    def render_shell(self) -> str:
        """Render as POSIX ``export`` lines, one per variable, in order."""
        lines = [
            f"export {key}={shlex.quote(value)}" for key, value in self.variables.items()
        ]
        return "\n".join(lines) + ("\n" if lines else "")

    def render_json(self) -> str:
        """Render as JSON preserving variable order."""
        payload = {
            "name": self.name,
            "digest": self.digest,
            "variables": self.variables,
            "search_paths": list(self.search_paths),
            "inputs": list(self.inputs),
        }
        return json.dumps(payload, indent=2) + "\n"

    def canonical_bytes(self) -> bytes:
        return canonical_json_bytes(self.model_dump(mode="json"))
