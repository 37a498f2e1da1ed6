"""Declaration parsing — turns a declaration file into a Declaration.

Two shapes are accepted. A ``.toml`` file::

    [environment]
    name = "rkmpp-dev"
    packages = ["libdrm", "meson>=1.0", { name = "pkg-config", tags = ["build-tool"] }]
    shell_hook = "echo ready"

    [environment.env]
    CC = "gcc"

Anything else is read as a plain list, one requirement per line::

    # comments and blank lines are ignored
    libdrm>=2.4 [library]
    meson
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any

import tomli
from pydantic import ValidationError

from envforge.core.errors import DeclarationError
from envforge.models.specs import Declaration, DependencySpec

logger = logging.getLogger(__name__)

_LINE = re.compile(r"^(?P<requirement>[^\[\]]+?)\s*(?:\[(?P<tags>[^\[\]]*)\])?$")


def _split_tags(raw: str | None) -> tuple[str, ...]:
    if not raw:
        return ()
    return tuple(tag.strip() for tag in raw.split(",") if tag.strip())


def parse_requirement_line(text: str) -> DependencySpec:
    """Parse ``name[constraint] [tag,tag]`` into a DependencySpec.

    Raises
    ------
    ValueError
        If the line is not a valid requirement.
    """
    match = _LINE.match(text.strip())
    if match is None:
        raise ValueError(f"cannot parse {text.strip()!r}")
    return DependencySpec.parse(match["requirement"], _split_tags(match["tags"]))


def _dedupe(specs: list[DependencySpec]) -> tuple[DependencySpec, ...]:
    seen: set[DependencySpec] = set()
    result = []
    for spec in specs:
        if spec in seen:
            logger.debug("Ignoring duplicate request %s", spec)
            continue
        seen.add(spec)
        result.append(spec)
    return tuple(result)


def parse_plain_list(text: str, *, name: str = "default", source: str = "") -> Declaration:
    specs = []
    for lineno, line in enumerate(text.splitlines(), start=1):
        stripped = line.split("#", 1)[0].strip()
        if not stripped:
            continue
        try:
            specs.append(parse_requirement_line(stripped))
        except (ValueError, ValidationError) as exc:
            raise DeclarationError(f"{source or '<declaration>'}:{lineno}: {exc}") from exc
    return Declaration(name=name, specs=_dedupe(specs), source=source)


def _package_spec(item: Any, where: str) -> DependencySpec:
    if isinstance(item, str):
        return parse_requirement_line(item)
    if isinstance(item, dict):
        unknown = set(item) - {"name", "version", "tags"}
        if unknown:
            raise ValueError(f"{where}: unknown keys {sorted(unknown)}")
        tags = item.get("tags", [])
        if isinstance(tags, str):
            tags = [tags]
        return DependencySpec(
            name=item.get("name", ""),
            constraint=item.get("version", ""),
            tags=tuple(tags),
        )
    raise ValueError(f"{where}: expected a string or table, got {type(item).__name__}")


def parse_toml(text: str, *, default_name: str = "default", source: str = "") -> Declaration:
    where = source or "<declaration>"
    try:
        data = tomli.loads(text)
    except tomli.TOMLDecodeError as exc:
        raise DeclarationError(f"{where}: {exc}") from exc

    section = data.get("environment")
    if not isinstance(section, dict):
        raise DeclarationError(f"{where}: missing [environment] table")
    packages = section.get("packages", [])
    if not isinstance(packages, list):
        raise DeclarationError(f"{where}: 'packages' must be an array")

    specs = []
    for position, item in enumerate(packages):
        try:
            specs.append(_package_spec(item, f"packages[{position}]"))
        except (ValueError, ValidationError) as exc:
            raise DeclarationError(f"{where}: {exc}") from exc

    env = section.get("env", {})
    if not isinstance(env, dict) or not all(isinstance(v, str) for v in env.values()):
        raise DeclarationError(f"{where}: [environment.env] values must be strings")
    shell_hook = section.get("shell_hook", "")
    if not isinstance(shell_hook, str):
        raise DeclarationError(f"{where}: 'shell_hook' must be a string")

    try:
        return Declaration(
            name=section.get("name", default_name),
            specs=_dedupe(specs),
            shell_hook=shell_hook,
            env=env,
            source=source,
        )
    except ValidationError as exc:
        raise DeclarationError(f"{where}: {exc}") from exc


def parse_declaration(path: Path) -> Declaration:
    """Read the declaration at *path*.

    Raises
    ------
    DeclarationError
        If the file cannot be read or is malformed.
    """
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise DeclarationError(f"Cannot read declaration {path}: {exc}") from exc

    if path.suffix == ".toml":
        declaration = parse_toml(text, default_name=path.stem, source=str(path))
    else:
        declaration = parse_plain_list(text, name=path.stem, source=str(path))
    if not declaration.specs:
        logger.warning("Declaration %s requests no packages.", path)
    return declaration
