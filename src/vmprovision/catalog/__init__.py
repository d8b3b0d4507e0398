"""
YAML step definitions.

A step file lists steps in execution order:

    steps:
      - name: rust
        label: Rust
        script: |
          curl --proto '=https' --tlsv1.2 -sSf https://sh.rustup.rs | sh -s -- -y
        env:
          path: ["~/.cargo/bin"]

      - name: ruby
        script: rbenv install -s 3.3.0
        finalize: |
          rbenv global 3.3.0
          gem install bundler
        cache:
          tool: ruby
          version: 3.3.0
          artifact_dir: ~/.rbenv/versions/3.3.0

The packaged ``languages.yaml`` is the default language-runtime pipeline.
Optional packaged catalogs (``OPTIONAL_CATALOGS``) can be appended to it.

Usage:
    from vmprovision.catalog import load_steps, load_default_steps

    steps = load_steps("my-steps.yaml")
    steps = load_default_steps()
    steps = load_default_steps(extras=["go"])
"""

from __future__ import annotations

from importlib import resources
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from vmprovision.cache import CacheKey
from vmprovision.environment import EnvironmentUpdate
from vmprovision.errors import StepDefinitionError
from vmprovision.steps import ShellAction, Step

__all__ = [
    "CacheDefinition",
    "EnvDefinition",
    "StepDefinition",
    "StepFile",
    "load_steps",
    "load_default_steps",
    "parse_steps",
    "DEFAULT_CATALOG",
    "OPTIONAL_CATALOGS",
]

DEFAULT_CATALOG = "languages.yaml"
OPTIONAL_CATALOGS = {"go": "go.yaml"}


class CacheDefinition(BaseModel):
    """Cache section of a step definition."""

    model_config = ConfigDict(extra="forbid")

    tool: str
    version: str
    artifact_dir: str = Field(description="Directory the build produces (~ and $VARS allowed)")
    arch: Optional[str] = Field(default=None, description="Defaults to the host architecture")

    def key(self) -> CacheKey:
        if self.arch:
            return CacheKey(tool=self.tool, version=self.version, arch=self.arch)
        return CacheKey.for_host(self.tool, self.version)


class EnvDefinition(BaseModel):
    """Environment a completed step makes available."""

    model_config = ConfigDict(extra="forbid")

    vars: Dict[str, str] = Field(default_factory=dict)
    path: List[str] = Field(default_factory=list)

    def update(self) -> EnvironmentUpdate:
        return EnvironmentUpdate(vars=self.vars, path=tuple(self.path))


class StepDefinition(BaseModel):
    """One entry of a step file."""

    model_config = ConfigDict(extra="forbid")

    name: str
    label: Optional[str] = None
    script: str
    finalize: Optional[str] = None
    env: EnvDefinition = Field(default_factory=EnvDefinition)
    cache: Optional[CacheDefinition] = None

    def to_step(self) -> Step:
        return Step(
            name=self.name,
            label=self.label,
            action=ShellAction(self.script),
            finalize=ShellAction(self.finalize) if self.finalize else None,
            env=self.env.update(),
            cache_key=self.cache.key() if self.cache else None,
            artifact_dir=self.cache.artifact_dir if self.cache else None,
        )


class StepFile(BaseModel):
    """Top-level document of a step file."""

    model_config = ConfigDict(extra="forbid")

    steps: List[StepDefinition]


def parse_steps(data: Any, source: str = "<data>") -> List[Step]:
    """
    Build steps from already-parsed YAML data.

    Raises:
        StepDefinitionError: Invalid structure, invalid names or duplicates
    """
    if not isinstance(data, dict):
        raise StepDefinitionError(f"{source}: expected a mapping with a 'steps' list")
    try:
        document = StepFile.model_validate(data)
    except ValidationError as e:
        raise StepDefinitionError(f"{source}: {e}") from e

    steps: List[Step] = []
    seen = set()
    for definition in document.steps:
        if definition.name in seen:
            raise StepDefinitionError(f"{source}: duplicate step name '{definition.name}'")
        seen.add(definition.name)
        try:
            steps.append(definition.to_step())
        except ValueError as e:
            # Invalid cache key components surface as pydantic ValueErrors
            raise StepDefinitionError(f"{source}: step '{definition.name}': {e}") from e
    return steps


def load_steps(path: Union[str, Path]) -> List[Step]:
    """
    Load steps from a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist
        StepDefinitionError: If the file is not a valid step file
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Step file not found: {path}")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise StepDefinitionError(f"{path}: invalid YAML: {e}") from e
    return parse_steps(data, source=str(path))


def _load_packaged(filename: str) -> List[Step]:
    text = resources.files(__name__).joinpath(filename).read_text(encoding="utf-8")
    return parse_steps(yaml.safe_load(text), source=filename)


def load_default_steps(extras: Sequence[str] = ()) -> List[Step]:
    """
    Load the packaged language-runtime pipeline.

    Args:
        extras: Names from ``OPTIONAL_CATALOGS`` whose steps run after the
            default ones, in the order given.
    """
    steps = _load_packaged(DEFAULT_CATALOG)
    for extra in extras:
        if extra not in OPTIONAL_CATALOGS:
            raise StepDefinitionError(
                f"unknown catalog {extra!r}; choose from {', '.join(sorted(OPTIONAL_CATALOGS))}"
            )
        steps.extend(_load_packaged(OPTIONAL_CATALOGS[extra]))
    return steps
