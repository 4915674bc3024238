"""Deploy handoff document.

The only contract between steiger and deployment tooling: a flat JSON
document listing every published artifact with the reference it was pushed
to. The shape matches skaffold's ``--build-artifacts`` file.

Example:
    {"builds": [{"imageName": "web", "tag": "registry.example/org/web:v1@sha256:..."}]}
"""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field


class BuildEntry(BaseModel):
    """One published artifact."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    image_name: str = Field(..., alias="imageName", description="Artifact name")
    tag: str = Field(..., description="Full reference, registry/repo:tag[@digest]")


class BuildsFile(BaseModel):
    """Collection of published artifacts handed to the deploy step."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    builds: list[BuildEntry] = Field(default_factory=list)

    @classmethod
    def from_references(cls, references: Mapping[str, str]) -> BuildsFile:
        """Build the document from an ``artifact -> reference`` mapping.

        Entries are sorted by artifact name so the file is stable across runs.
        """
        return cls(
            builds=[
                BuildEntry(image_name=name, tag=reference)
                for name, reference in sorted(references.items())
            ]
        )

    def references(self) -> dict[str, str]:
        """Return the ``artifact -> reference`` mapping."""
        return {entry.image_name: entry.tag for entry in self.builds}

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    def write(self, path: str | Path) -> None:
        """Write the document to ``path``."""
        Path(path).write_text(self.to_json(), encoding="utf-8")

    @classmethod
    def read(cls, path: str | Path) -> BuildsFile:
        """Read a document previously written with ``write``."""
        return cls.model_validate_json(Path(path).read_text(encoding="utf-8"))


__all__ = ["BuildEntry", "BuildsFile"]
