"""In-process administrative-template import (``*.admx`` plus language ``*.adml``)."""

from __future__ import annotations

import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Final

from applyforge.utils.concurrency import CancellationToken

ADMX_SUFFIX: Final[str] = ".admx"
ADML_SUFFIX: Final[str] = ".adml"


@dataclass(frozen=True, slots=True)
class TemplateImportReport:
    destination: Path
    copied: tuple[tuple[Path, Path], ...] = ()

    @property
    def admx_count(self) -> int:
        return sum(1 for _, target in self.copied if target.suffix.lower() == ADMX_SUFFIX)

    @property
    def adml_count(self) -> int:
        return sum(1 for _, target in self.copied if target.suffix.lower() == ADML_SUFFIX)

    def render(self) -> str:
        lines = [f"destination: {self.destination}"]
        lines.extend(f"copied {source} -> {target}" for source, target in self.copied)
        lines.append(f"admx={self.admx_count} adml={self.adml_count}")
        return "\n".join(lines) + "\n"


def import_templates(
    template_root: Path,
    destination: Path,
    *,
    cancellation: CancellationToken | None = None,
) -> TemplateImportReport:
    """Copy ``*.admx`` to ``destination`` and ``*.adml`` into its language sub-folder.

    An ``.adml`` file keeps the name of the directory that contains it
    (``en-US/foo.adml`` lands in ``<destination>/en-US/foo.adml``). Cancellation
    is checked for every enumerated file.
    """

    root = Path(template_root)
    if not root.is_dir():
        raise FileNotFoundError(f"template root not found: {root}")

    copied: list[tuple[Path, Path]] = []
    for current_dir, dir_names, file_names in os.walk(root):
        dir_names.sort()
        current = Path(current_dir)
        for file_name in sorted(file_names):
            if cancellation is not None:
                cancellation.raise_if_cancelled("template import")
            suffix = Path(file_name).suffix.lower()
            if suffix == ADMX_SUFFIX:
                target = destination / file_name
            elif suffix == ADML_SUFFIX:
                target = (
                    destination / file_name
                    if current == root
                    else destination / current.name / file_name
                )
            else:
                continue
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(current / file_name, target)
            copied.append((current / file_name, target))

    return TemplateImportReport(destination=destination, copied=tuple(copied))


__all__ = ["ADML_SUFFIX", "ADMX_SUFFIX", "TemplateImportReport", "import_templates"]
