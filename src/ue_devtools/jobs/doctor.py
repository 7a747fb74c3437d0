"""Availability checks for engine toolchain executables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from ue_devtools.jobs.resolver import EngineLayout


@dataclass(slots=True)
class ToolCheckResult:
    """One toolchain executable check."""

    tool: str
    path: Path
    available: bool
    executable: bool
    error: str | None


def check_toolchain(layout: EngineLayout) -> list[ToolCheckResult]:
    """Check that every tool the resolver can invoke exists and is runnable."""

    results: list[ToolCheckResult] = []
    for tool, path in layout.tools().items():
        if not path.is_file():
            results.append(
                ToolCheckResult(
                    tool=tool,
                    path=path,
                    available=False,
                    executable=False,
                    error=f"Not found: {path}",
                ),
            )
            continue

        # Batch files and .NET assemblies carry no exec bit on Windows.
        executable = layout.windows or os.access(path, os.X_OK)
        results.append(
            ToolCheckResult(
                tool=tool,
                path=path,
                available=True,
                executable=executable,
                error=None if executable else f"Not executable: {path}",
            ),
        )
    return results
