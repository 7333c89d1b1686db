"""Project detection: proposes a dev command, port and framework for a directory."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Protocol

from devpreview.dev.logging import DevLogComponent, get_logger
from devpreview.models import Framework, ProjectDetectionResult, ProjectType

logger = get_logger(DevLogComponent.DETECTOR)


class ProjectDetector(Protocol):
    """Anything that can inspect a project root and propose how to run it."""

    async def detect(self, project_root: Path) -> ProjectDetectionResult: ...


# (dependency, framework name, project type, dev command, port), first match wins
_NODE_FRAMEWORKS: tuple[tuple[tuple[str, ...], str, ProjectType, str, int], ...] = (
    (("next",), "Next.js", ProjectType.NEXTJS, "npm run dev", 3000),
    (("react", "vite"), "React (Vite)", ProjectType.REACT, "npm run dev", 5173),
    (("react-scripts",), "Create React App", ProjectType.REACT, "npm start", 3000),
    (("vue",), "Vue.js", ProjectType.VUE, "npm run serve", 8080),
    (("express",), "Express.js", ProjectType.NODE, "npm start", 3000),
)

# package.json scripts that override the framework default, in priority order
_SCRIPT_COMMANDS: tuple[tuple[str, str], ...] = (
    ("dev", "npm run dev"),
    ("start:dev", "npm run start:dev"),
    ("serve", "npm run serve"),
    ("start", "npm start"),
)


def _static_result() -> ProjectDetectionResult:
    return ProjectDetectionResult(
        type=ProjectType.STATIC,
        framework=Framework(name="Static HTML"),
        dev_command="python -m http.server 8080 --bind 127.0.0.1",
        port=8080,
    )


def _python_result() -> ProjectDetectionResult:
    return ProjectDetectionResult(
        type=ProjectType.PYTHON,
        framework=Framework(name="Python Server"),
        dev_command="python -m http.server 8000 --bind 127.0.0.1",
        port=8000,
    )


def _unknown_result() -> ProjectDetectionResult:
    return ProjectDetectionResult(
        type=ProjectType.UNKNOWN,
        dev_command='echo "No suitable dev command found"',
        port=3000,
    )


def _has_files_with_suffix(directory: Path, suffix: str) -> bool:
    try:
        return any(p.is_file() and p.suffix == suffix for p in directory.iterdir())
    except OSError:
        return False


def analyze_node_project(package_json: dict[str, Any]) -> ProjectDetectionResult:
    """Pick framework, dev command and port from a parsed package.json."""
    dependencies: dict[str, Any] = {
        **(package_json.get("dependencies") or {}),
        **(package_json.get("devDependencies") or {}),
    }
    scripts: dict[str, str] = {
        k: str(v) for k, v in (package_json.get("scripts") or {}).items()
    }

    framework: Framework | None = None
    project_type = ProjectType.NODE
    dev_command = "npm start"
    port = 3000
    for deps, name, ptype, command, default_port in _NODE_FRAMEWORKS:
        if all(dep in dependencies for dep in deps):
            framework = Framework(name=name, version=dependencies.get(deps[0]))
            project_type, dev_command, port = ptype, command, default_port
            break

    for script, command in _SCRIPT_COMMANDS:
        if script in scripts:
            dev_command = command
            break

    return ProjectDetectionResult(
        type=project_type,
        framework=framework,
        package_manager="npm",
        has_lock_file=True,
        dev_command=dev_command,
        port=port,
        scripts=scripts,
    )


class SimpleProjectDetector:
    """File-presence based detector used when no other detector is supplied."""

    async def detect(self, project_root: Path) -> ProjectDetectionResult:
        result = self._detect(project_root)
        logger.info(
            f"Detected {result.type.value} project at {project_root} "
            f"(framework={result.framework.name if result.framework else None}, "
            f"command={result.dev_command!r}, port={result.port})"
        )
        return result

    def _detect(self, project_root: Path) -> ProjectDetectionResult:
        if (project_root / "index.html").is_file():
            return _static_result()

        package_json_path = project_root / "package.json"
        if package_json_path.is_file():
            try:
                package_json = json.loads(package_json_path.read_text())
            except (OSError, ValueError) as e:
                logger.warning(f"Failed to parse {package_json_path}, defaulting to static: {e}")
                return _static_result()
            if not isinstance(package_json, dict):
                return _static_result()
            return analyze_node_project(package_json)

        if _has_files_with_suffix(project_root, ".py"):
            return _python_result()

        if _has_files_with_suffix(project_root, ".html"):
            return _static_result()

        return _unknown_result()
