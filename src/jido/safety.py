"""Safety validation for files modified by an agent run.

The validator judges a change set against a ``SafetyConfig``:

``validate_files``
    Size, extension, forbidden-path and forbidden-pattern checks for every
    modified file, aggregated into a ``ValidationVerdict``.

``check_test_requirements``
    Whether code changes came with tests (or a test run).

``validate_package_manifest_changes``
    Whether a package manifest may be edited at all, and which risky fields
    it declares.

Violations are returned as values so callers can keep iterating; callers that
want to abort use ``ValidationVerdict.raise_for_violations``. Nothing in this
module writes to the working tree.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tomllib
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path, PurePosixPath
from typing import Any, Optional, Sequence

from .config import SafetyConfig
from .errors import FileValidationError, SafetyViolationError

logger = logging.getLogger(__name__)

MAX_CONCURRENT_CHECKS = 32

CODE_EXTENSIONS = frozenset({
    ".ts", ".js", ".tsx", ".jsx", ".mjs", ".cjs",
    ".py", ".go", ".rs", ".java", ".kt", ".rb",
})

# Manifest fields that run code at install time or publish executables.
MANIFEST_DENYLIST = {
    "package.json": ("scripts.preinstall", "scripts.postinstall", "scripts.install", "bin"),
    "pyproject.toml": ("project.scripts", "project.gui-scripts", "project.entry-points"),
}

_TEST_DIR_SEGMENTS = frozenset({"__tests__", "tests", "test"})


@dataclass(frozen=True)
class SafetyViolation:
    """One broken rule for one path."""

    rule: str
    path: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"rule": self.rule, "path": self.path, "message": self.message}


@dataclass(frozen=True)
class ValidationVerdict:
    """Aggregate result of ``validate_files``."""

    valid: bool
    violations: tuple[SafetyViolation, ...]
    validated_file_count: int

    @property
    def errors(self) -> list[str]:
        """Violation messages in the order they were produced."""
        return [v.message for v in self.violations]

    def raise_for_violations(self) -> None:
        """Raise SafetyViolationError if any rule was broken."""
        if self.valid:
            return
        first = self.violations[0]
        raise SafetyViolationError("; ".join(self.errors), first.rule)


@dataclass(frozen=True)
class TestRequirementVerdict:
    """Whether code changes are covered by tests."""

    __test__ = False  # not a pytest class

    satisfied: bool
    reason: str


@dataclass(frozen=True)
class ManifestVerdict:
    """Result of inspecting a package manifest."""

    valid: bool
    warnings: tuple[str, ...]
    manifest: dict[str, Any]


@dataclass
class SafetyReport:
    """Combined view of file validation, test requirements and extra checks."""

    overall: bool
    file_validation: ValidationVerdict
    test_requirements: TestRequirementVerdict
    additional_checks: dict[str, bool] = field(default_factory=dict)
    summary: str = ""

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "overall": self.overall,
            "file_validation": {
                "valid": self.file_validation.valid,
                "errors": self.file_validation.errors,
                "files_validated": self.file_validation.validated_file_count,
            },
            "test_requirements": {
                "satisfied": self.test_requirements.satisfied,
                "reason": self.test_requirements.reason,
            },
            "additional_checks": dict(self.additional_checks),
            "summary": self.summary,
        }


# =============================================================================
# Path helpers
# =============================================================================


@lru_cache(maxsize=256)
def glob_to_regex(pattern: str) -> re.Pattern[str]:
    """Compile a glob into an anchored regex.

    ``**`` matches across path segments (``**/`` also matches zero segments),
    ``*`` matches within one segment and ``?`` matches one non-separator
    character.
    """
    parts: list[str] = []
    i = 0
    while i < len(pattern):
        if pattern.startswith("**/", i):
            parts.append("(?:.*/)?")
            i += 3
        elif pattern.startswith("**", i):
            parts.append(".*")
            i += 2
        elif pattern[i] == "*":
            parts.append("[^/]*")
            i += 1
        elif pattern[i] == "?":
            parts.append("[^/]")
            i += 1
        else:
            parts.append(re.escape(pattern[i]))
            i += 1
    return re.compile("".join(parts) + r"\Z")


def relative_to_base(file_path: str | Path, base_path: str | Path) -> str:
    """Resolve a path against base_path and return it relative, POSIX style.

    Paths outside base_path come back starting with ``..``.
    """
    base = Path(base_path).resolve()
    candidate = Path(file_path)
    if not candidate.is_absolute():
        candidate = base / candidate
    return Path(os.path.relpath(candidate.resolve(), base)).as_posix()


def _is_forbidden_path(relative_path: str, forbidden_paths: frozenset[str]) -> bool:
    if relative_path == ".." or relative_path.startswith("../"):
        return True
    segments = relative_path.split("/")
    for forbidden in forbidden_paths:
        entry = forbidden.strip("/")
        if not entry:
            continue
        if relative_path == entry or relative_path.startswith(entry + "/"):
            return True
        if entry in segments:
            return True
    return False


def _matched_pattern(relative_path: str, patterns: frozenset[str]) -> Optional[str]:
    for pattern in sorted(patterns):
        if glob_to_regex(pattern).match(relative_path):
            return pattern
    return None


def is_test_file(path: str) -> bool:
    """True if the path follows a common test-file naming convention."""
    posix = PurePosixPath(path.replace("\\", "/"))
    name = posix.name
    if ".test." in name or ".spec." in name:
        return True
    if name.startswith("test_") and name.endswith(".py"):
        return True
    if name.endswith(("_test.py", "_test.go")):
        return True
    return any(part in _TEST_DIR_SEGMENTS for part in posix.parts[:-1])


# =============================================================================
# File validation
# =============================================================================


def _check_file_size(file_path: Path, max_size: int) -> bool:
    try:
        return file_path.stat().st_size <= max_size
    except OSError as exc:
        raise FileValidationError(f"Cannot read file {file_path}: {exc.strerror or exc}") from exc


def _validate_single_file(
    file_path: str, base_path: Path, config: SafetyConfig
) -> list[SafetyViolation]:
    violations: list[SafetyViolation] = []
    absolute = Path(file_path)
    if not absolute.is_absolute():
        absolute = base_path / absolute
    relative_path = relative_to_base(file_path, base_path)

    try:
        if not _check_file_size(absolute, config.max_file_size):
            violations.append(SafetyViolation(
                "file-too-large",
                file_path,
                f"File too large: {file_path} exceeds {config.max_file_size} bytes",
            ))
    except FileValidationError as exc:
        violations.append(SafetyViolation(
            "unreadable-file", file_path, f"Cannot read file {file_path}: {exc.__cause__}"
        ))

    suffix = PurePosixPath(relative_path).suffix
    if not config.allows_any_extension and suffix not in config.allowed_extensions:
        violations.append(SafetyViolation(
            "forbidden-extension", file_path, f"Forbidden file extension: {file_path}"
        ))

    if _is_forbidden_path(relative_path, config.effective_forbidden_paths):
        violations.append(SafetyViolation(
            "forbidden-path", file_path, f"Forbidden path: {file_path}"
        ))

    pattern = _matched_pattern(relative_path, config.effective_forbidden_patterns)
    if pattern is not None:
        violations.append(SafetyViolation(
            "forbidden-pattern",
            file_path,
            f"Matches forbidden pattern: {file_path} ({pattern})",
        ))

    return violations


def validate_files(
    file_paths: Sequence[str],
    base_path: str | Path,
    config: Optional[SafetyConfig] = None,
) -> ValidationVerdict:
    """Validate a change set against the safety policy.

    Args:
        file_paths: Modified paths, absolute or relative to base_path.
        base_path: Directory the paths are resolved against.
        config: Safety policy. Defaults to ``SafetyConfig()``.

    Returns:
        ValidationVerdict aggregating every violation of every file.
    """
    config = config or SafetyConfig()
    base = Path(base_path).resolve()
    paths = list(file_paths)

    if len(paths) > config.max_files_modified:
        message = (
            f"Too many files modified: {len(paths)} exceeds limit of "
            f"{config.max_files_modified}"
        )
        logger.warning(message)
        return ValidationVerdict(
            valid=False,
            violations=(SafetyViolation("max-files-exceeded", "", message),),
            validated_file_count=0,
        )

    if not paths:
        return ValidationVerdict(valid=True, violations=(), validated_file_count=0)

    workers = min(MAX_CONCURRENT_CHECKS, len(paths))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="jido-safety") as pool:
        per_file = list(pool.map(lambda p: _validate_single_file(p, base, config), paths))

    violations = tuple(v for file_violations in per_file for v in file_violations)
    logger.debug(f"Validated {len(paths)} files, {len(violations)} violations")

    return ValidationVerdict(
        valid=not violations,
        violations=violations,
        validated_file_count=len(paths),
    )


# =============================================================================
# Test requirements
# =============================================================================


def check_test_requirements(
    modified_files: Sequence[str],
    base_path: str | Path,
    config: Optional[SafetyConfig] = None,
    tests_were_run: bool = False,
) -> TestRequirementVerdict:
    """Check that code changes are accompanied by tests.

    Args:
        modified_files: Paths changed during the run.
        base_path: Repository root (kept for symmetry with validate_files).
        config: Safety policy. Defaults to ``SafetyConfig()``.
        tests_were_run: True if the agent executed a test suite.

    Returns:
        TestRequirementVerdict with a populated reason.
    """
    config = config or SafetyConfig()

    if not config.require_tests:
        return TestRequirementVerdict(True, "Test requirements disabled")

    code_files = [
        f for f in modified_files
        if PurePosixPath(f.replace("\\", "/")).suffix in CODE_EXTENSIONS and not is_test_file(f)
    ]

    if not code_files:
        return TestRequirementVerdict(True, "No code files modified")

    if tests_were_run:
        return TestRequirementVerdict(
            True,
            f"Tests were executed by agent for {len(code_files)} modified code file(s)",
        )

    test_files = [f for f in modified_files if is_test_file(f)]
    if not test_files:
        return TestRequirementVerdict(
            False,
            f"Code files modified but no test files found. Modified: {', '.join(code_files)}",
        )

    return TestRequirementVerdict(
        True, f"Found {len(test_files)} test files for {len(code_files)} code files"
    )


# =============================================================================
# Package manifests
# =============================================================================


def _load_manifest(manifest_path: Path) -> dict[str, Any]:
    if manifest_path.name == "pyproject.toml":
        with open(manifest_path, "rb") as f:
            return tomllib.load(f)
    with open(manifest_path, encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError("manifest root is not an object")
    return data


def _has_field(data: dict[str, Any], dotted: str) -> bool:
    current: Any = data
    for part in dotted.split("."):
        if not isinstance(current, dict) or part not in current:
            return False
        current = current[part]
    return True


def validate_package_manifest_changes(
    manifest_path: str | Path,
    config: Optional[SafetyConfig] = None,
) -> ManifestVerdict:
    """Check whether a package manifest edit is allowed and flag risky fields.

    Args:
        manifest_path: Path to ``package.json`` or ``pyproject.toml``.
        config: Safety policy. Defaults to ``SafetyConfig()``.

    Returns:
        ManifestVerdict; denylisted fields are warnings, not failures.

    Raises:
        SafetyViolationError: If manifest edits are not allowed, or the
            manifest cannot be read.
    """
    config = config or SafetyConfig()
    path = Path(manifest_path)

    if not config.allow_package_manifest_modification:
        raise SafetyViolationError(
            f"{path.name} modification is not allowed by safety configuration",
            "package-manifest-forbidden",
        )

    try:
        manifest = _load_manifest(path)
    except (OSError, ValueError, tomllib.TOMLDecodeError) as exc:
        raise SafetyViolationError(
            f"{path.name} validation failed: {exc}", "package-manifest-validation"
        ) from exc

    denylist = MANIFEST_DENYLIST.get(path.name, MANIFEST_DENYLIST["package.json"])
    warnings = tuple(
        f"Potentially dangerous field detected: {name}"
        for name in denylist
        if _has_field(manifest, name)
    )
    for warning in warnings:
        logger.warning(f"{path}: {warning}")

    return ManifestVerdict(valid=not warnings, warnings=warnings, manifest=manifest)


# =============================================================================
# Reporting
# =============================================================================


def create_safety_report(
    validation: ValidationVerdict,
    test_requirement: TestRequirementVerdict,
    additional_checks: Optional[dict[str, bool]] = None,
) -> SafetyReport:
    """Combine verdicts into a single pass/fail report."""
    checks = dict(additional_checks or {})
    overall = validation.valid and test_requirement.satisfied and all(checks.values())

    def mark(ok: bool) -> str:
        return "PASS" if ok else "FAIL"

    lines = [
        f"Files: {mark(validation.valid)} ({validation.validated_file_count} validated)",
        f"Tests: {mark(test_requirement.satisfied)} ({test_requirement.reason})",
    ]
    lines.extend(f"{name}: {mark(passed)}" for name, passed in checks.items())

    return SafetyReport(
        overall=overall,
        file_validation=validation,
        test_requirements=test_requirement,
        additional_checks=checks,
        summary="\n".join(lines),
    )
