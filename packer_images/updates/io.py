"""Manifest loading and repository checks.

This module provides helpers for loading updatecli manifests from YAML
files, validating them, and checking that their targets exist in the
repository.
"""

from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from packer_images.updates.schema import ManifestSchema, ManifestValidationResult

MANIFEST_PATTERNS = ("*.yaml", "*.yml")


class ManifestError(Exception):
    """Raised when a manifest cannot be loaded."""

    def __init__(self, message: str, path: Path, code: str = "manifest_error") -> None:
        super().__init__(message)
        self.path = path
        self.code = code


def load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML file and return its contents as a dict.

    Args:
        path: Path to the YAML file.

    Returns:
        Parsed YAML content as a dictionary.

    Raises:
        FileNotFoundError: If the file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
        ValueError: If the document is not a mapping.
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected a YAML mapping, got {type(data).__name__}")
    return data


def parse_manifest_data(data: dict[str, Any]) -> ManifestSchema:
    """Parse and validate manifest data.

    Raises:
        pydantic.ValidationError: If data does not match schema.
        ValueError: If id references are dangling.
    """
    manifest = ManifestSchema.model_validate(data)
    manifest.validate_references()
    return manifest


def load_manifest(path: Path) -> ManifestSchema:
    """Load and validate a manifest file.

    Raises:
        ManifestError: If the file cannot be read or is invalid.
    """
    try:
        return parse_manifest_data(load_yaml(path))
    except FileNotFoundError as e:
        raise ManifestError(f"Manifest not found: {path}", path, code="not_found") from e
    except yaml.YAMLError as e:
        raise ManifestError(f"Invalid YAML in {path}: {e}", path, code="yaml_error") from e
    except ValidationError as e:
        raise ManifestError(
            f"Invalid manifest {path}:\n{e}", path, code="validation_error"
        ) from e
    except ValueError as e:
        raise ManifestError(f"Invalid manifest {path}: {e}", path, code="validation_error") from e


def find_manifest_files(directory: Path) -> list[Path]:
    """Return the manifest files of a directory, sorted by name."""
    if not directory.is_dir():
        raise ManifestError(
            f"Manifests directory not found: {directory}", directory, code="not_found"
        )
    files: set[Path] = set()
    for pattern in MANIFEST_PATTERNS:
        files.update(p for p in directory.glob(pattern) if p.is_file())
    return sorted(files)


def load_manifests(directory: Path) -> list[tuple[Path, ManifestSchema]]:
    """Load every manifest of a directory.

    Raises:
        ManifestError: On the first invalid manifest.
    """
    return [(path, load_manifest(path)) for path in find_manifest_files(directory)]


def lookup_key(data: Any, key: str) -> bool:
    """True when a dotted key path exists in parsed YAML data."""
    current = data
    for part in key.split("."):
        if not isinstance(current, dict) or part not in current:
            return False
        current = current[part]
    return True


def target_errors(manifest: ManifestSchema, repo_root: Path) -> list[str]:
    """Check that every target file exists and holds its key."""
    errors: list[str] = []
    for target_id, target in manifest.targets.items():
        file_path = repo_root / target.spec.file
        if not file_path.is_file():
            errors.append(f"targets.{target_id}: file not found: {target.spec.file}")
            continue
        try:
            data = load_yaml(file_path)
        except (yaml.YAMLError, ValueError) as e:
            errors.append(f"targets.{target_id}: cannot parse {target.spec.file}: {e}")
            continue
        if not lookup_key(data, target.spec.key):
            errors.append(
                f"targets.{target_id}: key '{target.spec.key}' not found in {target.spec.file}"
            )
    return errors


def validate_manifest_file(path: Path, repo_root: Path | None = None) -> ManifestValidationResult:
    """Validate one manifest, optionally against the repository content."""
    try:
        data = load_yaml(path)
        manifest = ManifestSchema.model_validate(data)
    except (FileNotFoundError, yaml.YAMLError, ValueError) as e:
        # pydantic.ValidationError is a ValueError subclass
        return ManifestValidationResult(path=str(path), success=False, errors=[str(e)])

    errors = manifest.reference_errors()
    if repo_root is not None:
        errors.extend(target_errors(manifest, repo_root))
    return ManifestValidationResult(
        path=str(path), name=manifest.name, success=not errors, errors=errors
    )


def validate_manifests(
    directory: Path, repo_root: Path | None = None
) -> list[ManifestValidationResult]:
    """Validate every manifest of a directory."""
    return [validate_manifest_file(path, repo_root) for path in find_manifest_files(directory)]


__all__ = [
    "ManifestError",
    "find_manifest_files",
    "load_manifest",
    "load_manifests",
    "load_yaml",
    "lookup_key",
    "parse_manifest_data",
    "target_errors",
    "validate_manifest_file",
    "validate_manifests",
]
