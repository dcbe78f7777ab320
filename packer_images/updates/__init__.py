"""Dependency-update manifests module.

This module handles:
- Validation of updatecli manifests (YAML)
- Listing the version-bump tasks they describe
- Upstream version queries invoked by the manifests
- Running updatecli diff/apply
"""

from packer_images.updates.io import (
    ManifestError,
    load_manifest,
    load_manifests,
    validate_manifests,
)
from packer_images.updates.schema import (
    ManifestSchema,
    ManifestValidationResult,
    VersionBumpTask,
)

__all__ = [
    "ManifestError",
    "ManifestSchema",
    "ManifestValidationResult",
    "VersionBumpTask",
    "load_manifest",
    "load_manifests",
    "validate_manifests",
]
