"""Packer Images - CI tooling for Jenkins infrastructure machine images.

This package drives matrix-based Packer builds across architectures, agent
operating systems and compute types, publishes container images, runs cloud
cleanup side tasks, and manages updatecli dependency-update manifests.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
