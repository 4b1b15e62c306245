"""Terraform wrapper for publishing Dynatrace configuration.

This package provides a CLI tool that makes a pinned Terraform release
available, supplies Dynatrace credentials through the environment and runs
terraform init/plan/apply/destroy from a menu or from flags.
"""

from .version import __version__

__all__ = ["__version__"]
