"""Manifest loading and dumping for the in-memory store.

Manifests are multi-document YAML files of Hardware, TinkerbellMachine,
Template and Workflow objects in their stored (camelCase) form:

    apiVersion: tinkerbell.org/v1alpha1
    kind: Hardware
    metadata:
      name: hw-0
      labels: {rack: r1}
    spec:
      disks: [{device: /dev/nvme0n1}]
      metadata: {instance: {id: "3c:ec:ef:4c:4f:54"}}
      interfaces: [{dhcp: {ip: {address: 10.0.0.10}}}]

SECURITY: file size is checked before reading to prevent DoS via large files.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_MANIFEST_FILE_SIZE_BYTES
from .errors import AlreadyExistsError
from .models import Resource, get_resource_class
from .store import InMemoryStore

logger = logging.getLogger(__name__)


class ManifestLoadError(Exception):
    """Raised when a manifest file cannot be read or validated."""

    pass


def parse_manifests(content: str, source: str = "<string>") -> list[Resource]:
    """Parse and validate every document in ``content``.

    Empty documents are skipped.

    Raises:
        ManifestLoadError: On invalid YAML, an unknown kind or a document
            that fails validation.
    """
    try:
        documents = [doc for doc in yaml.safe_load_all(content) if doc is not None]
    except yaml.YAMLError as e:
        raise ManifestLoadError(f"Invalid YAML in {source}: {e}") from e

    resources: list[Resource] = []
    for index, document in enumerate(documents):
        if not isinstance(document, dict):
            raise ManifestLoadError(f"Document {index} in {source} must be a YAML mapping")

        try:
            resource_class = get_resource_class(str(document.get("kind", "")))
        except ValueError as e:
            raise ManifestLoadError(f"Document {index} in {source}: {e}") from e

        try:
            resources.append(resource_class.model_validate(document))
        except ValidationError as e:
            # Format Pydantic validation errors for readability
            errors = []
            for error in e.errors():
                loc = ".".join(str(x) for x in error["loc"])
                errors.append(f"  - {loc}: {error['msg']}")
            error_list = "\n".join(errors)
            raise ManifestLoadError(
                f"Validation failed for document {index} in {source}:\n{error_list}"
            ) from e

    return resources


def load_manifests(path: Path) -> list[Resource]:
    """Read and validate a manifest file.

    Raises:
        ManifestLoadError: If the file is missing, too large, unreadable or invalid.
    """
    if not path.exists():
        raise ManifestLoadError(f"Manifest file not found: {path}")

    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise ManifestLoadError(f"Failed to stat manifest file {path}: {e}") from e

    if file_size > MAX_MANIFEST_FILE_SIZE_BYTES:
        raise ManifestLoadError(
            f"Manifest file exceeds maximum size of {MAX_MANIFEST_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ManifestLoadError(f"Failed to read manifest file {path}: {e}") from e

    resources = parse_manifests(content, source=str(path))
    logger.info("Loaded %d objects from %s", len(resources), path)
    return resources


def load_store(paths: Iterable[Path]) -> InMemoryStore:
    """Build an InMemoryStore populated from manifest files.

    Objects carrying a deletionTimestamp are deleted again after creation, so
    they stay marked while finalizers remain and are gone otherwise.

    Raises:
        ManifestLoadError: If any file fails to load or two documents share
            an identity.
    """
    store = InMemoryStore()
    for path in paths:
        for resource in load_manifests(path):
            try:
                store.create(resource)
            except AlreadyExistsError as e:
                raise ManifestLoadError(f"Duplicate object in {path}: {e}") from e
            if resource.metadata.deletion_timestamp is not None:
                store.delete(type(resource), resource.namespace, resource.name)
    return store


def to_document(resource: Resource) -> dict[str, Any]:
    return resource.model_dump(mode="json", by_alias=True, exclude_none=True)


def dump_manifests(resources: Iterable[Resource]) -> str:
    """Serialize resources as a multi-document YAML string."""
    return yaml.safe_dump_all(
        [to_document(resource) for resource in resources], sort_keys=False, default_flow_style=False
    )
