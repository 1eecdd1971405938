"""Resource spec loading with validation.

Specs are Kubernetes-style YAML documents, any number per file:

```yaml
apiVersion: convergence.azure.io/v1
kind: SqlDatabase
metadata:
  name: appdb
  resourceGroup: rg-app
spec:
  dependsOn:
    - role: server
      kind: SqlServer
      name: sql-app-weu
  location: westeurope
  skuName: S0
```

Everything under ``spec`` except ``dependsOn`` and ``deletionRequested`` is
the kind-specific attribute mapping.

SECURITY: All file operations enforce size limits to prevent DoS attacks
via large files. Input validation is performed at the boundary.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .models import ResourceInstance

logger = logging.getLogger(__name__)

# Maximum size of a single spec file
MAX_SPEC_FILE_SIZE_BYTES = 1024 * 1024

# Maximum number of spec files read from one directory
MAX_SPEC_FILES = 1000

SPEC_FILE_PATTERNS: tuple[str, ...] = ("*.yaml", "*.yml")

SUPPORTED_API_VERSIONS: frozenset[str] = frozenset({"convergence.azure.io/v1"})

ENVELOPE_SPEC_KEYS: frozenset[str] = frozenset({"dependsOn", "deletionRequested"})


class SpecLoadError(Exception):
    """Raised when spec loading or validation fails."""

    pass


def load_instances(
    specs_dir: Path, *, subscription_id: str | None = None
) -> list[ResourceInstance]:
    """Load and validate every resource spec under ``specs_dir``.

    Files are read in sorted order, so the result is deterministic.

    Args:
        specs_dir: Directory containing spec files.
        subscription_id: Managed subscription. Instances naming another
            subscription are rejected.

    Returns:
        Validated resource instances.

    Raises:
        SpecLoadError: If a file cannot be loaded or fails validation, if two
            documents declare the same instance, or if an instance names a
            subscription other than ``subscription_id``.
    """
    if not specs_dir.is_dir():
        raise SpecLoadError(f"Specs directory not found: {specs_dir}")

    paths = sorted({path for pattern in SPEC_FILE_PATTERNS for path in specs_dir.rglob(pattern)})
    if len(paths) > MAX_SPEC_FILES:
        raise SpecLoadError(
            f"Specs directory contains {len(paths)} files, maximum is {MAX_SPEC_FILES}"
        )

    instances: list[ResourceInstance] = []
    seen: dict[str, Path] = {}
    for path in paths:
        for instance in load_file(path):
            previous = seen.get(instance.key)
            if previous is not None:
                raise SpecLoadError(
                    f"Duplicate instance {instance.key} in {path} (first declared in {previous})"
                )
            if subscription_id and instance.declares_other_subscription(subscription_id):
                raise SpecLoadError(
                    f"{instance.key} in {path} declares subscription "
                    f"{instance.subscription_id}, but this operator manages {subscription_id}"
                )
            seen[instance.key] = path
            instances.append(instance)

    logger.info(
        "Loaded resource specs",
        extra={"specs_dir": str(specs_dir), "files": len(paths), "instances": len(instances)},
    )
    return instances


def load_file(spec_path: Path) -> list[ResourceInstance]:
    """Load every document of one spec file.

    Raises:
        SpecLoadError: If the file cannot be read or a document is invalid.
    """
    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = spec_path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat spec file {spec_path}: {e}") from e

    if file_size > MAX_SPEC_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"Spec file exceeds maximum size of {MAX_SPEC_FILE_SIZE_BYTES} bytes: {spec_path}"
        )

    try:
        content = spec_path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read spec file {spec_path}: {e}") from e

    try:
        documents = [doc for doc in yaml.safe_load_all(content) if doc is not None]
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {spec_path}: {e}") from e

    return [parse_document(doc, f"{spec_path}[{index}]") for index, doc in enumerate(documents)]


def parse_document(document: Any, source: str) -> ResourceInstance:
    """Turn one YAML document into a ResourceInstance.

    Raises:
        SpecLoadError: If the document is malformed or fails validation.
    """
    if not isinstance(document, dict):
        raise SpecLoadError(f"Spec document must be a YAML mapping: {source}")

    api_version = document.get("apiVersion")
    if api_version not in SUPPORTED_API_VERSIONS:
        raise SpecLoadError(
            f"Unsupported apiVersion {api_version!r} in {source}; "
            f"expected one of {sorted(SUPPORTED_API_VERSIONS)}"
        )

    metadata = document.get("metadata") or {}
    spec = document.get("spec") or {}
    if not isinstance(metadata, dict):
        raise SpecLoadError(f"metadata must be a mapping: {source}")
    if not isinstance(spec, dict):
        raise SpecLoadError(f"spec must be a mapping: {source}")

    data: dict[str, Any] = {
        "kind": document.get("kind"),
        "name": metadata.get("name"),
        "resourceGroup": metadata.get("resourceGroup"),
        "subscriptionId": metadata.get("subscriptionId"),
        "dependsOn": spec.get("dependsOn") or [],
        "deletionRequested": spec.get("deletionRequested", False),
        "attributes": {key: value for key, value in spec.items() if key not in ENVELOPE_SPEC_KEYS},
    }

    try:
        return ResourceInstance.model_validate(data)
    except ValidationError as e:
        raise SpecLoadError(f"Validation failed for {source}:\n{format_validation_error(e)}") from e


def format_validation_error(error: ValidationError) -> str:
    """Format pydantic validation errors for readability."""
    lines = []
    for item in error.errors():
        loc = ".".join(str(x) for x in item["loc"])
        lines.append(f"  - {loc}: {item['msg']}")
    return "\n".join(lines)
