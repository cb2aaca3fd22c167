"""
Request validation and dependency closure.

Turns a raw build request into a normalized, closed ``BuildConfig`` or raises
``ValidationFailed``.  Pure: nothing is stored, nothing is provisioned.
"""
from __future__ import annotations

import math
import re
from typing import Iterable, Mapping, Optional, Sequence

from iso_orchestrator.io.schema import BuildConfig
from iso_orchestrator.policy.catalog import Catalog
from iso_orchestrator.policy.errors import ValidationFailed
from iso_orchestrator.policy.profile import OrchestratorProfile

SERVICE_PATTERN = re.compile(r"^[a-z0-9][a-z0-9-]{0,63}$")
MODEL_PATTERN = re.compile(r"^[a-z0-9][a-z0-9.-]{0,63}:[a-z0-9][a-z0-9.-]{0,31}$")
IMAGE_NAME_PATTERN = re.compile(r"^[A-Za-z0-9._-]{3,200}$")
REQUESTER_MAX_LEN = 128

RESERVED_NAMES = frozenset(
    {"CON", "PRN", "AUX", "NUL"}
    | {f"COM{i}" for i in range(1, 10)}
    | {f"LPT{i}" for i in range(1, 10)}
)


# =============================================================================
# Dependency closure
# =============================================================================

def dependency_closure(
    selected: Iterable[str],
    graph: Mapping[str, Sequence[str]],
) -> list[str]:
    """Close *selected* under the service → dependencies relation.

    Worklist traversal over an explicit graph; cycles are harmless.
    Returns a sorted, duplicate-free list.
    """
    closed: set[str] = set()
    pending = list(selected)
    while pending:
        name = pending.pop()
        if name in closed:
            continue
        closed.add(name)
        pending.extend(dep for dep in graph.get(name, ()) if dep not in closed)
    return sorted(closed)


# =============================================================================
# Field checks
# =============================================================================

def _check_identifiers(
    values: Sequence,
    *,
    field: str,
    pattern: re.Pattern,
    allowed: Mapping,
    max_count: int,
) -> list[str]:
    # Length check before iterating
    if len(values) > max_count:
        raise ValidationFailed(f"Maximum {max_count} {field} allowed", field=field)

    cleaned = []
    for index, value in enumerate(values):
        if not isinstance(value, str):
            raise ValidationFailed(
                f"{field}[{index}] must be a string, got {type(value).__name__}",
                field=field,
            )
        value = value.strip()
        if not pattern.fullmatch(value):
            raise ValidationFailed(f"Invalid {field} identifier format: {value!r}", field=field)
        if value not in allowed:
            raise ValidationFailed(f"Unknown {field} identifier: {value}", field=field)
        cleaned.append(value)
    return cleaned


def validate_image_name(name: str) -> str:
    """Check an image name is a safe, flat file-name stem."""
    if not isinstance(name, str):
        raise ValidationFailed("image_name must be a string", field="image_name")
    name = name.strip()
    if not IMAGE_NAME_PATTERN.fullmatch(name):
        raise ValidationFailed(
            "Invalid image name. Use 3-200 characters from: a-z A-Z 0-9 . - _",
            field="image_name",
        )
    if ".." in name:
        raise ValidationFailed("Invalid image name: '..' is not allowed", field="image_name")
    if name[0] in ".-" or name[-1] in ".-":
        raise ValidationFailed(
            "Invalid image name. Cannot start or end with period or hyphen.",
            field="image_name",
        )
    if re.search(r"[._-]{3,}", name):
        raise ValidationFailed(
            "Invalid image name. Cannot contain 3+ consecutive special characters.",
            field="image_name",
        )
    if name.upper() in RESERVED_NAMES:
        raise ValidationFailed("Invalid image name. Name is reserved by the system.", field="image_name")
    return name


def validate_requester(requester: str) -> str:
    if not isinstance(requester, str) or not requester.strip():
        raise ValidationFailed("requester identity is required", field="requester")
    requester = requester.strip()
    if len(requester) > REQUESTER_MAX_LEN or not requester.isprintable():
        raise ValidationFailed("requester identity is malformed", field="requester")
    return requester


# =============================================================================
# Entry point
# =============================================================================

def validate_request(
    *,
    services: Sequence,
    models: Optional[Sequence],
    gpu: bool,
    requester: str,
    image_name: Optional[str],
    catalog: Catalog,
    profile: OrchestratorProfile,
) -> BuildConfig:
    """Validate a build request and return its normalized, closed configuration.

    Raises
    ------
    ValidationFailed
        On the first malformed, unknown or out-of-bounds value.
    """
    if services is None or isinstance(services, (str, bytes)):
        raise ValidationFailed("services must be a list", field="services")
    if not services:
        raise ValidationFailed("At least one service must be selected", field="services")
    if models is not None and isinstance(models, (str, bytes)):
        raise ValidationFailed("models must be a list", field="models")
    if not isinstance(gpu, bool):
        raise ValidationFailed("gpu must be a boolean", field="gpu")

    selected = _check_identifiers(
        list(services),
        field="services",
        pattern=SERVICE_PATTERN,
        allowed=catalog.services,
        max_count=profile.max_services_per_build,
    )
    chosen_models = _check_identifiers(
        list(models or []),
        field="models",
        pattern=MODEL_PATTERN,
        allowed=catalog.models,
        max_count=profile.max_models_per_build,
    )

    return BuildConfig(
        services=dependency_closure(selected, catalog.dependency_graph()),
        models=sorted(set(chosen_models)),
        gpu=gpu,
        requester=validate_requester(requester),
        image_name=validate_image_name(image_name or profile.default_image_name),
    )


def estimate_minutes(config: BuildConfig, catalog: Catalog) -> int:
    """Rough wall-clock estimate for a build, in minutes."""
    minutes = 30.0                        # base image preparation
    minutes += 2 * len(config.services)   # per container image
    for model in config.models:
        minutes += 5 + catalog.model_size_gb(model)
    minutes += 15                         # image customisation and repack
    return math.ceil(minutes)
