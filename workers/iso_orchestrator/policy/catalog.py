"""
Service and model catalog: the allow-list for build requests.

Anything not named here is rejected by the validator.  Service dependencies
form the graph the validator closes requests over; hidden entries are
backing datastores that only ever arrive as dependencies.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping

CATALOG_VERSION = "2024.11"

SERVICE_CATEGORIES: dict[str, str] = {
    "ai": "AI & Machine Learning",
    "homelab": "Homelab Services",
    "infrastructure": "Infrastructure",
}


@dataclass(frozen=True)
class ServiceSpec:
    """A container service that can be baked into the image."""

    name: str
    display: str
    description: str
    category: str
    size_mb: int
    dependencies: tuple[str, ...] = ()
    hidden: bool = False
    required: bool = False


@dataclass(frozen=True)
class ModelSpec:
    """A model artifact that can be preloaded into the image."""

    name: str
    display: str
    description: str
    size_gb: float


@dataclass(frozen=True)
class Catalog:
    """Immutable allow-list of services and models."""

    services: Mapping[str, ServiceSpec] = field(default_factory=dict)
    models: Mapping[str, ModelSpec] = field(default_factory=dict)

    def dependency_graph(self) -> dict[str, tuple[str, ...]]:
        return {name: spec.dependencies for name, spec in self.services.items()}

    def visible_services(self) -> list[ServiceSpec]:
        return [s for s in self.services.values() if not s.hidden]

    def model_size_gb(self, name: str) -> float:
        spec = self.models.get(name)
        return spec.size_gb if spec else 0.0


def _services(*specs: ServiceSpec) -> dict[str, ServiceSpec]:
    return {s.name: s for s in specs}


def _models(*specs: ModelSpec) -> dict[str, ModelSpec]:
    return {m.name: m for m in specs}


# ── AI & machine learning ────────────────────────────────────────────

_AI_SERVICES = (
    ServiceSpec("ollama", "Ollama (LLM Runtime)", "Local LLM runtime with GPU support", "ai", 2048),
    ServiceSpec("openwebui", "OpenWebUI", "Web interface for Ollama", "ai", 512, ("ollama",)),
    ServiceSpec("langflow", "LangFlow", "Visual AI workflow builder", "ai", 1536, ("ollama",)),
    ServiceSpec(
        "langgraph", "LangGraph", "Stateful agent workflow engine", "ai", 819,
        ("ollama", "langgraph-redis", "langgraph-db"),
    ),
    ServiceSpec("qdrant", "Qdrant", "Vector database for embeddings", "ai", 307),
    ServiceSpec("n8n", "n8n", "Workflow automation platform", "ai", 614, ("ollama",)),
)

# ── Homelab services ─────────────────────────────────────────────────

_HOMELAB_SERVICES = (
    ServiceSpec(
        "nextcloud", "Nextcloud", "File storage & collaboration", "homelab", 1229,
        ("nextcloud-db", "nextcloud-redis"),
    ),
    ServiceSpec("plex", "Plex", "Media server with transcoding", "homelab", 819),
    ServiceSpec("pihole", "Pi-hole", "Network-wide ad blocking", "homelab", 205),
    ServiceSpec("homarr", "Homarr", "Homelab dashboard", "homelab", 154),
    ServiceSpec("hoarder", "Hoarder", "Bookmark manager", "homelab", 102),
)

# ── Infrastructure (including hidden backing stores) ─────────────────

_INFRA_SERVICES = (
    ServiceSpec("nginx", "Nginx", "Reverse proxy with SSL", "infrastructure", 51, required=True),
    ServiceSpec(
        "portainer", "Portainer", "Container management UI", "infrastructure", 307,
        ("docker-socket-proxy",),
    ),
    ServiceSpec(
        "docker-socket-proxy", "Docker Socket Proxy", "Security layer for Docker API",
        "infrastructure", 51, hidden=True,
    ),
    ServiceSpec("langgraph-redis", "LangGraph Redis", "Redis for LangGraph", "infrastructure", 51, hidden=True),
    ServiceSpec("langgraph-db", "LangGraph Database", "PostgreSQL for LangGraph", "infrastructure", 102, hidden=True),
    ServiceSpec("nextcloud-db", "Nextcloud Database", "PostgreSQL for Nextcloud", "infrastructure", 102, hidden=True),
    ServiceSpec("nextcloud-redis", "Nextcloud Redis", "Redis for Nextcloud", "infrastructure", 51, hidden=True),
)

_MODELS = (
    ModelSpec("qwen3:8b", "Qwen3 8B", "Fast general-purpose model (8B parameters)", 4.7),
    ModelSpec("qwen3-coder:30b", "Qwen3 Coder 30B", "Code-specialized model (30B parameters)", 17.0),
    ModelSpec("qwen3-vl:8b", "Qwen3 VL 8B", "Vision-language multimodal model", 5.5),
    ModelSpec("gpt-oss:20b", "GPT-OSS 20B", "Open-source GPT-style model (20B parameters)", 12.0),
)

DEFAULT_CATALOG = Catalog(
    services=_services(*_AI_SERVICES, *_HOMELAB_SERVICES, *_INFRA_SERVICES),
    models=_models(*_MODELS),
)
