"""
Tests for iso_orchestrator.core.validator: normalization, closure, rejection.
"""
import pytest

from iso_orchestrator.core.validator import (
    dependency_closure,
    estimate_minutes,
    validate_image_name,
    validate_request,
)
from iso_orchestrator.io.schema import BuildConfig
from iso_orchestrator.policy.catalog import DEFAULT_CATALOG
from iso_orchestrator.policy.errors import FailureReason, ValidationFailed
from iso_orchestrator.policy.profile import OrchestratorProfile

PROFILE = OrchestratorProfile.v1()


def _validate(services, models=None, gpu=False, requester="alice", image_name=None, profile=PROFILE):
    return validate_request(
        services=services,
        models=models,
        gpu=gpu,
        requester=requester,
        image_name=image_name,
        catalog=DEFAULT_CATALOG,
        profile=profile,
    )


class TestDependencyClosure:

    def test_transitive_closure(self):
        graph = {"a": ("b",), "b": ("c",), "c": ()}
        assert dependency_closure(["a"], graph) == ["a", "b", "c"]

    def test_cycle_terminates(self):
        graph = {"a": ("b",), "b": ("a",)}
        assert dependency_closure(["a"], graph) == ["a", "b"]

    def test_closure_is_exact(self):
        """Nothing outside the selection and its dependencies is added."""
        result = dependency_closure(["openwebui"], DEFAULT_CATALOG.dependency_graph())
        assert result == ["ollama", "openwebui"]


class TestValidateRequest:

    def test_dependencies_added_and_sorted(self):
        config = _validate(["openwebui"])
        assert config.services == ["ollama", "openwebui"]

    def test_hidden_dependencies_included(self):
        config = _validate(["nextcloud"])
        assert config.services == ["nextcloud", "nextcloud-db", "nextcloud-redis"]

    def test_models_deduplicated_and_sorted(self):
        config = _validate(["ollama"], models=["qwen3:8b", "gpt-oss:20b", "qwen3:8b"])
        assert config.models == ["gpt-oss:20b", "qwen3:8b"]

    def test_duplicate_services_collapse(self):
        config = _validate(["ollama", "ollama", " ollama "])
        assert config.services == ["ollama"]

    def test_default_image_name(self):
        config = _validate(["ollama"])
        assert config.image_name == PROFILE.default_image_name

    def test_returns_build_config(self):
        config = _validate(["qdrant"], gpu=True, requester="bob")
        assert isinstance(config, BuildConfig)
        assert config.gpu is True
        assert config.requester == "bob"

    def test_unknown_service_rejected(self):
        with pytest.raises(ValidationFailed) as exc_info:
            _validate(["ollama", "unknownsvc"])
        assert exc_info.value.reason == FailureReason.VALIDATION
        assert exc_info.value.field == "services"
        assert "unknownsvc" in exc_info.value.message

    def test_malformed_service_rejected(self):
        with pytest.raises(ValidationFailed):
            _validate(["Ollama;rm -rf /"])

    def test_malformed_model_rejected(self):
        with pytest.raises(ValidationFailed) as exc_info:
            _validate(["ollama"], models=["qwen3"])
        assert exc_info.value.field == "models"

    def test_unknown_model_rejected(self):
        with pytest.raises(ValidationFailed):
            _validate(["ollama"], models=["llama:70b"])

    def test_empty_services_rejected(self):
        with pytest.raises(ValidationFailed):
            _validate([])

    def test_services_must_be_list(self):
        with pytest.raises(ValidationFailed):
            _validate("ollama")

    def test_non_string_identifier_rejected(self):
        with pytest.raises(ValidationFailed):
            _validate(["ollama", 42])

    def test_gpu_must_be_bool(self):
        with pytest.raises(ValidationFailed):
            _validate(["ollama"], gpu="yes")

    def test_too_many_services(self):
        profile = OrchestratorProfile.v1(max_services_per_build=2)
        with pytest.raises(ValidationFailed) as exc_info:
            _validate(["ollama", "qdrant", "plex"], profile=profile)
        assert "Maximum 2" in exc_info.value.message

    def test_too_many_models(self):
        profile = OrchestratorProfile.v1(max_models_per_build=1)
        with pytest.raises(ValidationFailed):
            _validate(["ollama"], models=["qwen3:8b", "gpt-oss:20b"], profile=profile)

    def test_missing_requester_rejected(self):
        with pytest.raises(ValidationFailed) as exc_info:
            _validate(["ollama"], requester="  ")
        assert exc_info.value.field == "requester"


class TestValidateImageName:

    @pytest.mark.parametrize("name", ["my-image", "ubuntu-24.04.3-custom", "Lab_ISO"])
    def test_accepts_valid_names(self, name):
        assert validate_image_name(name) == name

    @pytest.mark.parametrize(
        "name",
        ["ab", "../etc/passwd", "name with spaces", "-leading", "trailing.", "a...b", "CON", "x" * 201],
    )
    def test_rejects_invalid_names(self, name):
        with pytest.raises(ValidationFailed):
            validate_image_name(name)


class TestEstimateMinutes:

    def test_services_only(self):
        config = _validate(["openwebui"])
        # 30 + 2 * 2 services + 15
        assert estimate_minutes(config, DEFAULT_CATALOG) == 49

    def test_models_add_size(self):
        config = _validate(["ollama"], models=["qwen3:8b"])
        # 30 + 2 + (5 + 4.7) + 15 = 56.7 -> 57
        assert estimate_minutes(config, DEFAULT_CATALOG) == 57
