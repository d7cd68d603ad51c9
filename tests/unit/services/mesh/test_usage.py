"""Unit tests for revision usage detection."""

from __future__ import annotations

import pytest

from mesh_operator.integrations.kubernetes.models import NamespaceLabels, PodLabels
from mesh_operator.services.mesh.usage import (
    is_revision_in_use,
    namespace_revision,
    pod_revision,
)
from mesh_operator.utils.values import Values

INJECTION = {"istio-injection": "enabled"}
REV_CANARY = {"istio.io/rev": "canary"}
REV_STABLE = {"istio.io/rev": "stable"}


@pytest.mark.unit
class TestNamespaceRevision:
    """Tests for namespace_revision."""

    @pytest.mark.parametrize(
        ("labels", "expected"),
        [
            ({}, ""),
            (None, ""),
            (INJECTION, "default"),
            ({"istio-injection": "disabled"}, ""),
            (REV_CANARY, "canary"),
            ({**INJECTION, **REV_CANARY}, "default"),
        ],
    )
    def test_namespace_revision(self, labels: dict | None, expected: str) -> None:
        assert namespace_revision(labels) == expected


@pytest.mark.unit
class TestPodRevision:
    """Tests for pod_revision precedence."""

    @pytest.mark.parametrize(
        ("pod_labels", "annotations", "ns_labels", "expected"),
        [
            # nothing references a revision
            ({}, {}, {}, ""),
            # namespace labels apply to pods
            ({}, {}, INJECTION, "default"),
            ({}, {}, REV_CANARY, "canary"),
            # the injected-by annotation wins over everything
            ({}, {"istio.io/rev": "stable"}, REV_CANARY, "stable"),
            ({"sidecar.istio.io/inject": "false"}, {"istio.io/rev": "stable"}, {}, "stable"),
            # namespace labels beat the pod's own revision label
            (REV_STABLE, {}, REV_CANARY, "canary"),
            (REV_STABLE, {}, INJECTION, "default"),
            # pod revision label when the namespace has none
            (REV_STABLE, {}, {}, "stable"),
            # inject=false ignores the namespace but not the pod label
            ({"sidecar.istio.io/inject": "false"}, {}, REV_CANARY, ""),
            ({"sidecar.istio.io/inject": "false", **REV_STABLE}, {}, REV_CANARY, "stable"),
            # inject=true alone selects the default revision
            ({"sidecar.istio.io/inject": "true"}, {}, {}, "default"),
            ({"sidecar.istio.io/inject": "true"}, {}, REV_CANARY, "canary"),
            ({"sidecar.istio.io/inject": "true", **REV_STABLE}, {}, {}, "stable"),
        ],
    )
    def test_pod_revision(
        self,
        pod_labels: dict,
        annotations: dict,
        ns_labels: dict,
        expected: str,
    ) -> None:
        assert pod_revision(pod_labels, annotations, ns_labels) == expected


@pytest.mark.unit
class TestIsRevisionInUse:
    """Tests for is_revision_in_use."""

    def test_namespace_reference(self) -> None:
        namespaces = [NamespaceLabels(name="app", labels=REV_CANARY)]
        assert is_revision_in_use("canary", Values(), namespaces, [])
        assert not is_revision_in_use("stable", Values(), namespaces, [])

    def test_pod_reference(self) -> None:
        namespaces = [NamespaceLabels(name="app")]
        pods = [PodLabels(name="p", namespace="app", labels=REV_STABLE)]
        assert is_revision_in_use("stable", Values(), namespaces, pods)

    def test_pods_in_unknown_namespaces_are_skipped(self) -> None:
        pods = [PodLabels(name="p", namespace="gone", labels=REV_STABLE)]
        assert not is_revision_in_use("stable", Values(), [], pods)

    def test_default_revision_enabled_by_default(self) -> None:
        """enableNamespacesByDefault makes the default revision always in use."""
        values = Values({"sidecarInjectorWebhook": {"enableNamespacesByDefault": True}})
        assert is_revision_in_use("default", values, [], [])
        assert not is_revision_in_use("canary", values, [], [])

    def test_enable_by_default_must_be_boolean(self) -> None:
        values = Values({"sidecarInjectorWebhook": {"enableNamespacesByDefault": "yes"}})
        with pytest.raises(TypeError):
            is_revision_in_use("default", values, [], [])
