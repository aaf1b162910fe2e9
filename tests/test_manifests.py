"""Tests for manifest loading and dumping."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml
from store_mock import make_hardware, make_machine

from tinkerbell_provider.config import MAX_MANIFEST_FILE_SIZE_BYTES
from tinkerbell_provider.manifests import (
    ManifestLoadError,
    dump_manifests,
    load_manifests,
    load_store,
    parse_manifests,
)
from tinkerbell_provider.models import MACHINE_FINALIZER, Hardware, TinkerbellMachine

INVENTORY = """\
apiVersion: tinkerbell.org/v1alpha1
kind: Hardware
metadata:
  name: hw-0
  labels:
    rack: r1
spec:
  disks:
    - device: /dev/nvme0n1
  metadata:
    instance:
      id: "3c:ec:ef:4c:4f:54"
  interfaces:
    - dhcp:
        mac: "3c:ec:ef:4c:4f:54"
        ip:
          address: 10.0.0.10
---
apiVersion: infrastructure.cluster.x-k8s.io/v1beta1
kind: TinkerbellMachine
metadata:
  name: worker-0
  namespace: cluster-a
spec:
  version: v1.28.3
  bootstrapData: |
    #cloud-config
    provider-id: PROVIDER_ID
---
"""


class TestParseManifests:
    """Tests for parse_manifests function."""

    def test_parses_every_document(self) -> None:
        """Test a multi-document manifest yields typed resources."""
        resources = parse_manifests(INVENTORY)

        assert [type(r) for r in resources] == [Hardware, TinkerbellMachine]
        assert resources[0].spec.disks[0].device == "/dev/nvme0n1"
        assert resources[1].namespace == "cluster-a"
        assert resources[1].spec.bootstrap_data.startswith("#cloud-config")

    def test_invalid_yaml(self) -> None:
        """Test that broken YAML names the source."""
        with pytest.raises(ManifestLoadError, match="Invalid YAML in inventory.yaml"):
            parse_manifests("kind: [unclosed", source="inventory.yaml")

    def test_non_mapping_document(self) -> None:
        """Test that a scalar document is rejected."""
        with pytest.raises(ManifestLoadError, match="must be a YAML mapping"):
            parse_manifests("- just\n- a list\n")

    def test_unknown_kind(self) -> None:
        """Test that unsupported kinds are rejected."""
        with pytest.raises(ManifestLoadError) as exc_info:
            parse_manifests("kind: Cluster\nmetadata:\n  name: c\n")

        assert "Unknown kind" in str(exc_info.value)

    def test_validation_errors_are_formatted(self) -> None:
        """Test that field paths appear in the error message."""
        content = (
            "kind: TinkerbellMachine\n"
            "metadata: {name: w}\n"
            "spec:\n"
            "  hardwareAffinity:\n"
            "    preferred:\n"
            "      - weight: 500\n"
        )
        with pytest.raises(ManifestLoadError) as exc_info:
            parse_manifests(content)

        assert "spec.hardwareAffinity.preferred.0.weight" in str(exc_info.value)


class TestLoadManifests:
    """Tests for reading manifest files."""

    def test_missing_file(self, tmp_path: Path) -> None:
        """Test that a missing file raises ManifestLoadError."""
        with pytest.raises(ManifestLoadError, match="not found"):
            load_manifests(tmp_path / "nope.yaml")

    def test_oversized_file(self, tmp_path: Path) -> None:
        """Test that files over the size limit are refused before reading."""
        path = tmp_path / "big.yaml"
        path.write_text("#" * (MAX_MANIFEST_FILE_SIZE_BYTES + 1))

        with pytest.raises(ManifestLoadError, match="exceeds maximum size"):
            load_manifests(path)

    def test_load_store(self, tmp_path: Path) -> None:
        """Test that load_store populates an InMemoryStore."""
        path = tmp_path / "inventory.yaml"
        path.write_text(INVENTORY)

        store = load_store([path])

        assert store.get(Hardware, "default", "hw-0").metadata.resource_version
        assert store.get(TinkerbellMachine, "cluster-a", "worker-0").spec.version == "v1.28.3"

    def test_load_store_keeps_deletion_mark(self, tmp_path: Path) -> None:
        """Test a machine being deleted stays marked while its finalizer remains."""
        path = tmp_path / "inventory.yaml"
        path.write_text(
            "kind: TinkerbellMachine\n"
            "metadata:\n"
            "  name: worker-0\n"
            "  deletionTimestamp: '2024-05-01T12:00:00Z'\n"
            f"  finalizers: [{MACHINE_FINALIZER}]\n"
            "spec: {bootstrapData: x}\n"
        )

        store = load_store([path])

        machine = store.get(TinkerbellMachine, "default", "worker-0")
        assert machine.metadata.deletion_timestamp is not None
        assert machine.metadata.finalizers == [MACHINE_FINALIZER]

    def test_load_store_drops_deleted_without_finalizers(self, tmp_path: Path) -> None:
        """Test a deleted object with nothing holding it is not loaded."""
        path = tmp_path / "inventory.yaml"
        path.write_text(
            "kind: TinkerbellMachine\n"
            "metadata: {name: worker-0, deletionTimestamp: '2024-05-01T12:00:00Z'}\n"
            "spec: {bootstrapData: x}\n"
        )

        store = load_store([path])

        assert store.list(TinkerbellMachine) == []

    def test_duplicate_objects(self, tmp_path: Path) -> None:
        """Test that the same identity in two files is an error."""
        first = tmp_path / "a.yaml"
        second = tmp_path / "b.yaml"
        first.write_text(INVENTORY)
        second.write_text(INVENTORY)

        with pytest.raises(ManifestLoadError, match="Duplicate object"):
            load_store([first, second])


class TestDumpManifests:
    """Tests for dump_manifests function."""

    def test_dump_uses_stored_field_names(self) -> None:
        """Test that dumped documents use camelCase and omit unset fields."""
        machine = make_machine("worker-0", hardware_name="hw-0")

        documents = list(yaml.safe_load_all(dump_manifests([machine])))

        spec = documents[0]["spec"]
        assert documents[0]["kind"] == "TinkerbellMachine"
        assert spec["hardwareName"] == "hw-0"
        assert "hardwareAffinity" not in spec
        assert "deletionTimestamp" not in documents[0]["metadata"]

    def test_dump_parses_back(self) -> None:
        """Test that dumped manifests load again unchanged."""
        hardware = make_hardware("hw-0", labels={"rack": "r1"})

        reloaded = parse_manifests(dump_manifests([hardware]))

        assert reloaded[0].model_dump() == hardware.model_dump()
