"""Unit tests for reading cluster configs and writing artifacts."""

import os
import stat
from unittest.mock import patch

import pytest
import yaml

from cluster_lifecycle.exceptions import ValidationError
from cluster_lifecycle.filewriter import PERMISSION_0600, FileWriter
from cluster_lifecycle.manifests import (
    load_cluster_config,
    load_manifest,
    marshal_bundles,
    marshal_cluster_spec,
)
from cluster_lifecycle.models import ClusterSpec
from cluster_lifecycle.models.cluster import PAUSED_ANNOTATION


class TestLoadClusterConfig:
    """Tests for loading cluster configuration files."""

    def test_load(self, sample_cluster_config):
        """Test that the cluster, datacenter and machine configs are read."""
        resources = load_cluster_config(sample_cluster_config)

        assert resources.spec.name == "test-cluster"
        assert resources.spec.control_plane_configuration.endpoint.host == "10.0.0.10"
        assert resources.spec.worker_node_group_configurations[0].count == 2
        assert resources.datacenter_config.kind == "VSphereDatacenterConfig"
        assert [m.name for m in resources.machine_configs] == ["cp-machines", "worker-machines"]

    def test_missing_file(self, tmp_path):
        """Test that a missing file raises ValidationError."""
        with pytest.raises(ValidationError) as exc_info:
            load_cluster_config(tmp_path / "missing.yaml")

        assert "not found" in exc_info.value.message

    def test_unresolved_machine_ref(self, sample_cluster_config):
        """Test that a reference to an unknown machine config is rejected."""
        content = sample_cluster_config.read_text().replace(
            "name: worker-machines\nspec:\n  numCPUs: 4", "name: other\nspec:\n  numCPUs: 4"
        )
        sample_cluster_config.write_text(content)

        with pytest.raises(ValidationError) as exc_info:
            load_cluster_config(sample_cluster_config)

        assert "worker-machines" in exc_info.value.details

    def test_missing_datacenter(self, tmp_path):
        """Test that the referenced datacenter config must be present."""
        path = tmp_path / "cluster.yaml"
        path.write_text(
            "kind: Cluster\nmetadata:\n  name: c1\nspec:\n"
            "  datacenterRef:\n    kind: DockerDatacenterConfig\n    name: dc\n"
        )

        with pytest.raises(ValidationError) as exc_info:
            load_cluster_config(path)

        assert "DockerDatacenterConfig/dc" in exc_info.value.message

    def test_requires_one_cluster(self, tmp_path):
        """Test that exactly one Cluster document is required."""
        path = tmp_path / "cluster.yaml"
        path.write_text("kind: VSphereDatacenterConfig\nmetadata:\n  name: dc\n")

        with pytest.raises(ValidationError):
            load_cluster_config(path)


class TestMarshal:
    """Tests for rendering manifests."""

    def test_cluster_spec_round_trip(self, sample_cluster_config):
        """Test that the rendered cluster document parses back to the same spec."""
        resources = load_cluster_config(sample_cluster_config)
        resources.spec.paused = True

        documents = list(
            yaml.safe_load_all(
                marshal_cluster_spec(
                    resources.spec, resources.datacenter_config, resources.machine_configs
                )
            )
        )

        assert len(documents) == 4
        cluster = documents[0]
        assert "paused" not in cluster["spec"]
        assert PAUSED_ANNOTATION not in cluster["metadata"].get("annotations", {})
        parsed = ClusterSpec.from_manifest(cluster)
        assert parsed.spec_fields() == resources.spec.spec_fields()

    def test_bundles_renamed_after_cluster(self, spec):
        """Test that bundles take the cluster's name."""
        spec.bundles = {"kind": "Bundles", "metadata": {"name": "bundles-1"}, "spec": {"n": 1}}

        bundles = yaml.safe_load(marshal_bundles(spec))

        assert bundles["metadata"]["name"] == "test-cluster"
        assert bundles["spec"] == {"n": 1}
        assert spec.bundles["metadata"]["name"] == "bundles-1"

    def test_load_manifest_missing(self, tmp_path):
        """Test that a missing manifest raises ValidationError."""
        with pytest.raises(ValidationError):
            load_manifest(tmp_path / "missing.yaml")


class TestFileWriter:
    """Tests for writing artifacts."""

    def test_persistent_and_temporary_files(self, tmp_path):
        """Test where persistent and temporary files are written."""
        writer = FileWriter(tmp_path)

        persistent = writer.write("cluster.yaml", "kind: Cluster\n", persistent=True)
        temporary = writer.write("scratch.yaml", b"data")

        assert persistent == str(tmp_path / "cluster.yaml")
        assert temporary == str(tmp_path / "generated" / "scratch.yaml")

        writer.clean_up_temp()
        assert not (tmp_path / "generated").exists()
        assert (tmp_path / "cluster.yaml").exists()

    def test_permission(self, tmp_path):
        """Test that restricted files get mode 0600."""
        path = FileWriter(tmp_path).write(
            "c.kubeconfig", b"secret", persistent=True, permission=PERMISSION_0600
        )

        assert stat.S_IMODE((tmp_path / "c.kubeconfig").stat().st_mode) == 0o600
        assert path.endswith("c.kubeconfig")

    def test_with_dir(self, tmp_path):
        """Test that subdirectory writers are rooted below the parent."""
        logs = FileWriter(tmp_path).with_dir("logs")

        logs.write("capi.log", "line\n", persistent=True)

        assert (tmp_path / "logs" / "capi.log").read_text() == "line\n"

    def test_file_created_with_final_mode(self, tmp_path):
        """Test that restricted files are created with their mode, not chmodded later."""
        real_open = os.open

        with patch("cluster_lifecycle.filewriter.os.open", side_effect=real_open) as mock_open:
            FileWriter(tmp_path).write(
                "c.kubeconfig", b"secret", persistent=True, permission=PERMISSION_0600
            )

        assert mock_open.call_args.args[2] == PERMISSION_0600

    def test_rewrite_narrows_existing_file(self, tmp_path):
        """Test that overwriting a readable file restricts it."""
        existing = tmp_path / "c.kubeconfig"
        existing.write_text("old")
        existing.chmod(0o644)

        FileWriter(tmp_path).write(
            "c.kubeconfig", b"new", persistent=True, permission=PERMISSION_0600
        )

        assert stat.S_IMODE(existing.stat().st_mode) == 0o600
        assert existing.read_bytes() == b"new"
