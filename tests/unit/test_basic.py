"""Basic tests to verify project setup."""


def test_import_cluster_lifecycle():
    """Test that cluster_lifecycle package can be imported."""
    import cluster_lifecycle

    assert cluster_lifecycle.__version__ == "0.1.0"


def test_import_cli():
    """Test that CLI module can be imported."""
    from cluster_lifecycle import cli

    assert cli.app is not None


def test_import_models():
    """Test that models module can be imported."""
    from cluster_lifecycle import models

    assert models.ClusterSpec is not None


def test_static_tables_are_read_only():
    """Test that the deployment tables can't be modified."""
    import pytest

    from cluster_lifecycle.constants import CAPI_DEPLOYMENTS, CLUSTER_DEPLOYMENTS

    with pytest.raises(TypeError):
        CAPI_DEPLOYMENTS["new-namespace"] = ("controller",)
    with pytest.raises(TypeError):
        CLUSTER_DEPLOYMENTS["new.log"] = None

    assert len(CLUSTER_DEPLOYMENTS) == 13
