"""Fixed deployment tables shared by every workflow.

Both tables are part of the external contract: operators look for log files
by these exact names. Treat them as read-only.
"""

from types import MappingProxyType

from cluster_lifecycle.models.cluster import Deployment

EKSA_SYSTEM_NAMESPACE = "eksa-system"
AVAILABLE_CONDITION = "Available"

# namespace -> cluster-api controller deployments that must be Available
CAPI_DEPLOYMENTS = MappingProxyType(
    {
        "capi-kubeadm-bootstrap-system": ("capi-kubeadm-bootstrap-controller-manager",),
        "capi-kubeadm-control-plane-system": ("capi-kubeadm-control-plane-controller-manager",),
        "capi-system": ("capi-controller-manager",),
        "capi-webhook-system": (
            "capi-controller-manager",
            "capi-kubeadm-bootstrap-controller-manager",
            "capi-kubeadm-control-plane-controller-manager",
        ),
        "cert-manager": ("cert-manager", "cert-manager-cainjector", "cert-manager-webhook"),
    }
)

# log file name -> deployment whose logs are collected into it
CLUSTER_DEPLOYMENTS = MappingProxyType(
    {
        "kubeadm-bootstrap-controller-manager.log": Deployment(
            name="capi-kubeadm-bootstrap-controller-manager",
            namespace="capi-kubeadm-bootstrap-system",
            container="manager",
        ),
        "kubeadm-control-plane-controller-manager.log": Deployment(
            name="capi-kubeadm-control-plane-controller-manager",
            namespace="capi-kubeadm-control-plane-system",
            container="manager",
        ),
        "capi-controller-manager.log": Deployment(
            name="capi-controller-manager", namespace="capi-system", container="manager"
        ),
        "wh-capi-controller-manager.log": Deployment(
            name="capi-controller-manager", namespace="capi-webhook-system", container="manager"
        ),
        "wh-capi-kubeadm-bootstrap-controller-manager.log": Deployment(
            name="capi-kubeadm-bootstrap-controller-manager",
            namespace="capi-webhook-system",
            container="manager",
        ),
        "wh-kubeadm-control-plane-controller-manager.log": Deployment(
            name="capi-kubeadm-control-plane-controller-manager",
            namespace="capi-webhook-system",
            container="manager",
        ),
        "cert-manager.log": Deployment(name="cert-manager", namespace="cert-manager"),
        "cert-manager-cainjector.log": Deployment(
            name="cert-manager-cainjector", namespace="cert-manager"
        ),
        "cert-manager-webhook.log": Deployment(
            name="cert-manager-webhook", namespace="cert-manager"
        ),
        "coredns.log": Deployment(name="coredns", namespace="kube-system"),
        "local-path-provisioner.log": Deployment(
            name="local-path-provisioner", namespace="local-path-storage"
        ),
        "capv-controller-manager.log": Deployment(
            name="capv-controller-manager", namespace="capv-system", container="manager"
        ),
        "wh-capv-controller-manager.log": Deployment(
            name="capv-controller-manager", namespace="capi-webhook-system", container="manager"
        ),
    }
)
