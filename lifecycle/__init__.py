"""
lifecycle — control plane for a running multi-cloud Kubernetes cluster.

Subpackages:
    lifecycle.shared         — models, collaborator protocols, errors, event bus
    lifecycle.control_plane  — autoscaling, spot, upgrades, hooks, costs, facade
    lifecycle.telemetry      — simulated metrics collector
"""
