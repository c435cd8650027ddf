"""
Rigger - declarative reconciler for a self-managed kubeadm cluster on AWS.

This package provisions EC2 infrastructure, a container registry, cluster
credentials, Helm releases and ArgoCD Applications by comparing declared
resources against live provider state and converging the difference.
"""

__version__ = "0.1.0"
__author__ = "Rigger"
