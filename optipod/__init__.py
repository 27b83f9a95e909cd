"""
OptiPod - Kubernetes resource-sizing controller.

This package watches OptimizationPolicy custom resources, discovers the
workloads they govern, computes right-sized CPU and memory requests from
observed utilization and applies them under the policy's update strategy.
"""

__version__ = "0.1.0"
__author__ = "OptiPod Team"
