"""
Core package for OptiPod.

Contains the policy model, sizing engine, discovery, update executor and
reconciliation machinery.
"""
