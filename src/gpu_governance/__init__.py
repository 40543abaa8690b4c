"""
GPU Governance - quota-governed sharing of a fixed GPU pool

Reconciles physical GPUs into allocatable units (whole devices,
time-sliced slots or MIG slices), moves devices between partition schemes
without disturbing running workloads, and admits workload requests fairly
across teams.
"""

__version__ = "0.1.0"
