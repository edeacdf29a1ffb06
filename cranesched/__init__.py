"""Load-aware and NUMA-topology-aware scheduling logic, binding records and a Prometheus query client."""

__version__ = "0.1.0"