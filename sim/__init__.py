"""
Legion AllReduce Simulation

Single-machine simulation of the distributed compute substrate: one task
per partition, each pinned to a simulated block-store node.
"""

__version__ = "0.1.0"
