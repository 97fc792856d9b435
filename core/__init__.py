"""
Core building blocks: shard partitioning, the FP16 codec, the worker pool
and the error taxonomy.
"""
