"""Update rules usable as AllReduce update functions."""

from optim.sgd import SGD

__all__ = ["SGD"]
