"""
Stochastic gradient descent as a shard update rule.

An SGD instance is a valid update_fn for AllReduceParameterManager: it
updates one weight slice in place from its summed gradient and keeps its
bookkeeping in the shard's state table.

State keys (read from `state`, falling back to the instance defaults):
- learningRate, learningRateDecay, weightDecay
- momentum, dampening, nesterov
- evalCounter: number of updates applied so far (written back)
- clr: negated learning rate used by the last update (written back)
- dfdx: momentum buffer for this shard (written back)
"""

from typing import Any, Dict, Optional

import torch


class SGD:
    """
    Plain SGD with learning-rate decay, weight decay and momentum.

    The effective rate at update n is lr / (1 + n * learningRateDecay).
    """

    def __init__(
        self,
        learning_rate: float = 1e-3,
        learning_rate_decay: float = 0.0,
        weight_decay: float = 0.0,
        momentum: float = 0.0,
        dampening: Optional[float] = None,
        nesterov: bool = False,
        gradient_scale: float = 1.0
    ):
        """
        Args:
            learning_rate: Base learning rate
            learning_rate_decay: Decay applied per update
            weight_decay: L2 penalty coefficient
            momentum: Momentum factor (0 disables momentum)
            dampening: Momentum dampening (default: same as momentum)
            nesterov: Use Nesterov momentum
            gradient_scale: Multiplier applied to the summed gradient, e.g.
                1 / num_partitions to average instead of sum
        """
        if nesterov and (momentum <= 0 or (dampening or 0.0) != 0):
            raise ValueError("Nesterov momentum requires a momentum and zero dampening")

        self.learning_rate = learning_rate
        self.learning_rate_decay = learning_rate_decay
        self.weight_decay = weight_decay
        self.momentum = momentum
        self.dampening = momentum if dampening is None else dampening
        self.nesterov = nesterov
        self.gradient_scale = gradient_scale

    def __call__(self, weight: torch.Tensor, gradient: torch.Tensor, state: Dict[str, Any]) -> None:
        lr = state.get("learningRate", self.learning_rate)
        lrd = state.get("learningRateDecay", self.learning_rate_decay)
        wd = state.get("weightDecay", self.weight_decay)
        mom = state.get("momentum", self.momentum)
        damp = state.get("dampening", self.dampening)
        nesterov = state.get("nesterov", self.nesterov)
        nevals = state.get("evalCounter", 0)

        dfdx = gradient.to(weight.dtype)
        if self.gradient_scale != 1.0:
            dfdx = dfdx * self.gradient_scale

        if wd != 0:
            dfdx = dfdx.add(weight, alpha=wd)

        if mom != 0:
            buffer = state.get("dfdx")
            if buffer is None:
                buffer = dfdx.clone()
            else:
                buffer.mul_(mom).add_(dfdx, alpha=1 - damp)
            state["dfdx"] = buffer

            if nesterov:
                dfdx = dfdx.add(buffer, alpha=mom)
            else:
                dfdx = buffer

        clr = -lr / (1 + nevals * lrd)
        weight.add_(dfdx, alpha=clr)

        state["clr"] = clr
        state["evalCounter"] = nevals + 1

    def __repr__(self):
        return (f"SGD(lr={self.learning_rate}, lrd={self.learning_rate_decay}, "
                f"wd={self.weight_decay}, momentum={self.momentum})")
