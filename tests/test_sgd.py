"""
Tests for the SGD update rule
"""

import pytest
import torch

from optim.sgd import SGD


def square_step(sgd: SGD, x: torch.Tensor, state: dict):
    """One step on f(x) = x^2"""
    sgd(x, 2 * x, state)


class TestSGD:
    """Test SGD as a shard update function"""

    def test_plain_step(self):
        weight = torch.tensor([1.0, 2.0])
        state = {}

        SGD(learning_rate=0.5)(weight, torch.tensor([1.0, 1.0]), state)

        assert torch.allclose(weight, torch.tensor([0.5, 1.5]))
        assert state["evalCounter"] == 1
        assert state["clr"] == pytest.approx(-0.5)

    def test_gradient_scale_averages(self):
        weight = torch.zeros(3)

        SGD(learning_rate=1.0, gradient_scale=0.25)(weight, torch.full((3,), 4.0), {})

        assert torch.allclose(weight, torch.full((3,), -1.0))

    def test_learning_rate_decay(self):
        """Effective rate at update n is lr / (1 + n * decay)"""
        sgd = SGD(learning_rate=0.1, learning_rate_decay=0.1)
        weight = torch.zeros(1, dtype=torch.float64)
        state = {}

        for n in range(4):
            sgd(weight, torch.zeros(1, dtype=torch.float64), state)
            assert state["clr"] == pytest.approx(-0.1 / (1 + n * 0.1))

        assert state["evalCounter"] == 4

    def test_state_overrides_defaults(self):
        weight = torch.ones(1)
        state = {"learningRate": 1.0}

        SGD(learning_rate=0.01)(weight, torch.ones(1), state)

        assert weight.item() == pytest.approx(0.0)

    def test_weight_decay_momentum_sequence(self):
        """Ten steps on x^2 starting at 10 with decay, weight decay and momentum"""
        sgd = SGD(learning_rate=0.1, learning_rate_decay=5e-7, weight_decay=0.01, momentum=0.002)
        x = torch.tensor([10.0], dtype=torch.float64)
        state = {}

        for _ in range(10):
            square_step(sgd, x, state)

        assert x.item() == pytest.approx(1.0591906190415, abs=1e-4)
        assert state["evalCounter"] == 10
        assert "dfdx" in state

    def test_momentum_buffer_is_per_state(self):
        """Two shards keep independent momentum buffers"""
        sgd = SGD(learning_rate=0.1, momentum=0.9)
        first, second = {}, {}

        sgd(torch.zeros(2), torch.ones(2), first)
        sgd(torch.zeros(2), torch.full((2,), 3.0), second)

        assert torch.equal(first["dfdx"], torch.ones(2))
        assert torch.equal(second["dfdx"], torch.full((2,), 3.0))

    def test_nesterov(self):
        sgd = SGD(learning_rate=1.0, momentum=0.5, dampening=0.0, nesterov=True)
        weight = torch.zeros(1)

        sgd(weight, torch.ones(1), {})

        # buffer = g, step = g + 0.5 * buffer
        assert weight.item() == pytest.approx(-1.5)

    def test_dampening_defaults_to_momentum(self):
        assert SGD(momentum=0.5).dampening == 0.5
        assert SGD(momentum=0.5, dampening=None).dampening == 0.5
        assert SGD(momentum=0.5, dampening=0.1).dampening == 0.1

    def test_nesterov_requires_momentum(self):
        with pytest.raises(ValueError):
            SGD(nesterov=True)

    def test_gradient_dtype_follows_weight(self):
        weight = torch.zeros(2, dtype=torch.float64)

        SGD(learning_rate=1.0)(weight, torch.ones(2, dtype=torch.float32), {})

        assert weight.dtype == torch.float64
        assert torch.equal(weight, torch.full((2,), -1.0, dtype=torch.float64))
