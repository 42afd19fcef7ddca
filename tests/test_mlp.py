import math

import pytest
import torch

import mlp
import rbm
from matrix import DimensionMismatchError, Matrix
from utils import SplitRandom


def stack(sizes, seed=0, bounds=(-1., 1.)):
    """
    Layers for biased sizes [inputs, hidden1, hidden2, ...]
    """
    return [Matrix.random(sizes[i+1], sizes[i], bounds, seed + i, ("H", "I")) for i in range(len(sizes)-1)]


def inputs(rows, cols, seed=0):
    return Matrix.random(rows, cols, (0., 1.), seed, ("B", "I")).set_col(0, 1.)


def half_squared_error(layers, x, targets):
    out = mlp.feed_forward(layers, x)
    return 0.5*float(torch.sum((out.data - targets.data)**2))


def test_feed_forward_single_layer_is_hidden_probs():
    layers = stack([4, 3])
    x = inputs(5, 4)
    out = mlp.feed_forward(layers, x)
    assert out.shape == (5, 3)
    assert out.allclose(rbm.hidden_probs(layers[0], x).transpose())


def test_feed_forward_chains_with_bias_column():
    layers = stack([4, 3, 2])
    x = inputs(5, 4)
    hidden = mlp.feed_forward(layers[:1], x).set_col(0, 1.).with_role("B", "I")
    expected = mlp.feed_forward(layers[1:], hidden)
    assert mlp.feed_forward(layers, x).allclose(expected)
    assert mlp.feed_forward(layers, x).shape == (5, 2)


def test_feed_forward_hand_computed(hand_weights):
    x = Matrix.from_rows([[1., 2., 3.]], ("B", "I"))
    out = mlp.feed_forward([hand_weights], x)
    assert out.tolist()[0] == pytest.approx([1./(1. + math.exp(-14.)), 1./(1. + math.exp(-32.))])


def test_check_layers_rejects_broken_chain():
    layers = [Matrix.random(3, 4, (0., 1.), 0), Matrix.random(2, 5, (0., 1.), 0)]
    with pytest.raises(DimensionMismatchError):
        mlp.check_layers(layers)
    with pytest.raises(DimensionMismatchError):
        mlp.feed_forward(layers, inputs(2, 4))


def test_back_propagate_matches_numerical_gradient():
    layers = stack([4, 3, 3], seed=3)
    x = inputs(6, 4, seed=1)
    targets = Matrix.random(6, 3, (0., 1.), 8, ("B", "H"))
    rate = 1.
    updated, _ = mlp.back_propagate(layers, rate, x, targets)
    eps = 1e-6
    for index, layer in enumerate(layers):
        analytic = (layer - updated[index]).data/rate
        for row in range(layer.rows):
            for col in range(layer.cols):
                plus = layer.data.clone()
                plus[row, col] += eps
                minus = layer.data.clone()
                minus[row, col] -= eps
                up = list(layers)
                up[index] = Matrix(plus, layer.role)
                down = list(layers)
                down[index] = Matrix(minus, layer.role)
                numeric = (half_squared_error(up, x, targets) - half_squared_error(down, x, targets))/(2*eps)
                assert float(analytic[row, col]) == pytest.approx(numeric, abs=1e-6)


def test_back_propagate_reduces_error():
    layers = stack([5, 4, 3], seed=11)
    x = inputs(8, 5, seed=2)
    targets = Matrix.random(8, 3, (0.2, 0.8), 4, ("B", "H"))
    first = None
    error = None
    for _ in range(300):
        layers, error = mlp.back_propagate(layers, 0.5, x, targets)
        if (first is None):
            first = error
    assert error < first
    assert [l.shape for l in layers] == [(4, 5), (3, 4)]


def test_back_propagate_returns_error_before_update():
    layers = stack([3, 2])
    x = inputs(4, 3)
    targets = Matrix(torch.zeros(4, 2), ("B", "H"))
    _, error = mlp.back_propagate(layers, 0.1, x, targets)
    assert error == pytest.approx(mlp.forward_error(layers, x, targets))


def test_back_propagate_rejects_wrong_targets():
    layers = stack([3, 2])
    with pytest.raises(DimensionMismatchError):
        mlp.back_propagate(layers, 0.1, inputs(4, 3), Matrix(torch.zeros(4, 3)))


def test_reconstruct_shape_and_bias():
    layers = stack([6, 4, 3], bounds=(-0.5, 0.5))
    x = inputs(7, 6)
    out = mlp.reconstruct(x, layers, 5)
    assert out.shape == x.shape
    assert torch.all(out.data[:, 0] == 1.)
    assert set(out.data.flatten().tolist()) <= {0., 1.}
    assert out.equals(mlp.reconstruct(x, layers, SplitRandom(5)))
