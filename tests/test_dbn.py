import pytest
import torch

from conftest import pattern_batch
from dbn import DBN
from matrix import Matrix
from rbm import ConfigurationError, Params, new_rbm


@pytest.fixture
def params():
    return Params(rate=0.1, max_batches=300)


def test_train_builds_chained_layers(params):
    batches = [pattern_batch(20), pattern_batch(15)]
    model = DBN(10, [6, 4], params=params)
    model.train(batches)
    assert [layer.shape for layer in model.layer_parameters] == [(7, 11), (5, 7)]
    assert len(model.depthwise_training_loss) == 2
    assert all(0. <= loss <= 1. for loss in model.depthwise_training_loss)


def test_generate_input_for_layer(params):
    batches = [pattern_batch(12)]
    model = DBN(10, [6, 4], params=params).train(batches)
    assert model.generate_input_for_layer(0, batches)[0] is batches[0]
    hidden = model.generate_input_for_layer(1, batches, seed=3)
    assert hidden[0].shape == (12, 7)
    assert torch.all(hidden[0].data[:, 0] == 1.)


def test_encode_and_reconstruct(params):
    batches = [pattern_batch(9)]
    model = DBN(10, [5, 3], params=params).train(batches)
    assert model.encode(batches)[0].shape == (9, 4)
    reconstructed = model.reconstruct(batches, seed=1)[0]
    assert reconstructed.shape == batches[0].shape
    assert reconstructed.equals(model.reconstruct(batches, seed=1)[0])


def test_stack_layer_grows_the_network(params):
    batches = [pattern_batch(10)]
    model = DBN(10, [], params=params)
    error = model.stack_layer(6, batches, steps=20)
    model.stack_layer(3, batches, steps=20)
    assert [layer.shape for layer in model.layer_parameters] == [(7, 11), (4, 7)]
    assert model.layers == [6, 3]
    assert 0. <= error <= 1.


def test_stack_layer_finishes_early_below_min_error(params):
    model = DBN(10, [], params=params)
    error = model.stack_layer(4, [pattern_batch(10)], steps=50, min_error=2.)
    assert error < 2.


def test_fine_tune_reduces_error(params):
    batches = [pattern_batch(8)]
    targets = [Matrix(torch.full((8, 4), 0.9), ("B", "H"))]
    model = DBN(10, [5, 3], params=params, fine_tune_rate=0.5)
    model.layer_parameters = [new_rbm(1, 11, 6), new_rbm(2, 6, 4)]
    error = model.fine_tune(batches, targets, epochs=30)
    assert len(model.fine_tune_loss) == 30
    assert error < model.fine_tune_loss[0]


def test_fine_tune_stops_at_min_error(params):
    batches = [pattern_batch(8)]
    targets = [Matrix(torch.full((8, 4), 0.5), ("B", "H"))]
    model = DBN(10, [5, 3], params=params).train(batches)
    model.fine_tune(batches, targets, epochs=20, min_error=1.)
    assert len(model.fine_tune_loss) == 1


def test_fine_tune_needs_layers_and_matching_targets(params):
    with pytest.raises(ConfigurationError):
        DBN(10, [5], params=params).fine_tune([pattern_batch(4)], [Matrix(torch.zeros(4, 6))])
    model = DBN(10, [5], params=params).train([pattern_batch(4)])
    with pytest.raises(ValueError):
        model.fine_tune([pattern_batch(4)], [])


def test_save_and_load(tmp_path, params):
    savefile = str(tmp_path / "dbn.pth")
    batches = [pattern_batch(10)]
    model = DBN(10, [6, 4], params=params, savefile=savefile).train(batches)
    loaded = DBN(1, [], params=params)
    loaded.load_model(savefile)
    assert loaded.input_size == 10
    assert loaded.layers == [6, 4]
    assert all(a.equals(b) for a, b in zip(loaded.layer_parameters, model.layer_parameters))


def test_visualize_training_curve(tmp_path, params):
    model = DBN(10, [4], params=params).train([pattern_batch(10)])
    path = model.visualize_training_curve(str(tmp_path))
    assert (tmp_path / path.split("/")[-1]).exists()


def test_stack_layer_needs_batches(params):
    with pytest.raises(ConfigurationError):
        DBN(10, [], params=params).stack_layer(4, [])
